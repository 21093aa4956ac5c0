"""Tests for LeaseManager (statement shape and mocked sessions, no DB)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from taskclock.core.models.task_pg import ScheduledTaskModel
from taskclock.core.scheduler.lease import (
    RELEASE_LEASE_SQL,
    LeaseManager,
    generate_worker_id,
)


def _utc(hour: int = 12, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2025, 6, 1, hour, minute, second, tzinfo=timezone.utc)


def _make_task(
    locked_at: datetime | None = None, locked_by: str | None = None
) -> ScheduledTaskModel:
    return ScheduledTaskModel(
        id='task-1',
        user_id='user-1',
        name='digest',
        enabled=True,
        schedule_type='interval',
        interval_seconds=60,
        payload={'model_id': 'm', 'message': 'hi'},
        next_run_at=_utc(),
        locked_at=locked_at,
        locked_by=locked_by,
    )


def _make_leases(
    lease_timeout_ms: int = 300_000,
) -> tuple[LeaseManager, AsyncMock]:
    """LeaseManager over a mocked async session factory. Returns (leases, session)."""
    mock_session = AsyncMock()
    mock_factory = MagicMock()
    mock_factory.return_value.__aenter__ = AsyncMock(return_value=mock_session)
    mock_factory.return_value.__aexit__ = AsyncMock(return_value=False)

    leases = LeaseManager(
        session_factory=mock_factory,
        worker_id='scheduler-test',
        lease_timeout_ms=lease_timeout_ms,
    )
    return leases, mock_session


def _where_clause(leases: LeaseManager, now: datetime, force: bool) -> str:
    stmt = leases.build_acquire_statement('task-1', now, force=force)
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    return sql.split(' WHERE ', 1)[1].split(' RETURNING ', 1)[0]


@pytest.mark.unit
class TestWorkerId:
    def test_prefixed_and_unique(self) -> None:
        a, b = generate_worker_id(), generate_worker_id()
        assert a.startswith('scheduler-')
        assert a != b

    def test_generated_when_not_given(self) -> None:
        leases = LeaseManager(session_factory=MagicMock())
        assert leases.worker_id.startswith('scheduler-')


@pytest.mark.unit
class TestLeaseExpiry:
    """lease_cutoff / is_lease_held mirror the SQL condition."""

    def test_cutoff_is_now_minus_timeout(self) -> None:
        leases, _ = _make_leases(lease_timeout_ms=300_000)
        assert leases.lease_cutoff(_utc(12, 5)) == _utc(12, 0)

    def test_unlocked_task_not_held(self) -> None:
        leases, _ = _make_leases()
        assert leases.is_lease_held(_make_task(), _utc()) is False

    def test_lease_just_inside_timeout_is_held(self) -> None:
        leases, _ = _make_leases()
        now = _utc(12, 5)
        locked_at = now - timedelta(minutes=5) + timedelta(seconds=1)
        assert leases.is_lease_held(_make_task(locked_at=locked_at), now) is True

    def test_lease_just_past_timeout_is_expired(self) -> None:
        leases, _ = _make_leases()
        now = _utc(12, 5)
        locked_at = now - timedelta(minutes=5) - timedelta(seconds=1)
        assert leases.is_lease_held(_make_task(locked_at=locked_at), now) is False

    def test_lease_exactly_at_cutoff_is_held(self) -> None:
        """Expiry is strict: locked_at < cutoff."""
        leases, _ = _make_leases()
        now = _utc(12, 5)
        assert leases.is_lease_held(_make_task(locked_at=_utc(12, 0)), now) is True


@pytest.mark.unit
class TestAcquireStatement:
    """Conditional UPDATE shape."""

    def test_normal_claim_checks_lease_enabled_and_due(self) -> None:
        leases, _ = _make_leases()
        where = _where_clause(leases, _utc(), force=False)

        assert 'locked_at IS NULL' in where
        assert 'locked_at <' in where
        assert 'enabled' in where
        assert 'next_run_at <=' in where

    def test_forced_claim_checks_only_lease(self) -> None:
        leases, _ = _make_leases()
        where = _where_clause(leases, _utc(), force=True)

        assert 'locked_at IS NULL' in where
        assert 'locked_at <' in where
        assert 'enabled' not in where
        assert 'next_run_at' not in where

    def test_sets_holder_and_returns_row(self) -> None:
        leases, _ = _make_leases()
        now = _utc()
        compiled = leases.build_acquire_statement('task-1', now).compile(
            dialect=postgresql.dialect()
        )
        sql = str(compiled)

        assert sql.startswith('UPDATE taskclock_scheduled_tasks SET')
        assert ' RETURNING ' in sql
        assert 'scheduler-test' in compiled.params.values()
        assert leases.lease_cutoff(now) in compiled.params.values()


@pytest.mark.unit
class TestAcquire:
    @pytest.mark.asyncio
    async def test_returns_claimed_row(self) -> None:
        leases, session = _make_leases()
        claimed = _make_task(locked_at=_utc(), locked_by='scheduler-test')
        mock_result = MagicMock()
        mock_result.scalars.return_value.first.return_value = claimed
        session.execute = AsyncMock(return_value=mock_result)

        result = await leases.acquire(_make_task(), _utc())

        assert result is claimed
        session.execute.assert_awaited_once()
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_returns_none_when_no_row_matched(self) -> None:
        leases, session = _make_leases()
        mock_result = MagicMock()
        mock_result.scalars.return_value.first.return_value = None
        session.execute = AsyncMock(return_value=mock_result)

        result = await leases.acquire(_make_task(), _utc(), force=True)

        assert result is None


@pytest.mark.unit
class TestRelease:
    @pytest.mark.asyncio
    async def test_clears_lease_by_id(self) -> None:
        leases, session = _make_leases()
        now = _utc()

        await leases.release('task-1', now)

        session.execute.assert_awaited_once_with(
            RELEASE_LEASE_SQL, {'task_id': 'task-1', 'now': now}
        )
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_release_is_harmless(self) -> None:
        leases, session = _make_leases()
        session.execute = AsyncMock(return_value=MagicMock(rowcount=1))

        await leases.release('task-1', _utc())
        await leases.release('task-1', _utc(12, 1))

        assert session.execute.await_count == 2
        for call in session.execute.await_args_list:
            assert call.args[0] is RELEASE_LEASE_SQL
        assert session.commit.await_count == 2

    def test_release_sql_is_unconditional_on_holder(self) -> None:
        sql = str(RELEASE_LEASE_SQL)
        assert 'locked_at = NULL' in sql
        assert 'locked_by = NULL' in sql
        assert 'locked_by =' not in sql.split('WHERE', 1)[1]
