"""End-to-end scheduler behaviour against a real PostgreSQL database."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from taskclock.core.app import TaskClock
from taskclock.core.models.task import RunNowErrorCode
from taskclock.core.models.task_pg import ScheduledTaskModel
from taskclock.core.scheduler.lease import LeaseManager
from taskclock.core.types.result import is_err, is_ok
from taskclock.core.types.status import RunStatus

pytestmark = [pytest.mark.integration, pytest.mark.asyncio(loop_scope='function')]

PAYLOAD = {'model_id': 'model-a', 'message': 'good morning'}


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _create(app: TaskClock, user_id: str, schedule: dict[str, Any]) -> ScheduledTaskModel:
    return await app.create_task(
        user_id, {'name': 'it task', 'schedule': schedule, 'payload': PAYLOAD}
    )


async def _make_due(app: TaskClock, task_id: str) -> datetime:
    """Move next_run_at into the past and return it."""
    due = _now() - timedelta(minutes=1)
    await app.get_store().update_next_run(task_id, due, now=_now())
    return due


async def _reload(app: TaskClock, task_id: str, user_id: str) -> ScheduledTaskModel:
    task = await app.get_task(task_id, user_id)
    assert task is not None
    return task


class TestLeases:
    async def test_concurrent_claims_single_winner(self, app: TaskClock, user_id: str) -> None:
        task = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 60})
        await _make_due(app, task.id)
        sf = app.get_session_factory()
        managers = [LeaseManager(sf, lease_timeout_ms=60_000) for _ in range(5)]

        now = _now()
        claims = await asyncio.gather(*(m.acquire(task, now) for m in managers))

        winners = [c for c in claims if c is not None]
        assert len(winners) == 1
        assert winners[0].locked_by in {m.worker_id for m in managers}

    async def test_expired_lease_taken_over(self, app: TaskClock, user_id: str) -> None:
        task = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 60})
        await _make_due(app, task.id)
        sf = app.get_session_factory()
        first = LeaseManager(sf, lease_timeout_ms=1_000)
        second = LeaseManager(sf, lease_timeout_ms=1_000)

        now = _now()
        assert await first.acquire(task, now) is not None
        assert await second.acquire(task, now) is None

        later = now + timedelta(seconds=2)
        claimed = await second.acquire(task, later)
        assert claimed is not None
        assert claimed.locked_by == second.worker_id

    async def test_release_clears_lease_and_repeats_safely(
        self, app: TaskClock, user_id: str
    ) -> None:
        task = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 60})
        leases = LeaseManager(app.get_session_factory())

        assert await leases.acquire(task, _now(), force=True) is not None
        await leases.release(task.id, _now())

        reloaded = await _reload(app, task.id, user_id)
        assert reloaded.locked_at is None
        assert reloaded.locked_by is None

        await leases.release(task.id, _now())

        reloaded = await _reload(app, task.id, user_id)
        assert reloaded.locked_at is None
        assert reloaded.locked_by is None


class TestTick:
    async def test_due_interval_task_runs_once(
        self, app: TaskClock, user_id: str, pipeline: Any
    ) -> None:
        task = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 3600})
        await _make_due(app, task.id)
        scheduler = app.get_scheduler()

        await scheduler.run_due_tasks()
        # Rescheduled an hour out, so a second tick finds nothing of ours
        await scheduler.run_due_tasks()

        assert [call for call in pipeline.calls if call[1] == user_id] == [(PAYLOAD, user_id)]
        reloaded = await _reload(app, task.id, user_id)
        assert reloaded.last_run_status == RunStatus.QUEUED.value
        assert reloaded.locked_by is None
        assert reloaded.next_run_at is not None
        assert reloaded.next_run_at > _now() + timedelta(minutes=59)

    async def test_once_task_disabled_after_run(self, app: TaskClock, user_id: str) -> None:
        run_at = _now() + timedelta(hours=1)
        task = await _create(app, user_id, {'type': 'once', 'runAt': run_at.isoformat()})
        await _make_due(app, task.id)

        await app.get_scheduler().run_due_tasks()

        reloaded = await _reload(app, task.id, user_id)
        assert reloaded.enabled is False
        assert reloaded.next_run_at is None
        assert reloaded.last_run_at is not None

    async def test_pipeline_error_recorded(
        self, app: TaskClock, user_id: str, pipeline: Any
    ) -> None:
        pipeline.error = RuntimeError('model offline')
        task = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 600})
        await _make_due(app, task.id)

        await app.get_scheduler().run_due_tasks()

        reloaded = await _reload(app, task.id, user_id)
        assert reloaded.last_run_status == RunStatus.ERROR.value
        assert reloaded.last_run_error == 'model offline'
        assert reloaded.enabled is True
        assert reloaded.locked_at is None


class TestRunNow:
    async def test_runs_disabled_task(self, app: TaskClock, user_id: str, pipeline: Any) -> None:
        task = await app.create_task(
            user_id,
            {
                'name': 'paused',
                'enabled': False,
                'schedule': {'type': 'cron', 'cron': '0 9 * * *'},
                'payload': PAYLOAD,
            },
        )

        result = await app.run_task_now(task.id, user_id)

        assert is_ok(result)
        assert result.ok_value.status is RunStatus.QUEUED
        assert (PAYLOAD, user_id) in pipeline.calls

    async def test_locked_task_rejected_and_left_untouched(
        self, app: TaskClock, user_id: str, pipeline: Any
    ) -> None:
        task = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 60})
        other = LeaseManager(app.get_session_factory(), worker_id='scheduler-other')
        assert await other.acquire(task, _now(), force=True) is not None
        before = await _reload(app, task.id, user_id)

        result = await app.run_task_now(task.id, user_id)

        assert is_err(result)
        assert result.err_value.code is RunNowErrorCode.LOCKED
        assert result.err_value.retryable is True
        assert result.err_value.details['locked_by'] == 'scheduler-other'

        after = await _reload(app, task.id, user_id)
        assert after.locked_by == 'scheduler-other'
        assert after.locked_at == before.locked_at
        assert after.next_run_at == before.next_run_at
        assert after.last_run_at is None
        assert after.last_run_status is None
        assert after.last_run_error is None
        assert [call for call in pipeline.calls if call[1] == user_id] == []

    async def test_other_users_task_not_found(self, app: TaskClock, user_id: str) -> None:
        task = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 60})

        result = await app.run_task_now(task.id, f'{user_id}-intruder')

        assert is_err(result)
        assert result.err_value.code is RunNowErrorCode.NOT_FOUND


class TestTimezone:
    async def test_update_timezone_reconciles_cron_tasks(
        self, app: TaskClock, user_id: str
    ) -> None:
        cron = await _create(app, user_id, {'type': 'cron', 'cron': '0 9 * * *'})
        interval = await _create(app, user_id, {'type': 'interval', 'intervalSeconds': 3600})
        interval_next = interval.next_run_at

        stored = await app.update_user_timezone(user_id, 'Asia/Tokyo')

        assert stored == 'Asia/Tokyo'
        assert await app.timezone_lookup.get_timezone(user_id) == 'Asia/Tokyo'
        reloaded = await _reload(app, cron.id, user_id)
        assert reloaded.next_run_at is not None
        # 09:00 JST is 00:00 UTC
        assert reloaded.next_run_at.astimezone(timezone.utc).hour == 0
        assert (await _reload(app, interval.id, user_id)).next_run_at == interval_next

    async def test_invalid_timezone_stored_as_utc(self, app: TaskClock, user_id: str) -> None:
        assert await app.update_user_timezone(user_id, 'Mars/Olympus') == 'UTC'
