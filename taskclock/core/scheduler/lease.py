# taskclock/core/scheduler/lease.py
from __future__ import annotations
import uuid
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import Update, and_, or_, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from taskclock.core.defaults import DEFAULT_LEASE_TIMEOUT_MS
from taskclock.core.logging import get_logger
from taskclock.core.models.task_pg import ScheduledTaskModel

logger = get_logger('scheduler.lease')

RELEASE_LEASE_SQL = text("""
    UPDATE taskclock_scheduled_tasks
    SET locked_at = NULL,
        locked_by = NULL,
        updated_at = :now
    WHERE id = :task_id
""")


def generate_worker_id() -> str:
    """Lease-holder token, generated once per scheduler process."""
    return f'scheduler-{uuid.uuid4()}'


class LeaseManager:
    """
    Time-bounded exclusive claims on task rows.

    A claim is a conditional UPDATE on the shared task table: it succeeds only
    if nobody holds the row or the holder's lease is older than the timeout.
    There is no other lock; two schedulers coordinate purely through that
    WHERE clause.

    A lease older than lease_timeout_ms can be taken over while its holder is
    still running, so a slow (not dead) worker can see its task run twice.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker_id: Optional[str] = None,
        lease_timeout_ms: int = DEFAULT_LEASE_TIMEOUT_MS,
    ):
        self.session_factory = session_factory
        self.worker_id = worker_id or generate_worker_id()
        self.lease_timeout = timedelta(milliseconds=lease_timeout_ms)

    def lease_cutoff(self, now: datetime) -> datetime:
        """Leases taken strictly before this instant are expired."""
        return now - self.lease_timeout

    def is_lease_held(self, task: ScheduledTaskModel, now: datetime) -> bool:
        """Whether the row carries a lease that has not expired at `now`."""
        if task.locked_at is None:
            return False
        return task.locked_at >= self.lease_cutoff(now)

    def build_acquire_statement(
        self, task_id: str, now: datetime, *, force: bool = False
    ) -> Update:
        conditions = [
            ScheduledTaskModel.id == task_id,
            or_(
                ScheduledTaskModel.locked_at.is_(None),
                ScheduledTaskModel.locked_at < self.lease_cutoff(now),
            ),
        ]
        if not force:
            conditions.append(ScheduledTaskModel.enabled.is_(True))
            conditions.append(ScheduledTaskModel.next_run_at <= now)

        return (
            update(ScheduledTaskModel)
            .where(and_(*conditions))
            .values(locked_at=now, locked_by=self.worker_id, updated_at=now)
            .returning(ScheduledTaskModel)
            .execution_options(synchronize_session=False)
        )

    async def acquire(
        self,
        task: ScheduledTaskModel,
        now: datetime,
        *,
        force: bool = False,
    ) -> Optional[ScheduledTaskModel]:
        """
        Try to claim a task.

        Args:
            task: Candidate row (only its id is used)
            now: Claim time, also the reference for lease expiry and due check
            force: Skip the enabled/due conditions (on-demand runs). The lease
                condition still applies, so a forced claim never steals an
                unexpired lease.

        Returns:
            The claimed row as stored after the update, or None if another
            worker holds it or it is no longer enabled/due.
        """
        stmt = self.build_acquire_statement(task.id, now, force=force)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            locked = result.scalars().first()
            await session.commit()

        if locked is None:
            logger.debug(f"Lease on task '{task.id}' not acquired (force={force})")
        else:
            logger.debug(f"Lease on task '{task.id}' acquired by {self.worker_id}")
        return locked

    async def release(self, task_id: str, now: datetime) -> None:
        """Clear the lease on a task. Unconditional and idempotent."""
        async with self.session_factory() as session:
            await session.execute(RELEASE_LEASE_SQL, {'task_id': task_id, 'now': now})
            await session.commit()
        logger.debug(f"Lease on task '{task_id}' released")
