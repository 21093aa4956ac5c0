# taskclock/core/scheduler/state.py
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import delete, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from taskclock.core.models.task_pg import ScheduledTaskModel
from taskclock.core.types.status import RunStatus, ScheduleType
from taskclock.core.logging import get_logger

logger = get_logger('scheduler.state')

RECORD_RUN_SQL = text("""
    UPDATE taskclock_scheduled_tasks
    SET last_run_at = :now,
        last_run_status = :status,
        last_run_error = :error,
        next_run_at = :next_run_at,
        enabled = :enabled,
        locked_at = NULL,
        locked_by = NULL,
        updated_at = :now
    WHERE id = :task_id
""")

UPDATE_NEXT_RUN_SQL = text("""
    UPDATE taskclock_scheduled_tasks
    SET next_run_at = :next_run_at,
        updated_at = :now
    WHERE id = :task_id
""")

# Fields a user may edit through update_task()
_EDITABLE_COLUMNS = frozenset({
    'name',
    'description',
    'enabled',
    'schedule_type',
    'cron_expression',
    'interval_seconds',
    'run_at',
    'payload',
    'next_run_at',
})


class ScheduledTaskStore:
    """
    Persistence for scheduled tasks in PostgreSQL.

    Covers the reads and writes the scheduler needs:
    - due-task polling
    - recording a run (status, next run and lease release in one UPDATE)
    - per-user CRUD, always scoped by user_id

    All operations are async and use SQLAlchemy async sessions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_due_tasks(
        self,
        now: datetime,
        lease_cutoff: datetime,
        limit: int,
    ) -> list[ScheduledTaskModel]:
        """
        Retrieve enabled tasks that are due and not under a live lease.

        Args:
            now: Current time in UTC
            lease_cutoff: Leases taken before this instant count as expired
            limit: Maximum rows to return

        Returns:
            Due tasks, oldest next_run_at first
        """
        async with self.session_factory() as session:
            stmt = (
                select(ScheduledTaskModel)
                .where(ScheduledTaskModel.enabled.is_(True))
                .where(ScheduledTaskModel.next_run_at <= now)
                .where(
                    or_(
                        ScheduledTaskModel.locked_at.is_(None),
                        ScheduledTaskModel.locked_at < lease_cutoff,
                    )
                )
                .order_by(ScheduledTaskModel.next_run_at.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars())

    async def get_task(
        self, task_id: str, user_id: Optional[str] = None
    ) -> Optional[ScheduledTaskModel]:
        """
        Retrieve a task by id.

        Args:
            task_id: Task identifier
            user_id: When given, only return the task if this user owns it

        Returns:
            ScheduledTaskModel if found (and owned), None otherwise
        """
        async with self.session_factory() as session:
            task = await session.get(ScheduledTaskModel, task_id)
            if task is None:
                return None
            if user_id is not None and task.user_id != user_id:
                return None
            return task

    async def list_tasks(self, user_id: str) -> list[ScheduledTaskModel]:
        """All tasks of a user, most recently updated first."""
        async with self.session_factory() as session:
            stmt = (
                select(ScheduledTaskModel)
                .where(ScheduledTaskModel.user_id == user_id)
                .order_by(ScheduledTaskModel.updated_at.desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars())

    async def list_enabled_cron_tasks(self, user_id: str) -> list[ScheduledTaskModel]:
        """Enabled cron tasks of a user (the ones a timezone change affects)."""
        async with self.session_factory() as session:
            stmt = (
                select(ScheduledTaskModel)
                .where(ScheduledTaskModel.user_id == user_id)
                .where(ScheduledTaskModel.schedule_type == ScheduleType.CRON.value)
                .where(ScheduledTaskModel.enabled.is_(True))
            )
            result = await session.execute(stmt)
            return list(result.scalars())

    async def create_task(self, task: ScheduledTaskModel) -> ScheduledTaskModel:
        """Insert a new task row."""
        async with self.session_factory() as session:
            session.add(task)
            await session.commit()
            await session.refresh(task)
            logger.info(
                f"Created task '{task.id}' ({task.schedule_type}) for user "
                f"'{task.user_id}', next_run_at={task.next_run_at}"
            )
            return task

    async def update_task(
        self,
        task_id: str,
        user_id: str,
        changes: dict[str, Any],
        now: datetime,
    ) -> Optional[ScheduledTaskModel]:
        """
        Apply user edits to an owned task.

        Returns:
            The updated task, or None if the user owns no such task
        """
        unknown = set(changes) - _EDITABLE_COLUMNS
        if unknown:
            raise ValueError(f'not editable: {sorted(unknown)}')

        async with self.session_factory() as session:
            task = await session.get(ScheduledTaskModel, task_id)
            if task is None or task.user_id != user_id:
                return None
            for column, value in changes.items():
                setattr(task, column, value)
            task.updated_at = now
            await session.commit()
            await session.refresh(task)
            return task

    async def delete_task(self, task_id: str, user_id: str) -> bool:
        """
        Delete an owned task.

        Returns:
            True if deleted, False if the user owns no such task
        """
        async with self.session_factory() as session:
            result = await session.execute(
                delete(ScheduledTaskModel)
                .where(ScheduledTaskModel.id == task_id)
                .where(ScheduledTaskModel.user_id == user_id)
            )
            await session.commit()

            rows_deleted = getattr(result, 'rowcount', 0)
            if rows_deleted > 0:
                logger.info(f"Deleted task '{task_id}' of user '{user_id}'")
                return True
            logger.debug(f"No task '{task_id}' owned by '{user_id}' to delete")
            return False

    async def record_run(
        self,
        task_id: str,
        now: datetime,
        status: RunStatus,
        error: Optional[str],
        next_run_at: Optional[datetime],
        enabled: bool,
    ) -> None:
        """
        Persist the outcome of a run and release the lease in one statement.

        Writing everything together means no reader ever sees the lease
        cleared while status and next_run_at still describe the previous run.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                RECORD_RUN_SQL,
                {
                    'task_id': task_id,
                    'now': now,
                    'status': status.value,
                    'error': error,
                    'next_run_at': next_run_at,
                    'enabled': enabled,
                },
            )
            await session.commit()

            rows_updated = getattr(result, 'rowcount', 0)
            if rows_updated == 0:
                logger.warning(
                    f"Failed to record run for task '{task_id}' - not found"
                )
            else:
                logger.debug(
                    f"Recorded run for task '{task_id}': status={status.value}, "
                    f'next_run={next_run_at}, enabled={enabled}'
                )

    async def update_next_run(
        self,
        task_id: str,
        next_run_at: datetime,
        now: Optional[datetime] = None,
    ) -> None:
        """Reschedule a task without executing it."""
        async with self.session_factory() as session:
            result = await session.execute(
                UPDATE_NEXT_RUN_SQL,
                {
                    'task_id': task_id,
                    'next_run_at': next_run_at,
                    'now': now or datetime.now(timezone.utc),
                },
            )
            await session.commit()

            rows_updated = getattr(result, 'rowcount', 0)
            if rows_updated == 0:
                logger.warning(f"Failed to update next_run for '{task_id}' - not found")
            else:
                logger.debug(f"Updated next_run for '{task_id}': {next_run_at}")
