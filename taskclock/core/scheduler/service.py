# taskclock/core/scheduler/service.py
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from taskclock.core.logging import get_logger
from taskclock.core.models.schedule import SchedulerConfig
from taskclock.core.models.task import (
    RunNowError,
    RunNowErrorCode,
    RunNowResult,
)
from taskclock.core.models.task_pg import ScheduledTaskModel
from taskclock.core.scheduler.calculator import compute_next_run_at, resolve_timezone
from taskclock.core.scheduler.executor import TaskExecutor
from taskclock.core.scheduler.lease import LeaseManager
from taskclock.core.scheduler.state import ScheduledTaskStore
from taskclock.core.types.result import Err, Ok
from taskclock.core.types.status import ScheduleType
from taskclock.core.utils.db import is_retryable_connection_error

logger = get_logger('scheduler')


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SchedulerHandle:
    """
    Returned by Scheduler.start(); owned by whatever bootstraps the process.

    `started` is the guard against running two poll loops in one process.
    It is not a cross-process mechanism: replicas coordinate through leases.
    """

    scheduler: Scheduler
    started: bool = False
    loop_task: Optional[asyncio.Task[None]] = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        return self.loop_task is not None and not self.loop_task.done()

    async def stop(self) -> None:
        """
        Ask the loop to stop and wait for the current tick to finish.

        Afterwards the handle reads as not started, so Scheduler.start()
        can run a fresh loop.
        """
        self.scheduler.request_stop()
        if self.loop_task is not None:
            await self.loop_task
        self.loop_task = None
        self.started = False


class Scheduler:
    """
    Poll loop and on-demand runner for scheduled tasks.

    Each tick:
    1. Read `now` once
    2. Fetch up to max_tasks_per_tick enabled, due, unleased tasks,
       oldest next_run_at first
    3. For each: claim the lease, execute, and release the lease if the
       executor itself blew up

    Tasks within a tick run one after another. Several scheduler processes
    may poll the same table; the lease decides who runs what.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        store: ScheduledTaskStore,
        leases: LeaseManager,
        executor: TaskExecutor,
    ):
        self.config = config
        self.store = store
        self.leases = leases
        self.executor = executor
        self._stop = asyncio.Event()
        self._handle = SchedulerHandle(scheduler=self)

        logger.info(
            f'Scheduler initialized as {leases.worker_id}, '
            f'poll_interval={config.poll_interval_seconds}s, '
            f'max_tasks_per_tick={config.max_tasks_per_tick}'
        )

    @property
    def worker_id(self) -> str:
        return self.leases.worker_id

    @property
    def handle(self) -> SchedulerHandle:
        return self._handle

    def start(self) -> SchedulerHandle:
        """
        Start the poll loop on the running event loop.

        Safe to call repeatedly: later calls return the same handle without
        starting a second loop.
        """
        if self._handle.started:
            return self._handle

        self._stop.clear()
        self._handle.loop_task = asyncio.get_running_loop().create_task(
            self.run_forever(), name=f'taskclock-{self.worker_id}'
        )
        self._handle.started = True
        logger.info('Scheduler started')
        return self._handle

    def request_stop(self) -> None:
        """Request the poll loop to stop after the current tick."""
        self._stop.set()

    async def run_forever(self) -> None:
        """Poll until stopped; the first tick runs immediately."""
        logger.info('Starting scheduler loop')

        while not self._stop.is_set():
            await self.run_due_tasks()

            try:
                await asyncio.wait_for(
                    self._stop.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break  # Stop signal received
            except asyncio.TimeoutError:
                continue

        logger.info('Scheduler stopped')

    async def run_due_tasks(self, now: Optional[datetime] = None) -> int:
        """
        Run one tick.

        Never raises: a failing task, or a failing poll query, is logged and
        the tick moves on.

        Returns:
            Number of tasks executed in this tick
        """
        now = now or _utc_now()

        try:
            due_tasks = await self.store.get_due_tasks(
                now,
                lease_cutoff=self.leases.lease_cutoff(now),
                limit=self.config.max_tasks_per_tick,
            )
        except Exception as e:
            if is_retryable_connection_error(e):
                logger.warning(f'Due-task query failed (transient), will retry next tick: {e}')
            else:
                logger.error(f'Due-task query failed: {e}', exc_info=True)
            return 0

        executed = 0
        for task in due_tasks:
            try:
                locked = await self.leases.acquire(task, now)
            except Exception as e:
                logger.error(f"Failed to claim task '{task.id}': {e}", exc_info=True)
                continue

            if locked is None:
                # Another scheduler, or an on-demand run, got there first
                continue

            try:
                await self.executor.execute(locked, now)
                executed += 1
            except Exception as e:
                logger.error(f"Failed to execute task '{locked.id}': {e}", exc_info=True)
                await self._release_after_failure(locked.id)

        if due_tasks:
            logger.debug(f'Tick done: {executed}/{len(due_tasks)} due task(s) executed')
        return executed

    async def run_task_now(self, task_id: str, user_id: str) -> RunNowResult:
        """
        Execute one of the user's tasks immediately, ignoring its schedule.

        The claim is forced past the enabled/due checks but not past a live
        lease, so this cannot overlap with an automatic run in flight.
        Storage failures at any step come back as EXECUTION_FAILED.
        """
        try:
            task = await self.store.get_task(task_id, user_id=user_id)
        except Exception as e:
            logger.error(f"Lookup of task '{task_id}' for on-demand run failed: {e}")
            return Err(self._execution_failed(task_id, e))
        if task is None:
            return Err(
                RunNowError(
                    code=RunNowErrorCode.NOT_FOUND,
                    message='Scheduled task not found',
                    retryable=False,
                    task_id=task_id,
                )
            )

        now = _utc_now()
        try:
            locked = await self.leases.acquire(task, now, force=True)
        except Exception as e:
            logger.error(f"Claiming task '{task_id}' for on-demand run failed: {e}")
            return Err(self._execution_failed(task_id, e))
        if locked is None:
            return Err(
                RunNowError(
                    code=RunNowErrorCode.LOCKED,
                    message='Scheduled task is currently locked',
                    retryable=True,
                    task_id=task_id,
                    details=self._lease_details(task),
                )
            )

        try:
            outcome = await self.executor.execute(locked, now)
        except Exception as e:
            logger.error(f"On-demand run of task '{task_id}' failed: {e}", exc_info=True)
            await self._release_after_failure(task_id)
            return Err(self._execution_failed(task_id, e))
        return Ok(outcome)

    async def reconcile_timezone(
        self,
        user_id: str,
        tz_name: str,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Recompute next_run_at of the user's enabled cron tasks for a new timezone.

        Interval and one-shot tasks do not depend on the timezone and are left
        alone. Tasks whose expression no longer parses keep their stored value;
        the executor disables them on their next run.

        Returns:
            Number of tasks rescheduled
        """
        now = now or _utc_now()
        tz_name = resolve_timezone(tz_name)
        tasks = await self.store.list_enabled_cron_tasks(user_id)

        updates: list[tuple[str, datetime]] = []
        for task in tasks:
            next_run_at = compute_next_run_at(
                ScheduleType.CRON,
                cron_expression=task.cron_expression,
                reference_date=now,
                tz_str=tz_name,
            )
            if next_run_at is None:
                logger.warning(
                    f"Task '{task.id}' cron expression is invalid, "
                    f'not rescheduling for timezone {tz_name}'
                )
                continue
            updates.append((task.id, next_run_at))

        await asyncio.gather(
            *(self.store.update_next_run(task_id, next_run, now) for task_id, next_run in updates)
        )
        logger.info(
            f"Rescheduled {len(updates)} cron task(s) of user '{user_id}' for timezone {tz_name}"
        )
        return len(updates)

    @staticmethod
    def _execution_failed(task_id: str, e: Exception) -> RunNowError:
        return RunNowError(
            code=RunNowErrorCode.EXECUTION_FAILED,
            message=f'Failed to run scheduled task: {e}',
            retryable=is_retryable_connection_error(e),
            task_id=task_id,
            exception=e,
        )

    def _lease_details(self, task: ScheduledTaskModel) -> dict[str, object]:
        return {
            'locked_by': task.locked_by,
            'locked_at': task.locked_at.isoformat() if task.locked_at else None,
        }

    async def _release_after_failure(self, task_id: str) -> None:
        """Release a lease after the executor raised, without raising itself."""
        try:
            await self.leases.release(task_id, _utc_now())
        except Exception as e:
            logger.error(
                f"Failed to release lease on task '{task_id}', it frees up when "
                f'the lease expires: {e}',
                exc_info=True,
            )
