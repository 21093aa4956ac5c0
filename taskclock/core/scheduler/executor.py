# taskclock/core/scheduler/executor.py
from __future__ import annotations
import time
from datetime import datetime
from typing import Any, Optional
from taskclock.core.defaults import DEFAULT_TIMEZONE
from taskclock.core.logging import get_logger
from taskclock.core.models.task import ExecutionOutcome
from taskclock.core.models.task_pg import ScheduledTaskModel
from taskclock.core.pipeline import GenerationPipeline
from taskclock.core.scheduler.calculator import compute_next_run_at, resolve_timezone
from taskclock.core.scheduler.state import ScheduledTaskStore
from taskclock.core.settings import TimezoneLookup
from taskclock.core.types.status import RunStatus, ScheduleType

logger = get_logger('scheduler.exec')

INVALID_PAYLOAD_MESSAGE = 'Task payload is missing or invalid'
INVALID_SCHEDULE_MESSAGE = 'Invalid schedule configuration'


class TaskExecutor:
    """
    Runs one claimed task and writes back its outcome.

    Steps:
    1. Check the payload is a JSON object (no pipeline call otherwise)
    2. Invoke the generation pipeline; its exceptions become an ERROR outcome
    3. Resolve the owner's timezone (UTC fallback)
    4. Work out the next run: one-shot tasks are disabled, recurring tasks
       are rescheduled from `now` or disabled if that is impossible
    5. Record status, error, next run, enabled and clear the lease in one write

    Pipeline failures never escape execute(). Storage failures do, and the
    caller is expected to release the lease in that case.
    """

    def __init__(
        self,
        store: ScheduledTaskStore,
        pipeline: GenerationPipeline,
        timezone_lookup: Optional[TimezoneLookup] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.timezone_lookup = timezone_lookup

    async def execute(
        self, task: ScheduledTaskModel, now: datetime
    ) -> ExecutionOutcome:
        status = RunStatus.QUEUED
        error_message: Optional[str] = None
        result: Any = None

        payload = task.payload
        if not isinstance(payload, dict):
            status = RunStatus.ERROR
            error_message = INVALID_PAYLOAD_MESSAGE
        else:
            try:
                result = await self.pipeline.invoke(payload, task.user_id, time.time())
            except Exception as e:
                status = RunStatus.ERROR
                error_message = str(e) or type(e).__name__
                logger.warning(f"Task '{task.id}' pipeline call failed: {error_message}")

        tz_name = await self._user_timezone(task.user_id)
        next_run_at, enabled = task.next_run_at, task.enabled

        if task.schedule_type == ScheduleType.ONCE.value:
            enabled = False
            next_run_at = None
        elif task.enabled:
            next_run_at = compute_next_run_at(
                task.schedule_type,
                cron_expression=task.cron_expression,
                interval_seconds=task.interval_seconds,
                run_at=task.run_at,
                reference_date=now,
                tz_str=tz_name,
            )
            if next_run_at is None:
                # A task that ran but cannot schedule itself must not stay enabled
                enabled = False
                status = RunStatus.ERROR
                error_message = error_message or INVALID_SCHEDULE_MESSAGE
                logger.error(
                    f"Task '{task.id}' has an invalid {task.schedule_type} schedule, disabling"
                )

        await self.store.record_run(
            task.id,
            now=now,
            status=status,
            error=error_message,
            next_run_at=next_run_at,
            enabled=enabled,
        )

        logger.info(
            f"Task '{task.id}' ran: status={status.value}, next_run={next_run_at}"
        )
        return ExecutionOutcome(status=status, error=error_message, result=result)

    async def _user_timezone(self, user_id: str) -> str:
        if self.timezone_lookup is None:
            return DEFAULT_TIMEZONE
        return resolve_timezone(await self.timezone_lookup.get_timezone(user_id))
