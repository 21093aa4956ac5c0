# taskclock/core/app.py
from __future__ import annotations
import asyncio
import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from taskclock.core.errors import (
    ConfigurationError,
    ErrorCode,
    TaskClockError,
    TaskNotFoundError,
)
from taskclock.core.logging import get_logger
from taskclock.core.models.app import AppConfig
from taskclock.core.models.payload import validate_payload
from taskclock.core.models.schedule import (
    CronSchedule,
    IntervalSchedule,
    OnceSchedule,
    SchedulePattern,
    schedule_columns,
)
from taskclock.core.models.task import RunNowResult, TaskDefinition, TaskUpdate
from taskclock.core.models.task_pg import Base, ScheduledTaskModel
from taskclock.core.pipeline import GenerationPipeline
from taskclock.core.scheduler.calculator import (
    compute_next_run_at,
    next_run_for_schedule,
    normalize_timezone,
    resolve_timezone,
)
from taskclock.core.scheduler.executor import INVALID_SCHEDULE_MESSAGE, TaskExecutor
from taskclock.core.scheduler.lease import LeaseManager
from taskclock.core.scheduler.service import Scheduler, SchedulerHandle
from taskclock.core.scheduler.state import ScheduledTaskStore
from taskclock.core.settings import TimezoneLookup, UserSettingsStore
from taskclock.core.types.status import ScheduleType
from taskclock.core.utils.url import mask_database_url

HEALTH_CHECK_SQL = text("""SELECT 1""")

_Schedule = Union[CronSchedule, IntervalSchedule, OnceSchedule]

_SCHEDULE_ADAPTER: TypeAdapter[_Schedule] = TypeAdapter(SchedulePattern)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _no_location(error: TaskClockError) -> TaskClockError:
    """Drop the auto-detected source location from an internally raised error."""
    error.location = None
    return error


def _validation_failed(what: str, e: ValidationError) -> TaskClockError:
    return _no_location(
        ConfigurationError(
            message=f'invalid {what}',
            code=ErrorCode.CONFIG_INVALID_SCHEDULE,
            notes=[
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            ],
            help_text='fix the listed fields and try again',
        )
    )


class TaskClock:
    """
    Scheduled task app: CRUD for user tasks, on-demand runs, timezone
    changes and the background scheduler, over one PostgreSQL database.

    The engine is created on first use, so constructing the app (for example
    at import time of a module the CLI loads) does not touch the database.
    """

    def __init__(
        self,
        config: AppConfig,
        pipeline: GenerationPipeline,
        timezone_lookup: Optional[TimezoneLookup] = None,
    ):
        self.config = config
        self.pipeline = pipeline
        self.logger = get_logger('app')

        self._custom_timezone_lookup = timezone_lookup
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._store: Optional[ScheduledTaskStore] = None
        self._settings: Optional[UserSettingsStore] = None
        self._scheduler: Optional[Scheduler] = None

        self.logger.info(
            f'taskclock initialized with {mask_database_url(config.store.database_url)}'
        )

    # ----------------- Wiring -----------------

    def get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.config.store.database_url, **self.config.store.engine_kwargs()
            )
        return self._engine

    def get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.get_engine(), expire_on_commit=False
            )
        return self._session_factory

    def get_store(self) -> ScheduledTaskStore:
        if self._store is None:
            self._store = ScheduledTaskStore(self.get_session_factory())
        return self._store

    def get_settings(self) -> UserSettingsStore:
        if self._settings is None:
            self._settings = UserSettingsStore(self.get_session_factory())
        return self._settings

    @property
    def timezone_lookup(self) -> TimezoneLookup:
        if self._custom_timezone_lookup is not None:
            return self._custom_timezone_lookup
        return self.get_settings()

    def get_scheduler(self) -> Scheduler:
        """The app's single Scheduler (one worker id per process)."""
        if self._scheduler is None:
            store = self.get_store()
            self._scheduler = Scheduler(
                config=self.config.scheduler,
                store=store,
                leases=LeaseManager(
                    self.get_session_factory(),
                    lease_timeout_ms=self.config.scheduler.lease_timeout_ms,
                ),
                executor=TaskExecutor(store, self.pipeline, self.timezone_lookup),
            )
        return self._scheduler

    def _schema_advisory_key(self) -> int:
        """Stable 64-bit advisory lock key, distinct per database URL."""
        basis = self.config.store.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'taskclock-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema(self) -> None:
        """
        Create the task and user settings tables if missing.

        Safe to call from several processes at once: creation runs under a
        transaction-scoped PostgreSQL advisory lock.
        """
        async with self.get_engine().begin() as conn:
            await conn.execute(
                text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                {'key': self._schema_advisory_key()},
            )
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info('Schema ready')

    async def close(self) -> None:
        """Stop the scheduler if running and dispose of the engine."""
        if self._scheduler is not None:
            if self._scheduler.handle.started:
                await self._scheduler.handle.stop()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._store = None
            self._settings = None
            self._scheduler = None

    # ----------------- Task CRUD -----------------

    async def create_task(
        self,
        user_id: str,
        definition: Union[TaskDefinition, Mapping[str, Any]],
    ) -> ScheduledTaskModel:
        """
        Validate and store a new task.

        Enabled tasks get their first next_run_at computed in the owner's
        timezone; disabled tasks start with none.

        Raises:
            ConfigurationError: the definition, its payload or its schedule is invalid
        """
        definition = self._coerce(TaskDefinition, definition)
        payload = validate_payload(definition.payload)
        schedule = definition.schedule

        now = _utc_now()
        next_run_at: Optional[datetime] = None
        if definition.enabled:
            tz_name = await self._user_timezone(user_id)
            next_run_at = next_run_for_schedule(schedule, now, tz_name)
            if next_run_at is None and schedule.schedule_type.is_recurring:
                raise self._invalid_schedule(schedule)

        task = ScheduledTaskModel(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=definition.name,
            description=definition.description,
            enabled=definition.enabled,
            payload=payload,
            next_run_at=next_run_at,
            created_at=now,
            updated_at=now,
            **schedule_columns(schedule),
        )
        return await self.get_store().create_task(task)

    async def list_tasks(self, user_id: str) -> list[ScheduledTaskModel]:
        """The user's tasks, most recently updated first."""
        return await self.get_store().list_tasks(user_id)

    async def get_task(self, task_id: str, user_id: str) -> Optional[ScheduledTaskModel]:
        return await self.get_store().get_task(task_id, user_id=user_id)

    async def update_task(
        self,
        task_id: str,
        user_id: str,
        changes: Union[TaskUpdate, Mapping[str, Any]],
    ) -> ScheduledTaskModel:
        """
        Apply a partial edit to an owned task.

        next_run_at is recomputed from now when the schedule changes or the
        task gets enabled; disabling clears it.

        Raises:
            TaskNotFoundError: the user owns no such task
            ConfigurationError: the edit is invalid
        """
        update = self._coerce(TaskUpdate, changes)
        existing = await self.get_store().get_task(task_id, user_id=user_id)
        if existing is None:
            raise self._not_found(task_id)

        columns: dict[str, Any] = update.model_dump(
            include={'name', 'description', 'enabled'}, exclude_none=True
        )
        if update.payload is not None:
            columns['payload'] = validate_payload(update.payload)
        if update.schedule is not None:
            columns.update(schedule_columns(update.schedule))

        enabled = update.enabled if update.enabled is not None else existing.enabled
        schedule_changed = update.schedule is not None
        enabled_changed = update.enabled is not None and update.enabled != existing.enabled

        now = _utc_now()
        if not enabled:
            if enabled_changed:
                columns['next_run_at'] = None
        elif schedule_changed or enabled_changed:
            schedule_type = ScheduleType(columns.get('schedule_type', existing.schedule_type))
            next_run_at = compute_next_run_at(
                schedule_type,
                cron_expression=columns.get('cron_expression', existing.cron_expression),
                interval_seconds=columns.get('interval_seconds', existing.interval_seconds),
                run_at=columns.get('run_at', existing.run_at),
                reference_date=now,
                tz_str=await self._user_timezone(user_id),
            )
            if next_run_at is None and schedule_type.is_recurring:
                raise self._invalid_schedule(update.schedule)
            columns['next_run_at'] = next_run_at

        updated = await self.get_store().update_task(task_id, user_id, columns, now)
        if updated is None:
            # Deleted between the read and the write
            raise self._not_found(task_id)
        self.logger.info(f"Updated task '{task_id}': {sorted(columns)}")
        return updated

    async def delete_task(self, task_id: str, user_id: str) -> bool:
        return await self.get_store().delete_task(task_id, user_id)

    async def run_task_now(self, task_id: str, user_id: str) -> RunNowResult:
        """Execute an owned task immediately. See Scheduler.run_task_now()."""
        return await self.get_scheduler().run_task_now(task_id, user_id)

    async def preview_next_run(
        self,
        schedule: Union[_Schedule, Mapping[str, Any]],
        tz_name: Optional[str] = None,
    ) -> Optional[datetime]:
        """When a schedule would next fire if created now in tz_name."""
        if isinstance(schedule, Mapping):
            try:
                schedule = _SCHEDULE_ADAPTER.validate_python(schedule)
            except ValidationError as e:
                raise _validation_failed('schedule', e) from e
        return next_run_for_schedule(schedule, _utc_now(), tz_name)

    # ----------------- Timezones -----------------

    async def update_user_timezone(self, user_id: str, value: Any) -> Optional[str]:
        """
        Store a user's new timezone and reschedule their cron tasks.

        Non-string values leave the setting alone; blank or unknown names are
        stored as UTC. Cron tasks are only rescheduled when the timezone they
        were evaluated in actually changes.

        Returns:
            The timezone now stored, or None if nothing was written
        """
        tz_name = normalize_timezone(value)
        if tz_name is None:
            return None

        settings = self.get_settings()
        # A missing or unusable stored value has been acting as UTC
        previous = resolve_timezone(await settings.get_timezone(user_id))
        await settings.set_timezone(user_id, tz_name)
        if previous != tz_name:
            await self.reconcile_timezone(user_id, tz_name)
        return tz_name

    async def reconcile_timezone(self, user_id: str, tz_name: str) -> int:
        return await self.get_scheduler().reconcile_timezone(user_id, tz_name)

    # ----------------- Scheduler lifecycle -----------------

    def start_scheduler(self) -> SchedulerHandle:
        """
        Start the background poll loop on the running event loop.

        Idempotent: a second call returns the handle of the running loop. If
        the scheduler is disabled in config, returns a handle with
        started=False.
        """
        scheduler = self.get_scheduler()
        if not self.config.scheduler.enabled:
            self.logger.warning('Scheduler is disabled in config, not starting')
            return SchedulerHandle(scheduler=scheduler, started=False)
        return scheduler.start()

    # ----------------- Validation -----------------

    def check(self, *, live: bool = False) -> list[TaskClockError]:
        """
        Validate the app and return all errors found.

        Configuration is already validated at construction; with live=True
        the database is also checked with SELECT 1 on a short-lived engine so
        the app's own pool is not bound to a throwaway event loop.

        Returns:
            List of errors; empty means all validations passed
        """
        errors: list[TaskClockError] = []
        if live:
            errors.extend(self._check_store_connectivity())
        return errors

    def _check_store_connectivity(self) -> list[TaskClockError]:
        errors: list[TaskClockError] = []
        try:
            health_engine = create_async_engine(
                self.config.store.database_url, **self.config.store.engine_kwargs()
            )

            async def _test_connection() -> None:
                try:
                    async with health_engine.connect() as conn:
                        await conn.execute(HEALTH_CHECK_SQL)
                finally:
                    await health_engine.dispose()

            asyncio.run(_test_connection())
        except TaskClockError as exc:
            errors.append(exc)
        except Exception as exc:
            errors.append(
                _no_location(
                    ConfigurationError(
                        message='database connectivity check failed',
                        code=ErrorCode.STORE_INVALID_URL,
                        notes=[
                            f'url: {mask_database_url(self.config.store.database_url)}',
                            str(exc),
                        ],
                        help_text='check database_url in StoreConfig',
                    )
                )
            )
        return errors

    # ----------------- Helpers -----------------

    async def _user_timezone(self, user_id: str) -> str:
        return resolve_timezone(await self.timezone_lookup.get_timezone(user_id))

    @staticmethod
    def _coerce(model: Any, value: Any) -> Any:
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except ValidationError as e:
            raise _validation_failed(model.__name__, e) from e

    @staticmethod
    def _invalid_schedule(schedule: Optional[_Schedule]) -> TaskClockError:
        return _no_location(
            ConfigurationError(
                message=INVALID_SCHEDULE_MESSAGE,
                code=ErrorCode.CONFIG_INVALID_SCHEDULE,
                notes=[f'schedule: {schedule!r}'],
                help_text='check the cron expression or interval',
            )
        )

    @staticmethod
    def _not_found(task_id: str) -> TaskClockError:
        return _no_location(
            TaskNotFoundError(
                message='Scheduled task not found',
                code=ErrorCode.TASK_NOT_FOUND,
                notes=[f"task_id='{task_id}'"],
            )
        )
