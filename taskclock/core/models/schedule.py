from __future__ import annotations
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Self
from taskclock.core.defaults import (
    DEFAULT_LEASE_TIMEOUT_MS,
    DEFAULT_MAX_TASKS_PER_TICK,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from taskclock.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from taskclock.core.types.status import ScheduleType


class CronSchedule(BaseModel):
    """
    Run whenever a cron expression matches, evaluated in the owner's timezone.

    Examples:
        - Every weekday at 9 AM: CronSchedule(cron='0 9 * * 1-5')
        - Every 15 minutes: CronSchedule(cron='*/15 * * * *')
    """

    model_config = ConfigDict(frozen=True)

    type: Literal['cron'] = 'cron'
    cron: str = Field(min_length=1, description='Cron expression (5 or 6 fields)')

    @property
    def schedule_type(self) -> ScheduleType:
        return ScheduleType.CRON


class IntervalSchedule(BaseModel):
    """
    Run every N seconds, counted from the previous execution.

    Examples:
        - Hourly: IntervalSchedule(interval_seconds=3600)
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal['interval'] = 'interval'
    interval_seconds: int = Field(
        gt=0, alias='intervalSeconds', description='Seconds between runs'
    )

    @property
    def schedule_type(self) -> ScheduleType:
        return ScheduleType.INTERVAL


class OnceSchedule(BaseModel):
    """
    Run a single time at run_at, then disable the task.

    run_at accepts a datetime, an ISO-8601 string or a unix timestamp.
    Naive values are read as UTC.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal['once'] = 'once'
    run_at: datetime = Field(alias='runAt', description='Instant to run at')

    @field_validator('run_at')
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def schedule_type(self) -> ScheduleType:
        return ScheduleType.ONCE


SchedulePattern = Annotated[
    Union[CronSchedule, IntervalSchedule, OnceSchedule],
    Field(discriminator='type'),
]


class SchedulerConfig(BaseModel):
    """
    Poll loop and leasing settings.

    Fields:
        - enabled: master switch for the poll loop
        - poll_interval_seconds: pause between ticks (first tick runs immediately)
        - max_tasks_per_tick: maximum tasks claimed per tick
        - lease_timeout_ms: age after which another scheduler may take over a claim
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True, description='Master scheduler enable switch')
    poll_interval_seconds: int = Field(
        default=DEFAULT_POLL_INTERVAL_SECONDS,
        description='Seconds between ticks (1-3600)',
    )
    max_tasks_per_tick: int = Field(
        default=DEFAULT_MAX_TASKS_PER_TICK,
        description='Tasks claimed per tick (1-1000)',
    )
    lease_timeout_ms: int = Field(
        default=DEFAULT_LEASE_TIMEOUT_MS,
        description='Lease validity in milliseconds (>= 1000)',
    )

    @model_validator(mode='after')
    def validate_bounds(self) -> Self:
        """Report every out-of-range setting at once."""
        report = ValidationReport('scheduler')
        if not 1 <= self.poll_interval_seconds <= 3600:
            report.add(
                ConfigurationError(
                    message='poll_interval_seconds out of range',
                    code=ErrorCode.CONFIG_INVALID_SCHEDULER,
                    notes=[f'got poll_interval_seconds={self.poll_interval_seconds}'],
                    help_text='use a value between 1 and 3600',
                )
            )
        if not 1 <= self.max_tasks_per_tick <= 1000:
            report.add(
                ConfigurationError(
                    message='max_tasks_per_tick out of range',
                    code=ErrorCode.CONFIG_INVALID_SCHEDULER,
                    notes=[f'got max_tasks_per_tick={self.max_tasks_per_tick}'],
                    help_text='use a value between 1 and 1000',
                )
            )
        if self.lease_timeout_ms < 1000:
            report.add(
                ConfigurationError(
                    message='lease_timeout_ms must be at least one second',
                    code=ErrorCode.CONFIG_INVALID_SCHEDULER,
                    notes=[f'got lease_timeout_ms={self.lease_timeout_ms}'],
                    help_text='leases shorter than a tick let slow runs be stolen',
                )
            )
        raise_collected(report)
        return self


def schedule_columns(
    pattern: Optional[Union[CronSchedule, IntervalSchedule, OnceSchedule]],
) -> dict[str, object]:
    """Flatten a schedule variant into the task table's schedule columns."""
    match pattern:
        case CronSchedule(cron=cron):
            return {
                'schedule_type': ScheduleType.CRON.value,
                'cron_expression': cron,
                'interval_seconds': None,
                'run_at': None,
            }
        case IntervalSchedule(interval_seconds=seconds):
            return {
                'schedule_type': ScheduleType.INTERVAL.value,
                'cron_expression': None,
                'interval_seconds': seconds,
                'run_at': None,
            }
        case OnceSchedule(run_at=run_at):
            return {
                'schedule_type': ScheduleType.ONCE.value,
                'cron_expression': None,
                'interval_seconds': None,
                'run_at': run_at,
            }
        case _:
            raise ValueError(f'unknown schedule pattern: {pattern!r}')
