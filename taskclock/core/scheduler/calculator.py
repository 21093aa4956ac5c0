# taskclock/core/scheduler/calculator.py
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from croniter import croniter, CroniterError
from taskclock.core.defaults import DEFAULT_TIMEZONE
from taskclock.core.logging import get_logger
from taskclock.core.models.schedule import (
    CronSchedule,
    IntervalSchedule,
    OnceSchedule,
    schedule_columns,
)
from taskclock.core.types.status import ScheduleType

logger = get_logger('scheduler.calc')


def resolve_timezone(tz_name: Optional[str]) -> str:
    """
    Return tz_name if it names a usable IANA timezone, otherwise 'UTC'.

    Never raises: a bad timezone stored for a user must not stop their
    tasks from being scheduled.
    """
    if not tz_name:
        return DEFAULT_TIMEZONE
    try:
        # The zone must load and be able to render a wall-clock time
        datetime.now(ZoneInfo(tz_name)).strftime('%Y-%m-%d %H:%M:%S')
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError):
        logger.debug(f"Unknown timezone '{tz_name}', falling back to UTC")
        return DEFAULT_TIMEZONE
    return tz_name


def normalize_timezone(value: Any) -> Optional[str]:
    """
    Normalize a timezone submitted with a settings update.

    Returns:
        None if value is not a string (leave the stored timezone alone),
        'UTC' for blank or unknown names, else the trimmed name.
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return DEFAULT_TIMEZONE
    return resolve_timezone(trimmed)


def compute_next_run_at(
    schedule_type: ScheduleType | str,
    cron_expression: Optional[str] = None,
    interval_seconds: Optional[int] = None,
    run_at: Optional[datetime] = None,
    *,
    reference_date: datetime,
    tz_str: Optional[str] = DEFAULT_TIMEZONE,
) -> Optional[datetime]:
    """
    Calculate the next execution instant of a schedule.

    Args:
        schedule_type: 'cron', 'interval' or 'once'
        cron_expression: expression for cron schedules
        interval_seconds: period for interval schedules
        run_at: instant for one-shot schedules
        reference_date: compute the next run after this instant (timezone-aware)
        tz_str: IANA timezone used to evaluate cron expressions

    Returns:
        Next run as a UTC-aware datetime, or None when the schedule fields
        cannot produce one (unknown schedule_type, missing/non-positive
        interval, missing or unparseable cron expression, missing run_at).

    Raises:
        ValueError: reference_date is naive
    """
    if reference_date.tzinfo is None:
        raise ValueError('reference_date must be timezone-aware')

    try:
        kind = ScheduleType(schedule_type)
    except ValueError:
        logger.warning(f"Unknown schedule type '{schedule_type}'")
        return None

    match kind:
        case ScheduleType.ONCE:
            return _as_utc(run_at) if run_at is not None else None
        case ScheduleType.INTERVAL:
            return _calculate_interval(interval_seconds, reference_date)
        case ScheduleType.CRON:
            return _calculate_cron(
                cron_expression, reference_date, resolve_timezone(tz_str)
            )


def next_run_for_schedule(
    pattern: CronSchedule | IntervalSchedule | OnceSchedule,
    reference_date: datetime,
    tz_str: Optional[str] = DEFAULT_TIMEZONE,
) -> Optional[datetime]:
    """compute_next_run_at() for a validated schedule variant."""
    columns = schedule_columns(pattern)
    return compute_next_run_at(
        columns['schedule_type'],  # type: ignore[arg-type]
        cron_expression=columns['cron_expression'],  # type: ignore[arg-type]
        interval_seconds=columns['interval_seconds'],  # type: ignore[arg-type]
        run_at=columns['run_at'],  # type: ignore[arg-type]
        reference_date=reference_date,
        tz_str=tz_str,
    )


def _calculate_interval(
    interval_seconds: Optional[int], reference_date: datetime
) -> Optional[datetime]:
    if not interval_seconds or interval_seconds <= 0:
        return None
    return _as_utc(reference_date + timedelta(seconds=interval_seconds))


def _calculate_cron(
    cron_expression: Optional[str], reference_date: datetime, tz_name: str
) -> Optional[datetime]:
    """Next cron match strictly after reference_date, evaluated in tz_name."""
    if not cron_expression:
        return None

    local_reference = reference_date.astimezone(ZoneInfo(tz_name))
    try:
        next_run = croniter(cron_expression, local_reference).get_next(datetime)
    except (CroniterError, ValueError, KeyError) as e:
        logger.debug(f"Cannot parse cron expression '{cron_expression}': {e}")
        return None

    if next_run.tzinfo is None:
        raise RuntimeError('Calculated next run is not timezone-aware')
    return _as_utc(next_run)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
