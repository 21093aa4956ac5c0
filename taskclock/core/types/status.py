# core/types/status.py
"""
Enums shared by models and scheduler components.
This module should not import from other taskclock modules.
"""

from enum import Enum


class ScheduleType(str, Enum):
    """How a task decides when it runs next"""

    CRON = 'cron'  # cron expression evaluated in the owner's timezone
    INTERVAL = 'interval'  # fixed number of seconds after the previous run
    ONCE = 'once'  # single run at a fixed instant, then disabled

    @property
    def is_recurring(self) -> bool:
        return self is not ScheduleType.ONCE


class RunStatus(str, Enum):
    """Outcome recorded in last_run_status after an execution"""

    QUEUED = 'queued'  # pipeline accepted the payload
    ERROR = 'error'  # pipeline failed, payload invalid, or schedule broken
