"""taskclock - user-owned scheduled tasks over PostgreSQL"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import TaskClock
from .core.models.app import AppConfig
from .core.models.store import StoreConfig
from .core.models.schedule import (
    CronSchedule,
    IntervalSchedule,
    OnceSchedule,
    SchedulePattern,
    SchedulerConfig,
)
from .core.models.payload import GenerateMessagePayload, validate_payload
from .core.models.task import (
    TaskDefinition,
    TaskUpdate,
    ExecutionOutcome,
    RunNowError,
    RunNowErrorCode,
    RunNowResult,
)
from .core.models.task_pg import ScheduledTaskModel, UserSettingsModel
from .core.pipeline import GenerationPipeline
from .core.settings import TimezoneLookup
from .core.scheduler import (
    Scheduler,
    SchedulerHandle,
    compute_next_run_at,
    normalize_timezone,
    resolve_timezone,
)
from .core.types.status import ScheduleType, RunStatus
from .core.errors import (
    ErrorCode,
    TaskClockError,
    ConfigurationError,
    TaskNotFoundError,
    ValidationReport,
    MultipleValidationErrors,
)
from .core.types.result import Result, Ok, Err, is_ok, is_err

__all__ = [
    # Core
    'TaskClock',
    'AppConfig',
    'StoreConfig',
    'SchedulerConfig',
    # Schedules
    'CronSchedule',
    'IntervalSchedule',
    'OnceSchedule',
    'SchedulePattern',
    'ScheduleType',
    'compute_next_run_at',
    'normalize_timezone',
    'resolve_timezone',
    # Tasks
    'TaskDefinition',
    'TaskUpdate',
    'GenerateMessagePayload',
    'validate_payload',
    'ScheduledTaskModel',
    'UserSettingsModel',
    'RunStatus',
    'ExecutionOutcome',
    'RunNowError',
    'RunNowErrorCode',
    'RunNowResult',
    # Integration points
    'GenerationPipeline',
    'TimezoneLookup',
    'Scheduler',
    'SchedulerHandle',
    # Errors
    'ErrorCode',
    'TaskClockError',
    'ConfigurationError',
    'TaskNotFoundError',
    'ValidationReport',
    'MultipleValidationErrors',
    # Result
    'Result',
    'Ok',
    'Err',
    'is_ok',
    'is_err',
]
