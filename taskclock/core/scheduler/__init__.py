# taskclock/core/scheduler/__init__.py
"""
Scheduling and execution of stored tasks.

Main components:
- Scheduler: Poll loop and on-demand runner
- TaskExecutor: Runs one claimed task and records the outcome
- LeaseManager: Claims and releases tasks across scheduler processes
- ScheduledTaskStore: Database state of scheduled tasks
- compute_next_run_at: Next run time calculation

Example usage:
    from taskclock.core.scheduler import Scheduler

    handle = scheduler.start()
    ...
    await handle.stop()
"""

from taskclock.core.scheduler.service import Scheduler, SchedulerHandle
from taskclock.core.scheduler.executor import TaskExecutor
from taskclock.core.scheduler.lease import LeaseManager, generate_worker_id
from taskclock.core.scheduler.state import ScheduledTaskStore
from taskclock.core.scheduler.calculator import (
    compute_next_run_at,
    next_run_for_schedule,
    normalize_timezone,
    resolve_timezone,
)

__all__ = [
    'Scheduler',
    'SchedulerHandle',
    'TaskExecutor',
    'LeaseManager',
    'generate_worker_id',
    'ScheduledTaskStore',
    'compute_next_run_at',
    'next_run_for_schedule',
    'normalize_timezone',
    'resolve_timezone',
]
