"""Shared default constants for taskclock."""

# How long a claim on a task stays valid. After this window any scheduler
# may reclaim the task, which bounds how long a crashed worker blocks it.
DEFAULT_LEASE_TIMEOUT_MS: int = 300_000  # 5 minutes

# Fixed poll cadence of the due-task loop.
DEFAULT_POLL_INTERVAL_SECONDS: int = 60

# Upper bound on tasks claimed and executed in one tick.
DEFAULT_MAX_TASKS_PER_TICK: int = 10

# Timezone used when a user has none stored or the stored one is unusable.
DEFAULT_TIMEZONE: str = 'UTC'
