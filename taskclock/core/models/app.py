# taskclock/core/models/app.py
from pydantic import BaseModel, ConfigDict, Field
from taskclock.core.models.store import StoreConfig
from taskclock.core.models.schedule import SchedulerConfig
from taskclock.core.utils.url import mask_database_url


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    store: StoreConfig
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    def describe(self) -> list[str]:
        """One line per setting, secrets masked; used by the CLI on startup."""
        return [
            f'database: {mask_database_url(self.store.database_url)}',
            f'scheduler enabled: {self.scheduler.enabled}',
            f'poll interval: {self.scheduler.poll_interval_seconds}s',
            f'max tasks per tick: {self.scheduler.max_tasks_per_tick}',
            f'lease timeout: {self.scheduler.lease_timeout_ms}ms',
        ]
