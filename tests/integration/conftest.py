"""Integration test fixtures (real PostgreSQL)."""

from __future__ import annotations

import os
import uuid
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import delete

from taskclock.core.app import TaskClock
from taskclock.core.models.app import AppConfig
from taskclock.core.models.schedule import SchedulerConfig
from taskclock.core.models.store import StoreConfig
from taskclock.core.models.task_pg import ScheduledTaskModel, UserSettingsModel

DB_URL = os.environ.get('TASKCLOCK_TEST_DATABASE_URL')


class RecordingPipeline:
    """Pipeline double that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.calls: list[tuple[dict[str, Any], str]] = []
        self.error: BaseException | None = None

    async def invoke(
        self, payload: dict[str, Any], user_id: str, start_time: float
    ) -> Any:
        self.calls.append((payload, user_id))
        if self.error is not None:
            raise self.error
        return {'generated': True}


@pytest.fixture(scope='session')
def db_url() -> str:
    if not DB_URL:
        pytest.skip('TASKCLOCK_TEST_DATABASE_URL is not set')
    return DB_URL


@pytest.fixture
def pipeline() -> RecordingPipeline:
    return RecordingPipeline()


@pytest.fixture
def user_id() -> str:
    """Fresh owner per test so rows never collide across tests."""
    return f'it-{uuid.uuid4()}'


@pytest_asyncio.fixture
async def app(
    db_url: str, pipeline: RecordingPipeline, user_id: str
) -> AsyncGenerator[TaskClock, None]:
    """TaskClock with schema initialized; the test user's rows are removed afterwards."""
    config = AppConfig(
        store=StoreConfig(database_url=db_url, pool_size=2),
        scheduler=SchedulerConfig(poll_interval_seconds=1, lease_timeout_ms=60_000),
    )
    clock = TaskClock(config, pipeline)
    await clock.ensure_schema()
    yield clock

    async with clock.get_session_factory()() as session:
        await session.execute(
            delete(ScheduledTaskModel).where(ScheduledTaskModel.user_id == user_id)
        )
        await session.execute(
            delete(UserSettingsModel).where(UserSettingsModel.user_id == user_id)
        )
        await session.commit()
    await clock.close()
