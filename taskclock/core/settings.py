# taskclock/core/settings.py
from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional, Protocol
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from taskclock.core.logging import get_logger
from taskclock.core.models.task_pg import UserSettingsModel

logger = get_logger('settings')


class TimezoneLookup(Protocol):
    """Where the scheduler reads a user's timezone from."""

    async def get_timezone(self, user_id: str) -> Optional[str]:
        """Stored IANA timezone name, or None if the user has none."""
        ...


class UserSettingsStore:
    """User settings rows in PostgreSQL; implements TimezoneLookup."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_timezone(self, user_id: str) -> Optional[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UserSettingsModel.timezone).where(
                    UserSettingsModel.user_id == user_id
                )
            )
            return result.scalar_one_or_none()

    async def set_timezone(self, user_id: str, tz_name: str) -> None:
        """Create or update the user's settings row with a new timezone."""
        now = datetime.now(timezone.utc)
        stmt = insert(UserSettingsModel).values(
            user_id=user_id, timezone=tz_name, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserSettingsModel.user_id],
            set_={'timezone': tz_name, 'updated_at': now},
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug(f"Stored timezone '{tz_name}' for user '{user_id}'")
