from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class ScheduledTaskModel(Base):
    """
    A user-owned job that hands its payload to the generation pipeline on a schedule.

    - id: str # uuid4
    - user_id: str # owner; every user-facing query is scoped by it
    - name / description: str # human label, optional description
    - enabled: bool # disabled tasks are never picked up by the poll loop
    - schedule_type: str # 'cron' | 'interval' | 'once'
    - cron_expression / interval_seconds / run_at # the field matching schedule_type
    - payload: dict # opaque request document passed through to the pipeline
    - next_run_at: datetime # NULL means the task will never run again
    - last_run_at / last_run_status / last_run_error # outcome of the latest run
    - locked_at / locked_by # lease: when and by which scheduler the task was claimed
    - created_at / updated_at
    """

    __tablename__ = 'taskclock_scheduled_tasks'
    __table_args__ = (
        # Poll query: enabled AND next_run_at <= now ORDER BY next_run_at
        Index(
            'idx_taskclock_tasks_due',
            'next_run_at',
            postgresql_where=text('enabled'),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text('true'),
    )

    schedule_type: Mapped[str] = mapped_column(String(16), nullable=False)
    cron_expression: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    interval_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    next_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_run_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    last_run_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    locked_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text('NOW()'),
    )

    def to_dict(self) -> dict[str, Any]:
        """Plain representation for API responses."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'description': self.description,
            'enabled': self.enabled,
            'schedule_type': self.schedule_type,
            'cron_expression': self.cron_expression,
            'interval_seconds': self.interval_seconds,
            'run_at': self.run_at,
            'payload': self.payload,
            'next_run_at': self.next_run_at,
            'last_run_at': self.last_run_at,
            'last_run_status': self.last_run_status,
            'last_run_error': self.last_run_error,
            'locked_at': self.locked_at,
            'locked_by': self.locked_by,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class UserSettingsModel(Base):
    """Per-user settings the scheduler reads: currently only the IANA timezone."""

    __tablename__ = 'taskclock_user_settings'

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utc_now,
        server_default=text('NOW()'),
    )
