# taskclock/core/utils/db.py
"""
Deciding whether a database failure is worth another attempt.

The poll loop logs such failures as warnings and tries again on the next
tick; the on-demand runner reports them as retryable. A refused or dropped
connection qualifies, a constraint violation or bad SQL does not.
"""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError

_TRANSIENT_ERRORS = (OperationalError, InterfaceError, SAOperationalError)
_DISCONNECT_FLAGS = ('connection_invalidated', 'is_disconnect')


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """SQLAlchemy flags a lost connection in one of two attributes."""
    return any(bool(getattr(exc, flag, False)) for flag in _DISCONNECT_FLAGS)


def is_retryable_connection_error(exc: BaseException) -> bool:
    if isinstance(exc, _TRANSIENT_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and is_dbapi_disconnect(exc)
