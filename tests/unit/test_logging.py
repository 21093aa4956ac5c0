"""Unit tests for taskclock logging module."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator

import pytest

from taskclock.core.logging import ColoredFormatter, apply_level, get_logger, set_default_level

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_default_level() -> Iterator[None]:
    """Save and restore the module-level _default_level after each test."""
    from taskclock.core import logging as taskclock_logging

    original = taskclock_logging._default_level
    yield
    set_default_level(original)


def _unique() -> str:
    return f'test_{uuid.uuid4().hex[:8]}'


class TestGetLogger:
    def test_namespaced_under_taskclock(self) -> None:
        name = _unique()
        assert get_logger(name).name == f'taskclock.{name}'

    def test_single_handler_no_propagation(self) -> None:
        name = _unique()
        logger = get_logger(name)
        again = get_logger(name)

        assert logger is again
        assert len(logger.handlers) == 1
        assert logger.propagate is False

    def test_new_logger_uses_default_level(self) -> None:
        set_default_level(logging.WARNING)
        assert get_logger(_unique()).level == logging.WARNING


class TestApplyLevel:
    def test_updates_existing_loggers_and_handlers(self) -> None:
        logger = get_logger(_unique())
        apply_level(logging.DEBUG)

        assert logger.level == logging.DEBUG
        assert all(h.level == logging.DEBUG for h in logger.handlers)

    def test_leaves_foreign_loggers_alone(self) -> None:
        foreign = logging.getLogger(f'elsewhere.{_unique()}')
        foreign.setLevel(logging.CRITICAL)
        apply_level(logging.DEBUG)
        assert foreign.level == logging.CRITICAL


class TestColoredFormatter:
    def test_strips_package_prefix(self) -> None:
        record = logging.LogRecord(
            name='taskclock.scheduler.lease',
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg='Lease on task %s acquired',
            args=('t1',),
            exc_info=None,
        )
        text = ColoredFormatter().format(record)

        assert '[scheduler.lease]' in text
        assert '[taskclock.' not in text
        assert '[INFO]' in text
        assert 'Lease on task t1 acquired' in text
