"""Unit tests for CLI locator parsing and app discovery."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from taskclock.core.app import TaskClock
from taskclock.core.cli import build_parser, discover_app, is_file_path, parse_locator
from taskclock.core.errors import ConfigurationError, ErrorCode

pytestmark = pytest.mark.unit

_APP_MODULE = textwrap.dedent(
    """
    from taskclock import AppConfig, StoreConfig, TaskClock


    class _Pipeline:
        async def invoke(self, payload, user_id, start_time):
            return None


    _config = AppConfig(
        store=StoreConfig(database_url='postgresql+psycopg://u:p@localhost/db'),
    )
    {apps}
    """
)


def _write_module(tmp_path: Path, apps: str, name: str = 'clock.py') -> Path:
    path = tmp_path / name
    path.write_text(_APP_MODULE.format(apps=apps))
    return path


@pytest.fixture(autouse=True)
def _isolated_sys_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(sys, 'path', list(sys.path))
    monkeypatch.chdir(tmp_path)


class TestParseLocator:
    def test_module_and_attribute(self) -> None:
        assert parse_locator('myproject.clock:app') == ('myproject.clock', 'app')

    def test_module_only(self) -> None:
        assert parse_locator('myproject.clock') == ('myproject.clock', None)

    def test_trailing_colon_means_no_attribute(self) -> None:
        assert parse_locator('myproject/clock.py:') == ('myproject/clock.py', None)


class TestIsFilePath:
    @pytest.mark.parametrize('value', ['clock.py', 'myproject/clock', 'a/b.py'])
    def test_file_paths(self, value: str) -> None:
        assert is_file_path(value) is True

    def test_dotted_module(self) -> None:
        assert is_file_path('myproject.clock') is False


class TestDiscoverApp:
    def test_explicit_attribute(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, 'app = TaskClock(_config, _Pipeline())')

        app = discover_app(f'{path}:app')

        assert isinstance(app, TaskClock)

    def test_single_instance_auto_discovered(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, 'clock = TaskClock(_config, _Pipeline())')

        assert isinstance(discover_app(str(path)), TaskClock)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(str(tmp_path / 'nope.py'))
        assert exc_info.value.code == ErrorCode.APP_INVALID_LOCATOR

    def test_missing_module(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            discover_app('definitely_not_a_module_xyz:app')
        assert exc_info.value.code == ErrorCode.APP_INVALID_LOCATOR

    def test_attribute_of_wrong_type(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, 'app = 42')

        with pytest.raises(ConfigurationError, match='not a TaskClock app') as exc_info:
            discover_app(f'{path}:app')
        assert 'found int' in exc_info.value.notes

    def test_no_candidates(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, '')

        with pytest.raises(ConfigurationError, match='no TaskClock app found'):
            discover_app(str(path))

    def test_multiple_candidates(self, tmp_path: Path) -> None:
        path = _write_module(
            tmp_path,
            'a = TaskClock(_config, _Pipeline())\nb = TaskClock(_config, _Pipeline())',
        )

        with pytest.raises(ConfigurationError, match='multiple TaskClock apps'):
            discover_app(str(path))


class TestBuildParser:
    def test_scheduler_with_init_db(self) -> None:
        args = build_parser().parse_args(
            ['scheduler', 'myproject.clock:app', '--init-db', '--loglevel', 'debug']
        )
        assert args.command == 'scheduler'
        assert args.module_pos == 'myproject.clock:app'
        assert args.init_db is True
        assert args.loglevel == 'DEBUG'

    def test_check_defaults(self) -> None:
        args = build_parser().parse_args(['check', '-m', 'myproject.clock:app'])
        assert args.command == 'check'
        assert args.module == 'myproject.clock:app'
        assert args.live is False
        assert args.loglevel == 'WARNING'

    def test_init_db(self) -> None:
        args = build_parser().parse_args(['init-db', 'myproject.clock'])
        assert args.command == 'init-db'
