# taskclock/core/cli.py
"""
CLI for the taskclock scheduler, check and init-db commands.

The app is located the way Celery does it:
1. `taskclock scheduler myproject.clock:app` imports a dotted module path
2. `taskclock scheduler myproject/clock.py:app` imports a file
3. Without `:attr` the module must define exactly one TaskClock instance
If cwd has pyproject.toml, cwd is added to sys.path first.
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
import sys

from taskclock.core.app import TaskClock
from taskclock.core.errors import (
    ConfigurationError,
    ErrorCode,
    TaskClockError,
    ValidationReport,
)
from taskclock.core.logging import apply_level, get_logger
from taskclock.core.utils.imports import import_file_path, setup_sys_path_from_cwd

LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return the locator from --module or the positional argument."""
    locator = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not locator:
        raise ConfigurationError(
            message='app locator is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional locator provided'],
            help_text=(
                'provide the app in one of these formats:\n'
                '  taskclock scheduler myproject.clock:app  (recommended)\n'
                '  taskclock scheduler myproject/clock.py:app  (file path)\n'
                '  taskclock scheduler myproject.clock  (auto-discover)'
            ),
        )
    return locator


def parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Split a locator into (module_path, attribute_name).

    - "myproject.clock:app" -> ("myproject.clock", "app")
    - "myproject/clock.py" -> ("myproject/clock.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr or None)
    return (locator, None)


def is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def discover_app(locator: str) -> TaskClock:
    """
    Import the module named by locator and return its TaskClock instance.

    Raises:
        ConfigurationError: module missing, attribute missing or ambiguous,
            or the attribute is not a TaskClock
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = parse_locator(locator)

    if is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        try:
            module = import_file_path(module_path)
        except FileNotFoundError as e:
            raise ConfigurationError(
                message=f'module file not found: {module_path}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[str(e)],
                help_text='check the path, or use a dotted module path instead',
            ) from e
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            ) from e

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, TaskClock):
            got = 'nothing' if obj is None else type(obj).__name__
            raise ConfigurationError(
                message=f"'{attr_name}' in '{module_path}' is not a TaskClock app",
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'found {got}'],
                help_text='point the locator at a TaskClock instance: module.path:variable',
            )
        app, var_name = obj, attr_name
    else:
        found = [
            (obj, name)
            for name, obj in vars(module).items()
            if not name.startswith('_') and isinstance(obj, TaskClock)
        ]
        if len(found) != 1:
            raise ConfigurationError(
                message=(
                    f"no TaskClock app found in '{module_path}'"
                    if not found
                    else f"multiple TaskClock apps found in '{module_path}'"
                ),
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'candidates: {[name for _, name in found]}'] if found else [],
                help_text='name the app explicitly: module.path:variable',
            )
        app, var_name = found[0]

    logger.info(f"Discovered app '{var_name}' from {module_path}")
    return app


def setup_logging(loglevel: str) -> None:
    apply_level(getattr(logging, loglevel.upper(), logging.INFO))


def _load_app(args: argparse.Namespace) -> TaskClock:
    logger = get_logger('cli')
    try:
        return discover_app(_resolve_module_argument(args))
    except TaskClockError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to load app: {e}')
        sys.exit(1)


def scheduler_command(args: argparse.Namespace) -> None:
    """Run the poll loop until SIGINT/SIGTERM."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    logger.info(f'Starting scheduler with loglevel={args.loglevel}')

    app = _load_app(args)
    if not app.config.scheduler.enabled:
        logger.warning('Scheduler is disabled in config')
        sys.exit(1)

    for line in app.config.describe():
        logger.info(line)

    async def run_scheduler() -> None:
        scheduler = app.get_scheduler()
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping scheduler...')
            scheduler.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        try:
            if args.init_db:
                await app.ensure_schema()
            await scheduler.run_forever()
        finally:
            await app.close()

    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info('Scheduler interrupted by user')
    except Exception as e:
        logger.error(f'Scheduler failed: {e}', exc_info=True)
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Validate the app without starting anything."""
    setup_logging(args.loglevel)
    app = _load_app(args)

    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)

    print('ok: all validations passed')
    for line in app.config.describe():
        print(f'  {line}')
    sys.exit(0)


def init_db_command(args: argparse.Namespace) -> None:
    """Create the tables used by taskclock."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    app = _load_app(args)

    async def init_db() -> None:
        try:
            await app.ensure_schema()
        finally:
            await app.close()

    try:
        asyncio.run(init_db())
    except Exception as e:
        logger.error(f'Schema creation failed: {e}')
        sys.exit(1)


def _add_locator_arguments(parser: argparse.ArgumentParser, default_level: str) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='App locator (e.g., myproject.clock:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='App locator (e.g., myproject.clock:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=LOGLEVELS,
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='taskclock',
        description='taskclock - scheduled task runner',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the scheduler
  taskclock scheduler myproject.clock:app

  # Create tables, then validate config and connectivity
  taskclock init-db myproject.clock:app
  taskclock check myproject.clock:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    scheduler_parser = subparsers.add_parser(
        'scheduler', help='Start the scheduler service'
    )
    _add_locator_arguments(scheduler_parser, 'INFO')
    scheduler_parser.add_argument(
        '--init-db',
        action='store_true',
        default=False,
        help='Create missing tables before starting',
    )

    check_parser = subparsers.add_parser(
        'check', help='Validate app configuration without starting services'
    )
    _add_locator_arguments(check_parser, 'WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check database connectivity (SELECT 1)',
    )

    init_db_parser = subparsers.add_parser(
        'init-db', help='Create the taskclock tables if missing'
    )
    _add_locator_arguments(init_db_parser, 'INFO')

    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args()

        match args.command:
            case 'scheduler':
                scheduler_command(args)
            case 'check':
                check_command(args)
            case 'init-db':
                init_db_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
