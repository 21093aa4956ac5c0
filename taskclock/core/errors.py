"""Rust-style error display for taskclock configuration and startup errors."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Frames under this directory belong to the library, not to the caller
_TASKCLOCK_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for configuration, validation and lookup errors.

    - E200-E299: config / store / schedule definition errors
    - E300-E399: task lookup errors
    """

    CONFIG_INVALID_SCHEDULER = 'E200'
    STORE_INVALID_URL = 'E201'
    CONFIG_INVALID_SCHEDULE = 'E202'
    CONFIG_INVALID_PAYLOAD = 'E203'
    CLI_INVALID_ARGS = 'E204'
    APP_INVALID_LOCATOR = 'E205'

    TASK_NOT_FOUND = 'E300'


class _Colors:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Colors on a TTY unless NO_COLOR is set; TASKCLOCK_FORCE_COLOR wins."""
    if _env_flag('TASKCLOCK_FORCE_COLOR'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class SourceLocation:
    """File and line an error points at."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class TaskClockError(Exception):
    """Base exception for taskclock configuration/validation errors.

    Carries an error code, the caller's source location, notes and help text,
    rendered rustc-style by format_rust_style().
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> TaskClockError:
        self.notes.append(note)
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        code_part = f'[{self.code.value}]' if self.code else ''
        lines: list[str] = ['', f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}']

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                stripped = source_line.lstrip()
                indent = len(source_line) - len(stripped)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} '
                    f'{c.RED}{" " * indent}{"^" * len(stripped)}{c.RESET}'
                )

        for note in self.notes:
            first, *rest = note.split('\n')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {first}')
            lines.extend(f'          {extra}' for extra in rest)

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            lines.extend(f'        {h}' for h in self.help_text.split('\n'))

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text: safe for log records and API error bodies
        return self.format_rust_style(use_colors=False)


@dataclass
class ConfigurationError(TaskClockError):
    """Raised when app, store, scheduler or schedule configuration is invalid."""

    pass


@dataclass
class TaskNotFoundError(TaskClockError):
    """Raised when a task id is not owned by the requesting user."""

    pass


_original_excepthook = sys.excepthook


def _taskclock_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if _env_flag('TASKCLOCK_PLAIN_ERRORS') or not isinstance(exc_value, TaskClockError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('TASKCLOCK_VERBOSE'):
        print(file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _taskclock_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


class ValidationReport:
    """Collects several TaskClockError instances found in one validation pass."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[TaskClockError] = []

    def add(self, error: TaskClockError) -> None:
        self.errors.append(error)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors

        parts = [e.format_rust_style(use_colors=use_colors) for e in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: '
            f'aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(TaskClockError):
    """Raised when a validation pass collected two or more errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Locations live on the individual errors
        super(TaskClockError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise what a report collected.

    - 0 errors: returns normally
    - 1 error: raises that error unchanged
    - 2+ errors: raises MultipleValidationErrors
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """First stack frame outside taskclock internals and site-packages."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_TASKCLOCK_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None
