"""Error types for propflow.

Startup and configuration problems raise ``PropflowError`` subclasses that
render in a compiler-like layout. Runtime engine failures raise
``EngineError`` subclasses that carry the HTTP status the API maps them to.
"""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

# Absolute path to the propflow package directory.
# Used by _find_user_frame to tell library frames from user code.
_PROPFLOW_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for startup/validation errors.

    - E100-E199: Handler definition errors
    - E200-E299: Config errors
    - E300-E399: Registry errors
    """

    # Handler definition (E100-E199)
    HANDLER_NOT_ASYNC = 'E100'
    HANDLER_INVALID_WORKFLOW_TYPE = 'E101'

    # Config (E200-E299)
    CONFIG_INVALID_DATABASE_URL = 'E200'
    CONFIG_INVALID_QUEUE = 'E201'
    CONFIG_INVALID_GOVERNOR = 'E202'
    CONFIG_INVALID_STREAM = 'E203'
    CONFIG_INVALID_INTAKE = 'E204'
    CONFIG_INVALID_LOCK = 'E205'
    CONFIG_INVALID_RESILIENCE = 'E206'
    CLI_INVALID_ARGS = 'E207'
    CONFIG_INVALID_ENV = 'E208'

    # Registry (E300-E399)
    HANDLER_NOT_REGISTERED = 'E300'
    HANDLER_DUPLICATE = 'E301'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    YELLOW = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    if _env_flag('PROPFLOW_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Location of a function definition, or None for builtins and mocks."""
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class PropflowError(Exception):
    """Base exception for propflow startup/validation errors.

    Rendered as an error code header, the offending source line, then any
    notes and help text.
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

    def with_note(self, note: str) -> PropflowError:
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> PropflowError:
        self.help_text = help_text
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
                underline = ' ' * (len(source_line) - len(stripped)) + '^' * len(stripped)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}')

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
        # Plain text so the message is safe for logs and JSON bodies.
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _propflow_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    if _env_flag('PROPFLOW_PLAIN_ERRORS') or not isinstance(exc_value, PropflowError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('PROPFLOW_VERBOSE'):
        c = _Colors if _should_use_colors() else _NoColors
        print(file=sys.stderr)
        print(f'{c.DIM}Full traceback (PROPFLOW_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the exception hook that pretty-prints PropflowError."""
    sys.excepthook = _propflow_excepthook


def uninstall_error_handler() -> None:
    sys.excepthook = _original_excepthook


@dataclass
class ConfigurationError(PropflowError):
    """Raised when app configuration is invalid."""

    pass


@dataclass
class HandlerDefinitionError(PropflowError):
    """Raised when a workflow handler cannot be registered as written."""

    pass


@dataclass
class RegistryError(PropflowError):
    """Raised when a handler registry operation fails."""

    pass


class ValidationReport:
    """Collects multiple PropflowError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[PropflowError] = []

    def add(self, error: PropflowError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors
        parts = [e.format_rust_style(use_colors=use_colors) for e in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(PropflowError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Locations live on the individual errors
        super(PropflowError, self).__init__(self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise nothing for 0 errors, the error itself for 1, a wrapper for 2+."""
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
    """Find the first frame outside of propflow internals and site-packages."""
    frame = inspect.currentframe()
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_PROPFLOW_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None


def handler_definition_error(
    message: str,
    *,
    code: ErrorCode | None = None,
    fn: Callable[..., Any] | None = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
) -> HandlerDefinitionError:
    """Create a HandlerDefinitionError pointing at the handler's definition."""
    return HandlerDefinitionError(
        message=message,
        code=code,
        location=SourceLocation.from_function(fn) if fn is not None else None,
        notes=notes or [],
        help_text=help_text,
    )


# =============================================================================
# Runtime engine errors
# =============================================================================


class EngineError(Exception):
    """Base class for failures raised by engine operations at runtime."""

    http_status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class IntakeValidationError(EngineError):
    """Event or trigger is missing fields its workflow requires."""

    http_status = 400


class IntakeAuthError(EngineError):
    http_status = 401


class ScopeForbiddenError(EngineError):
    """Caller is authenticated but the target is outside their scope."""

    http_status = 403


class NotFoundError(EngineError):
    http_status = 404


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f'run {run_id} not found')
        self.run_id = run_id


class ActionNotFoundError(NotFoundError):
    def __init__(self, action_id: str) -> None:
        super().__init__(f'action {action_id} not found')
        self.action_id = action_id


class ExceptionNotFoundError(NotFoundError):
    def __init__(self, exception_id: str) -> None:
        super().__init__(f'exception {exception_id} not found')
        self.exception_id = exception_id


class ThreadNotFoundError(NotFoundError):
    def __init__(self, thread_id: str) -> None:
        super().__init__(f'thread {thread_id} not found')
        self.thread_id = thread_id


class NotDeadLetteredError(EngineError):
    """Replay was requested for a run that is not in the dead-letter set."""

    http_status = 400

    def __init__(self, run_id: str) -> None:
        super().__init__(f'run {run_id} is not dead-lettered')
        self.run_id = run_id


class ConflictError(EngineError):
    http_status = 409


class ActionContentionError(ConflictError):
    """Another approver holds the lock or the claim, or the action was already handled."""


class ActionFinalizeLostError(ConflictError):
    """The claim was taken over between execution and finalization."""

    def __init__(self, action_id: str) -> None:
        super().__init__(f'action {action_id} claim was lost before finalization')
        self.action_id = action_id


class RunStateConflictError(ConflictError):
    """A conditional run transition matched zero rows."""


class InvalidTransitionError(ConflictError):
    pass


class MetadataDecodeError(EngineError):
    """Stored orchestration metadata is missing or not decodable."""
