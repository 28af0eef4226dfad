"""Exception taxonomy shared by the permission engine, tools and scheduler."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from toolrun.permissions.types import PermissionDecision


MAX_ERROR_CHARS = 10_000


class ErrorKind(str, Enum):
    """Tag carried by failed chunks so callers can tell failures apart."""

    VALIDATION = "validation"
    PERMISSION_DENIED = "permission_denied"
    SANDBOX = "sandbox"
    EXECUTION = "execution"
    CANCELLED = "cancelled"


class ToolrunError(Exception):
    """Base class for all toolrun errors."""

    kind: ErrorKind = ErrorKind.EXECUTION


class ValidationError(ToolrunError):
    """A request failed schema or semantic validation."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, error_code: int = 1):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class PermissionDenied(ToolrunError):
    """The permission engine (or the user) refused a call."""

    kind = ErrorKind.PERMISSION_DENIED

    def __init__(self, message: str, decision: Optional["PermissionDecision"] = None):
        super().__init__(message)
        self.message = message
        self.decision = decision


class SandboxConstructionError(ToolrunError):
    """The sandbox policy could not be turned into an isolated command."""

    kind = ErrorKind.SANDBOX


class ExecutionFailure(ToolrunError):
    """The tool's own work failed."""

    kind = ErrorKind.EXECUTION


class Cancelled(ToolrunError):
    """The turn was interrupted before the call finished."""

    kind = ErrorKind.CANCELLED


class SchedulerError(ToolrunError):
    """A fault outside any single call; fatal to the whole batch."""


class CommandParseError(ToolrunError, ValueError):
    """Shell text could not be split into sub-commands."""


def truncate_error(text: str, limit: int = MAX_ERROR_CHARS) -> str:
    """Keep the head and tail of oversized error text."""
    if len(text) <= limit:
        return text
    half = limit // 2
    dropped = len(text) - limit
    return f"{text[:half]}\n\n... [{dropped} characters truncated] ...\n\n{text[-half:]}"


def format_exception(exc: BaseException) -> str:
    """Render an exception for the assistant, truncated to a safe size."""
    message = str(exc) or exc.__class__.__name__
    if not isinstance(exc, ToolrunError):
        message = f"{exc.__class__.__name__}: {message}"
    return truncate_error(message)
