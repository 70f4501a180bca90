"""Error types and Result container for fleet.

Operations that can fail in expected ways return a ``Result`` instead of
raising, so callers decide how to render the failure:

    result = storage.load(session, checkpoint_id)
    if result.is_err():
        console.print(format_error(result.unwrap_err()))

Adapters that shell out to external tools raise ``FleetException`` (usually
``ExternalToolError``); the capture and rollback layers catch those at their
boundaries and convert them into ``FleetError`` values or warnings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")

# Lookup failures
NOT_FOUND = "NOT_FOUND"
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
CHECKPOINT_NOT_FOUND = "CHECKPOINT_NOT_FOUND"
AMBIGUOUS_REFERENCE = "AMBIGUOUS_REFERENCE"

# Malformed input (pane titles, references, path components)
FORMAT_ERROR = "FORMAT_ERROR"

# Subprocess and filesystem failures
EXTERNAL_TOOL_FAILURE = "EXTERNAL_TOOL_FAILURE"
STORAGE_FAILURE = "STORAGE_FAILURE"

# Capture and rollback outcomes
PARTIAL_CAPTURE = "PARTIAL_CAPTURE"
UNSAFE_ROLLBACK = "UNSAFE_ROLLBACK"
PATCH_APPLY_FAILED = "PATCH_APPLY_FAILED"
INTERRUPT_FAILED = "INTERRUPT_FAILED"

# Codes that mean "the thing you asked for does not exist"
NOT_FOUND_CODES = frozenset({NOT_FOUND, SESSION_NOT_FOUND, CHECKPOINT_NOT_FOUND})


@dataclass(frozen=True)
class FleetError:
    """A structured, renderable error."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_not_found(self) -> bool:
        return self.code in NOT_FOUND_CODES

    def with_context(self, **extra: Any) -> FleetError:
        """Return a copy with additional context entries."""
        return FleetError(code=self.code, message=self.message, context={**self.context, **extra})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


class FleetException(Exception):
    """Exception carrying a FleetError, raised by adapters."""

    def __init__(self, error: FleetError):
        super().__init__(error.message)
        self.error = error


class ExternalToolError(FleetException):
    """A subprocess call failed, timed out, or the tool is missing."""

    def __init__(self, tool: str, args: list[str], message: str, stderr: str = ""):
        super().__init__(
            FleetError(
                code=EXTERNAL_TOOL_FAILURE,
                message=message,
                context={"tool": tool, "args": list(args), "stderr": stderr},
            )
        )
        self.tool = tool
        self.args_list = list(args)
        self.stderr = stderr


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on an Ok result")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    @property
    def ok(self) -> bool:
        return False

    @property
    def value(self) -> None:
        return None

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on an Err result: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Ok[T] | Err[E]


def not_found(message: str, code: str = NOT_FOUND, **context: Any) -> Err[FleetError]:
    """Err for a lookup miss. ``code`` must be one of NOT_FOUND_CODES."""
    return Err(FleetError(code=code, message=message, context=context))


def format_error(error: FleetError) -> str:
    """Render an error for terminal output."""
    text = f"[{error.code}] {error.message}"
    hint = error.context.get("hint")
    if hint:
        text += f"\n  hint: {hint}"
    return text
