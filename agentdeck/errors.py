"""Error types for agentdeck.

Two layers:

- ``AgentDeckError`` + ``Result`` (``Ok``/``Err``) for low-level operations
  that callers are expected to branch on (atomic file writes).
- ``AgentDeckException`` subclasses for the failure taxonomy of the
  orchestration layer. Transport failures (``BackendUnavailable``,
  ``SpawnFailure``, ``BackendTimeout``, ``BackendExitError``) are caught at
  the orchestrator boundary and turned into a synthesized message.
  Checkpoint failures (``EmptyConversation``, ``CheckpointNotFound``,
  ``InvalidCheckpoint``) and ``InvalidIdentifier`` propagate to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class AgentDeckError:
    """Structured error value."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on Ok")


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on Err: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


def format_error(error: AgentDeckError | Exception) -> str:
    """Format an error for terminal display."""
    if isinstance(error, AgentDeckException):
        error = error.to_error()
    if isinstance(error, AgentDeckError):
        text = f"[{error.code}] {error.message}"
        if error.context:
            details = ", ".join(f"{k}={v}" for k, v in error.context.items())
            text += f" ({details})"
        return text
    return f"{type(error).__name__}: {error}"


# ============================================================================
# Exception taxonomy
# ============================================================================


class AgentDeckException(Exception):
    """Base class for agentdeck failures."""

    code = "AGENTDECK_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_error(self) -> AgentDeckError:
        return AgentDeckError(code=self.code, message=self.message, context=dict(self.context))


class BackendUnavailable(AgentDeckException):
    """No backend probe succeeded."""

    code = "BACKEND_UNAVAILABLE"


class SpawnFailure(AgentDeckException):
    """The OS could not start the backend process."""

    code = "SPAWN_FAILURE"


class BackendTimeout(AgentDeckException):
    """The request deadline elapsed before the backend finished."""

    code = "TIMEOUT"


class BackendExitError(AgentDeckException):
    """Nonzero exit, error-pattern stderr, or empty output."""

    code = "BACKEND_EXIT_ERROR"


class ParseDegraded(AgentDeckException):
    """A stream line could not be decoded structurally.

    Never surfaced to callers: the line is kept as RawText instead.
    """

    code = "PARSE_DEGRADED"


class EmptyConversation(AgentDeckException):
    """A checkpoint was requested for an agent with no history."""

    code = "EMPTY_CONVERSATION"


class CheckpointNotFound(AgentDeckException):
    code = "CHECKPOINT_NOT_FOUND"


class InvalidIdentifier(AgentDeckException):
    """A workspace or agent id that cannot be used as a directory name."""

    code = "INVALID_ID"


class InvalidCheckpoint(AgentDeckException):
    """A checkpoint failed structural validation before persistence."""

    code = "INVALID_CHECKPOINT"

    def __init__(self, message: str, errors: list[str] | None = None, **context: Any):
        super().__init__(message, **context)
        self.errors = errors or []


# Failures converted to a synthesized message at the orchestrator boundary
TRANSPORT_ERRORS = (BackendUnavailable, SpawnFailure, BackendTimeout, BackendExitError)
