"""Control-flow signals and error types raised inside a run.

Signals (``VMSignal`` subclasses) are normal control states: a program raises
them to pause, single-step or suspend.  Everything else here is a failure,
classified as iteration-recoverable or run-fatal by the loop runner.
"""

from __future__ import annotations

import json
from typing import Any, Optional


def _safe_json(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return repr(value)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


class VMSignal(Exception):
    """Base class for control signals crossing the sandbox boundary.

    ``variables`` is filled by the sandbox with the program locals at the
    point the signal was raised.
    """

    def __init__(self, reason: str = "", payload: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.payload = payload
        self.variables: dict[str, Any] = {}

    def __str__(self) -> str:
        return self.reason or type(self).__name__


class ThinkSignal(VMSignal):
    """The program asks to pause and reconsider before continuing.

    ``context`` is folded into the injected variables of the next iteration
    together with the program locals.
    """

    def __init__(self, reason: str = "Thinking requested", context: Any = None) -> None:
        super().__init__(reason, context)

    @property
    def context(self) -> Any:
        return self.payload


class ExecuteSignal(VMSignal):
    """Return control to the host without re-invoking the model."""


class InterruptSignal(VMSignal):
    """A tool call cannot complete synchronously and suspends the run.

    The tool wrapper annotates the signal with ``tool_call`` (name, object,
    input and JSON schemas) before it reaches the sandbox.
    """

    def __init__(self, reason: str = "Interrupted", payload: Any = None) -> None:
        super().__init__(reason, payload)
        self.tool_call: Optional[dict[str, Any]] = None

    def serialize(self) -> str:
        """Render the signal as a single line for messages and logs."""
        if not self.tool_call:
            return f"{type(self).__name__}: {self.reason}"
        return (
            f"{type(self).__name__}: {self.reason} "
            f"(tool={self.tool_call.get('name')}, "
            f"input={_safe_json(self.tool_call.get('input'))})"
        )


# ---------------------------------------------------------------------------
# Iteration-recoverable failures
# ---------------------------------------------------------------------------


class InvalidCodeError(Exception):
    """The program could not be parsed or violates sandbox rules.

    Raised before any statement of the program runs.
    """

    def __init__(self, message: str, code: str = "", line: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.line = line


class CodeExecutionError(Exception):
    """The program started and raised an unhandled error."""

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        stacktrace: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.line = line
        self.stacktrace = stacktrace


class AssignmentError(CodeExecutionError):
    """A property write was rejected (read-only, unknown or invalid value)."""


# ---------------------------------------------------------------------------
# Run-fatal failures
# ---------------------------------------------------------------------------


class LoopExceededError(Exception):
    """The iteration counter went past the configured loop budget."""

    def __init__(self, loop: int) -> None:
        super().__init__(f"Loop limit exceeded: maximum of {loop} iteration(s) reached")
        self.loop = loop


class AbortedError(Exception):
    """The run was cancelled through its abort indicator."""

    def __init__(self, message: str = "The operation was aborted.") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Component errors
# ---------------------------------------------------------------------------


class ContextSizeExceededError(Exception):
    """Messages still exceed the token limit after best-effort truncation."""

    def __init__(self, total_tokens: int, token_limit: int) -> None:
        super().__init__(
            f"Messages need {total_tokens} tokens after truncation, "
            f"limit is {token_limit}"
        )
        self.total_tokens = total_tokens
        self.token_limit = token_limit


class SnapshotError(Exception):
    """Invalid snapshot usage."""


class SnapshotConsumedError(SnapshotError):
    """The snapshot was already resolved or rejected."""


class ToolReplayError(Exception):
    """Re-raised on replay for a tool call that failed before the suspension."""
