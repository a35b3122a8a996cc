"""Records produced by a run: transcript messages, traces, diffs, iterations."""

from __future__ import annotations

import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ExecuteSignal, InterruptSignal, ThinkSignal


def now_ms() -> int:
    """Epoch milliseconds, the timestamp unit of every record."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


class TranscriptMessage(BaseModel):
    """One role-tagged message of the conversation."""

    role: Literal["system", "user", "assistant"]
    content: str
    name: Optional[str] = None

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


# ---------------------------------------------------------------------------
# Traces
# ---------------------------------------------------------------------------


class _TraceBase(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    started_at: int = Field(default_factory=now_ms)


class LLMCallTrace(_TraceBase):
    type: Literal["llm_call"] = "llm_call"
    ended_at: int
    status: Literal["success", "error"] = "success"
    model: str = ""


class ToolCallTrace(_TraceBase):
    type: Literal["tool_call"] = "tool_call"
    ended_at: int
    tool_name: str
    object: Optional[str] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    success: bool = True


class ToolSlowTrace(_TraceBase):
    type: Literal["tool_slow"] = "tool_slow"
    tool_name: str
    object: Optional[str] = None
    input: Any = None
    duration: float = Field(..., description="Seconds elapsed when the warning fired")


class PropertyTrace(_TraceBase):
    type: Literal["property"] = "property"
    object: str
    property: str
    value: Any = None


class ThinkSignalTrace(_TraceBase):
    type: Literal["think_signal"] = "think_signal"
    ended_at: int
    line: int = 0


class ExecuteSignalTrace(_TraceBase):
    type: Literal["execute_signal"] = "execute_signal"
    ended_at: int
    line: int = 0


class AbortSignalTrace(_TraceBase):
    type: Literal["abort_signal"] = "abort_signal"
    reason: str


class CodeExecutionTrace(_TraceBase):
    type: Literal["code_execution"] = "code_execution"
    ended_at: int
    lines_executed: int = 0


Trace = Annotated[
    Union[
        LLMCallTrace,
        ToolCallTrace,
        ToolSlowTrace,
        PropertyTrace,
        ThinkSignalTrace,
        ExecuteSignalTrace,
        AbortSignalTrace,
        CodeExecutionTrace,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Mutations and model metrics
# ---------------------------------------------------------------------------


class ObjectMutation(BaseModel):
    """Before/after record of one accepted property write."""

    object: str
    property: str
    before: Any = None
    after: Any = None


class LLMCallMetrics(BaseModel):
    """Model call metrics attached to every iteration."""

    started_at: int = Field(default_factory=now_ms)
    ended_at: int = Field(default_factory=now_ms)
    status: Literal["success", "error"] = "success"
    cached: bool = False
    tokens: int = 0
    spend: float = 0.0
    output: str = ""
    model: str = ""


# ---------------------------------------------------------------------------
# Iteration
# ---------------------------------------------------------------------------


class Iteration(BaseModel):
    """Log entry for one model-call + execute + classify cycle.

    ``signal`` and ``error`` hold live exception objects and are excluded
    from serialization; ``error_message`` survives it.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    status: Literal["success", "partial", "error"]
    code: str = ""
    variables: Dict[str, Any] = Field(default_factory=dict)
    signal: Optional[Any] = Field(default=None, exclude=True)
    signal_type: Optional[str] = None
    mutations: List[ObjectMutation] = Field(default_factory=list)
    traces: List[Trace] = Field(default_factory=list)
    llm: LLMCallMetrics = Field(default_factory=LLMCallMetrics)
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    return_value: Any = None
    started_ts: int = Field(default_factory=now_ms)
    ended_ts: int = Field(default_factory=now_ms)
    error: Optional[Any] = Field(default=None, exclude=True)
    error_message: Optional[str] = None
    error_type: Optional[str] = None

    def model_post_init(self, __context: Any) -> None:
        if self.signal is not None and self.signal_type is None:
            self.signal_type = type(self.signal).__name__
        if self.error is not None:
            if self.error_message is None:
                self.error_message = str(self.error)
            if self.error_type is None:
                self.error_type = type(self.error).__name__

    @property
    def is_think(self) -> bool:
        return isinstance(self.signal, ThinkSignal) or self.signal_type == "ThinkSignal"

    @property
    def is_interrupted(self) -> bool:
        return (
            isinstance(self.signal, InterruptSignal)
            or self.signal_type == "InterruptSignal"
        )

    @property
    def is_execute(self) -> bool:
        return isinstance(self.signal, ExecuteSignal) or self.signal_type == "ExecuteSignal"

    @property
    def exit_name(self) -> Optional[str]:
        """The ``action`` of a successful return value, if any."""
        if isinstance(self.return_value, dict):
            action = self.return_value.get("action")
            return action if isinstance(action, str) else None
        return None

    def traces_of(self, kind: str) -> list[Any]:
        return [t for t in self.traces if t.type == kind]
