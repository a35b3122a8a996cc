"""Immutable per-iteration state for the loop runner steps."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Optional

from ..core.records import LLMCallMetrics, now_ms
from ..instrumentation import CallJournal, TraceLog


@dataclass(frozen=True)
class IterationState:
    """Frozen state flowing through the steps of one iteration.

    The runner creates a fresh ``IterationState`` per cycle with the record
    id and its trace log.  Steps populate the remaining fields via
    ``.replace()``.  ``traces`` and ``journal`` are the mutable logs shared
    with the sandbox bindings.
    """

    id: str
    traces: TraceLog = field(default_factory=TraceLog)
    journal: CallJournal = field(default_factory=CallJournal)
    started_ts: int = field(default_factory=now_ms)

    # LLMCallStep output
    messages: tuple[dict[str, Any], ...] = ()
    llm: Optional[LLMCallMetrics] = None
    raw: str = ""

    # ParseProgramStep output
    code: str = ""

    # ExecuteProgramStep output
    object_state: Optional[dict[str, dict[str, Any]]] = None
    outcome: Any = None  # Ok | Paused | Failed
    mutations: tuple = ()

    # ClassifyResultStep output
    status: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)
    signal: Any = None
    error: Optional[BaseException] = None
    return_value: Any = None

    def replace(self, **changes: Any) -> "IterationState":
        """Return a new IterationState with the given fields replaced."""
        return dataclasses.replace(self, **changes)
