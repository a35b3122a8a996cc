"""Iteration loop: per-iteration state, steps and the runner."""

from .context import IterationState
from .runner import LoopRunner, execute_context, execute_context_sync
from .steps import ClassifyResultStep, ExecuteProgramStep, LLMCallStep, ParseProgramStep

__all__ = [
    "IterationState",
    "LoopRunner",
    "execute_context",
    "execute_context_sync",
    "LLMCallStep",
    "ParseProgramStep",
    "ExecuteProgramStep",
    "ClassifyResultStep",
]
