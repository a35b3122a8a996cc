"""Core types: declarations, context, records and run results."""

from .config import LoopConfig, response_length_buffer
from .context import Context, strip_invalid_identifiers
from .declarations import Exit, ListenExit, ObjectInstance, Property, ThinkExit, Tool
from .records import (
    AbortSignalTrace,
    CodeExecutionTrace,
    ExecuteSignalTrace,
    Iteration,
    LLMCallMetrics,
    LLMCallTrace,
    ObjectMutation,
    PropertyTrace,
    ThinkSignalTrace,
    ToolCallTrace,
    ToolSlowTrace,
    Trace,
    TranscriptMessage,
)
from .results import (
    ErrorExecutionResult,
    ExecutionResult,
    InterruptedExecutionResult,
    SuccessExecutionResult,
)

__all__ = [
    "LoopConfig",
    "response_length_buffer",
    "Context",
    "strip_invalid_identifiers",
    "Exit",
    "ListenExit",
    "ThinkExit",
    "ObjectInstance",
    "Property",
    "Tool",
    "Iteration",
    "LLMCallMetrics",
    "ObjectMutation",
    "TranscriptMessage",
    "Trace",
    "LLMCallTrace",
    "ToolCallTrace",
    "ToolSlowTrace",
    "PropertyTrace",
    "ThinkSignalTrace",
    "ExecuteSignalTrace",
    "AbortSignalTrace",
    "CodeExecutionTrace",
    "ExecutionResult",
    "SuccessExecutionResult",
    "InterruptedExecutionResult",
    "ErrorExecutionResult",
]
