"""codeloop: let a language model drive a task by writing and running programs.

Each iteration asks the model for a short Python program, runs it in a
restricted sandbox against the declared tools and objects, and decides from
the outcome whether to loop, return or suspend::

    from codeloop import Tool, execute_context
    from codeloop.providers import LiteLLMClient

    add = Tool("add", lambda x: x["a"] + x["b"], input=dict[str, int])
    result = await execute_context(
        instructions="Add 2 and 3, then return the total.",
        tools=[add],
        client=LiteLLMClient(model="gpt-4o-mini"),
    )
"""

from .core import (
    AbortSignalTrace,
    CodeExecutionTrace,
    Context,
    ErrorExecutionResult,
    ExecuteSignalTrace,
    ExecutionResult,
    Exit,
    InterruptedExecutionResult,
    Iteration,
    ListenExit,
    LLMCallMetrics,
    LLMCallTrace,
    LoopConfig,
    ObjectInstance,
    ObjectMutation,
    Property,
    PropertyTrace,
    SuccessExecutionResult,
    ThinkExit,
    ThinkSignalTrace,
    Tool,
    ToolCallTrace,
    ToolSlowTrace,
    Trace,
    TranscriptMessage,
)
from .errors import (
    AbortedError,
    AssignmentError,
    CodeExecutionError,
    ContextSizeExceededError,
    ExecuteSignal,
    InterruptSignal,
    InvalidCodeError,
    LoopExceededError,
    SnapshotConsumedError,
    SnapshotError,
    ThinkSignal,
    ToolReplayError,
    VMSignal,
)
from .instrumentation import Bindings, CallJournal, ObjectBinding, TraceLog, build_bindings
from .loop import LoopRunner, execute_context, execute_context_sync
from .observability import OpikIterationLogger
from .prompts import AssistantResponse, DefaultPromptVersion, PromptVersion
from .sandbox import Failed, Ok, Paused, Sandbox
from .snapshots import Snapshot, create_snapshot, reject_snapshot, resolve_snapshot
from .truncation import truncate_wrapped_content, wrap_content

__version__ = "0.1.0"

__all__ = [
    # Run
    "execute_context",
    "execute_context_sync",
    "LoopRunner",
    "LoopConfig",
    "Context",
    # Declarations
    "Tool",
    "ObjectInstance",
    "Property",
    "Exit",
    "ListenExit",
    "ThinkExit",
    # Records
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
    # Results
    "ExecutionResult",
    "SuccessExecutionResult",
    "InterruptedExecutionResult",
    "ErrorExecutionResult",
    # Signals and errors
    "VMSignal",
    "ThinkSignal",
    "ExecuteSignal",
    "InterruptSignal",
    "InvalidCodeError",
    "CodeExecutionError",
    "AssignmentError",
    "LoopExceededError",
    "AbortedError",
    "ContextSizeExceededError",
    "SnapshotError",
    "SnapshotConsumedError",
    "ToolReplayError",
    # Snapshots
    "Snapshot",
    "create_snapshot",
    "resolve_snapshot",
    "reject_snapshot",
    # Components
    "Sandbox",
    "Ok",
    "Paused",
    "Failed",
    "Bindings",
    "ObjectBinding",
    "CallJournal",
    "TraceLog",
    "build_bindings",
    "PromptVersion",
    "DefaultPromptVersion",
    "AssistantResponse",
    "wrap_content",
    "truncate_wrapped_content",
    "OpikIterationLogger",
]
