"""Snapshots: suspend a run on an interrupt and resume it later.

A snapshot keeps everything needed to continue the suspended program: the
program text, the injected variables and object property values it started
with, and the journal of tool calls it made.  Resuming replays the program
against that journal (completed calls return their recorded output without
running the tool again) and hands the resolved value, or raises the
rejection error, at the suspended call.

Callables are not serializable, so the caller supplies tools, objects and
exits again when resuming.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field
from pydantic_core import to_jsonable_python

from .core.config import (
    DEFAULT_LOOP,
    DEFAULT_MODEL_TOKEN_LIMIT,
    DEFAULT_TEMPERATURE,
    LoopConfig,
)
from .core.context import Context
from .core.declarations import Exit, ObjectInstance, Tool
from .core.records import Iteration, LLMCallMetrics, TranscriptMessage
from .core.results import ExecutionResult
from .errors import InterruptSignal, SnapshotConsumedError, SnapshotError
from .instrumentation import CallJournal

if TYPE_CHECKING:
    from .loop.runner import Hook, TraceHook

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    return to_jsonable_python(value, serialize_unknown=True)


class Snapshot(BaseModel):
    """Serializable capture of a suspended iteration."""

    id: str = Field(default_factory=lambda: f"snapshot_{uuid.uuid4().hex}")
    reason: str = ""
    status: Literal["pending", "resolved", "rejected"] = "pending"
    tool_call: Optional[dict[str, Any]] = Field(
        default=None,
        description="Pending call: name, object, input, input_schema, output_schema",
    )

    # Suspended program
    context_id: str
    program: str
    raw: str = ""
    llm: LLMCallMetrics = Field(default_factory=LLMCallMetrics)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    variables: dict[str, Any] = Field(
        default_factory=dict, description="Injected variables at suspension"
    )
    object_state: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Object property values at the start of the suspended iteration",
    )
    journal: list[dict[str, Any]] = Field(default_factory=list)

    # Context
    transcript: list[TranscriptMessage] = Field(default_factory=list)
    instructions: str = ""
    loop: int = DEFAULT_LOOP
    temperature: float = DEFAULT_TEMPERATURE
    model: Optional[str] = None
    model_token_limit: int = DEFAULT_MODEL_TOKEN_LIMIT
    iterations: list[dict[str, Any]] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "Snapshot":
        return cls.model_validate_json(data)


def create_snapshot(
    signal: InterruptSignal,
    ctx: Context,
    iteration: Iteration,
    journal: CallJournal,
    object_state: Optional[dict[str, dict[str, Any]]] = None,
) -> Snapshot:
    """Capture the run suspended on *signal* as a pending snapshot."""
    if not isinstance(signal, InterruptSignal):
        raise SnapshotError("Snapshots can only be created from an InterruptSignal")

    return Snapshot(
        reason=signal.reason,
        tool_call=_jsonable(signal.tool_call),
        context_id=ctx.id,
        program=iteration.code,
        raw=iteration.llm.output,
        llm=iteration.llm,
        messages=_jsonable(iteration.messages),
        variables=_jsonable(ctx.injected_variables),
        object_state=_jsonable(object_state if object_state is not None else ctx.object_state()),
        journal=journal.export(),
        transcript=list(ctx.transcript),
        instructions=ctx.instructions,
        loop=ctx.config.loop,
        temperature=ctx.config.temperature,
        model=ctx.config.model,
        model_token_limit=ctx.config.model_token_limit,
        iterations=[_jsonable(it.model_dump()) for it in ctx.iterations],
    )


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


async def _resume(
    snapshot: Snapshot,
    journal: CallJournal,
    *,
    client: Any,
    tools: Sequence[Tool],
    objects: Sequence[ObjectInstance],
    exits: Sequence[Exit],
    version: Any,
    sandbox: Any,
    signal: Any,
    on_iteration_start: Optional["Hook"],
    on_iteration_end: Optional["Hook"],
    on_trace: Optional["TraceHook"],
    options: Union[LoopConfig, dict, None],
) -> ExecutionResult:
    from .loop.runner import LoopRunner

    config = LoopConfig.from_options(options) if options is not None else LoopConfig(
        loop=snapshot.loop,
        temperature=snapshot.temperature,
        model=snapshot.model,
        model_token_limit=snapshot.model_token_limit,
    )
    ctx = Context(
        id=snapshot.context_id,
        instructions=snapshot.instructions,
        objects=objects,
        tools=tools,
        exits=exits,
        transcript=snapshot.transcript,
        options=config,
        version=version,
    )
    ctx.injected_variables = dict(snapshot.variables)
    ctx.iterations = [Iteration.model_validate(it) for it in snapshot.iterations]
    ctx.restore_object_state(snapshot.object_state)

    runner = LoopRunner(
        ctx,
        client,
        sandbox=sandbox,
        signal=signal,
        on_iteration_start=on_iteration_start,
        on_iteration_end=on_iteration_end,
        on_trace=on_trace,
    )
    state = runner.new_state(
        journal=journal,
        messages=tuple(snapshot.messages),
        llm=snapshot.llm,
        raw=snapshot.raw,
        code=snapshot.program,
        object_state=snapshot.object_state,
    )
    logger.info("Resuming %s from snapshot %s", ctx.id, snapshot.id)
    return await runner.run(resume=state)


def _consume(snapshot: Snapshot, status: Literal["resolved", "rejected"]) -> None:
    # Single use is tracked on this object only; stored copies stay pending
    # until the caller saves it again.
    if snapshot.status != "pending":
        raise SnapshotConsumedError(f"Snapshot {snapshot.id} was already {snapshot.status}")
    snapshot.status = status


async def resolve_snapshot(
    snapshot: Snapshot,
    value: Any,
    *,
    client: Any,
    tools: Sequence[Tool] = (),
    objects: Sequence[ObjectInstance] = (),
    exits: Sequence[Exit] = (),
    version: Any = None,
    sandbox: Any = None,
    signal: Any = None,
    on_iteration_start: Optional["Hook"] = None,
    on_iteration_end: Optional["Hook"] = None,
    on_trace: Optional["TraceHook"] = None,
    options: Union[LoopConfig, dict, None] = None,
) -> ExecutionResult:
    """Continue the suspended run with *value* as the pending call's result.

    Returns the outcome of the continued run; its iterations include the
    records from before the suspension.  Raises ``SnapshotConsumedError``
    when the snapshot was already resolved or rejected.

    The snapshot is marked consumed in memory only.  Callers that persist
    snapshots must store ``snapshot.to_json()`` again after this call, or an
    older stored copy can still be resumed.
    """
    _consume(snapshot, "resolved")
    return await _resume(
        snapshot,
        CallJournal(snapshot.journal, resolution=value),
        client=client,
        tools=tools,
        objects=objects,
        exits=exits,
        version=version,
        sandbox=sandbox,
        signal=signal,
        on_iteration_start=on_iteration_start,
        on_iteration_end=on_iteration_end,
        on_trace=on_trace,
        options=options,
    )


async def reject_snapshot(
    snapshot: Snapshot,
    error: Union[BaseException, str],
    *,
    client: Any,
    tools: Sequence[Tool] = (),
    objects: Sequence[ObjectInstance] = (),
    exits: Sequence[Exit] = (),
    version: Any = None,
    sandbox: Any = None,
    signal: Any = None,
    on_iteration_start: Optional["Hook"] = None,
    on_iteration_end: Optional["Hook"] = None,
    on_trace: Optional["TraceHook"] = None,
    options: Union[LoopConfig, dict, None] = None,
) -> ExecutionResult:
    """Continue the suspended run with *error* raised at the pending call.

    Persistence works as in ``resolve_snapshot``: store the snapshot again
    after rejecting it.
    """
    _consume(snapshot, "rejected")
    if not isinstance(error, BaseException):
        error = RuntimeError(str(error))
    return await _resume(
        snapshot,
        CallJournal(snapshot.journal, rejection=error),
        client=client,
        tools=tools,
        objects=objects,
        exits=exits,
        version=version,
        sandbox=sandbox,
        signal=signal,
        on_iteration_start=on_iteration_start,
        on_iteration_end=on_iteration_end,
        on_trace=on_trace,
        options=options,
    )
