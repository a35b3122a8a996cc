"""Loop runner: drive a context from the first model call to a result.

Every cycle runs ``LLMCallStep → ParseProgramStep → ExecuteProgramStep →
ClassifyResultStep`` on a fresh :class:`IterationState` and appends exactly
one :class:`Iteration` record.  The run ends on the first ``success``
iteration (``interrupted`` when it carries an interrupt signal) or on a
run-fatal error.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from ..core.config import LoopConfig
from ..core.context import Context
from ..core.declarations import Exit, ObjectInstance, Tool
from ..core.records import Iteration, LLMCallMetrics, TranscriptMessage, now_ms
from ..core.results import (
    ErrorExecutionResult,
    ExecutionResult,
    InterruptedExecutionResult,
    SuccessExecutionResult,
)
from ..errors import AbortedError, LoopExceededError
from ..instrumentation import CallJournal, TraceLog
from ..sandbox import Sandbox
from .context import IterationState
from .steps import ClassifyResultStep, ExecuteProgramStep, LLMCallStep, ParseProgramStep

logger = logging.getLogger(__name__)

Hook = Callable[[Any], Union[None, Awaitable[None]]]
TraceHook = Callable[[Any, int], None]


class LoopRunner:
    """Runs the iteration loop for one ``Context``.

    Args:
        ctx: The run context (owned by this runner).
        client: A ``ModelClientLike`` model client.
        sandbox: Program executor; a fresh ``Sandbox()`` by default.
        signal: Abort indicator (anything with ``is_set()``).
        on_iteration_start: Called with the ``IterationState`` once the
            program is parsed, before it runs.  Sync or async.
        on_iteration_end: Called with every appended ``Iteration``.  Sync or
            async.
        on_trace: Called synchronously with ``(trace, iteration_index)`` for
            every trace as it is recorded.  ``tool_slow`` traces arrive from
            a timer thread, so the hook must be thread-safe.
    """

    def __init__(
        self,
        ctx: Context,
        client: Any,
        *,
        sandbox: Any = None,
        signal: Any = None,
        on_iteration_start: Optional[Hook] = None,
        on_iteration_end: Optional[Hook] = None,
        on_trace: Optional[TraceHook] = None,
    ) -> None:
        self.ctx = ctx
        self.signal = signal
        self.on_iteration_start = on_iteration_start
        self.on_iteration_end = on_iteration_end
        self.on_trace = on_trace

        self.llm_step = LLMCallStep(client, ctx, signal)
        self.parse_step = ParseProgramStep(ctx.version)
        self.execute_step = ExecuteProgramStep(ctx, sandbox or Sandbox(), signal)
        self.classify_step = ClassifyResultStep(ctx)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_abort(self) -> None:
        if self.signal is not None and self.signal.is_set():
            raise AbortedError()

    async def _call_hook(self, name: str, hook: Optional[Hook], arg: Any) -> None:
        if hook is None:
            return
        try:
            result = hook(arg)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("%s hook failed: %s", name, exc)

    def _notify_trace(self, trace: Any) -> None:
        if self.on_trace is not None:
            self.on_trace(trace, len(self.ctx.iterations))

    def new_state(self, journal: Optional[CallJournal] = None, **fields: Any) -> IterationState:
        """Fresh state for the next record of the context."""
        return IterationState(
            id=f"{self.ctx.id}_{len(self.ctx.iterations) + 1}",
            traces=TraceLog(on_append=self._notify_trace),
            journal=journal or CallJournal(),
            **fields,
        )

    def _to_record(self, state: IterationState) -> Iteration:
        return Iteration(
            id=state.id,
            status=state.status,
            code=state.code,
            variables=state.variables,
            signal=state.signal,
            mutations=list(state.mutations),
            traces=list(state.traces),
            llm=state.llm or LLMCallMetrics(model=self.ctx.model or ""),
            messages=list(state.messages),
            return_value=state.return_value,
            started_ts=state.started_ts,
            ended_ts=now_ms(),
            error=state.error,
        )

    def _fatal_record(self, error: BaseException) -> Iteration:
        """Terminal record for an error that escaped the iteration."""
        try:
            messages = [m.as_dict() for m in self.ctx.get_messages()]
        except Exception:
            messages = []
        now = now_ms()
        return Iteration(
            id=f"iteration_{uuid.uuid4().hex}",
            status="error",
            error=error,
            messages=messages,
            llm=LLMCallMetrics(
                started_at=now, ended_at=now, status="error", model=self.ctx.model or ""
            ),
            started_ts=now,
            ended_ts=now,
        )

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    async def _iterate(self) -> IterationState:
        ctx = self.ctx
        if ctx.iteration >= ctx.loop:
            raise LoopExceededError(ctx.loop)
        ctx.iteration += 1

        state = self.new_state()
        state = await self.llm_step(state)
        state = await self.parse_step(state)
        return await self.execute_and_classify(state)

    async def execute_and_classify(self, state: IterationState) -> IterationState:
        """Run a parsed program and classify its outcome.

        Also the entry point for resuming a suspended program.
        """
        await self._call_hook("on_iteration_start", self.on_iteration_start, state)
        state = await self.execute_step(state)
        return await self.classify_step(state)

    def _fold_think(self, iteration: Iteration) -> None:
        """Expose the variables of a think iteration to the next program."""
        self.ctx.injected_variables.update(iteration.variables)
        context = getattr(iteration.signal, "context", None)
        if isinstance(context, dict):
            self.ctx.injected_variables.update(context)

    def _result(self, iteration: Iteration, state: IterationState) -> ExecutionResult:
        ctx = self.ctx
        if iteration.is_interrupted:
            from ..snapshots import create_snapshot

            snapshot = create_snapshot(
                iteration.signal, ctx, iteration, state.journal, state.object_state
            )
            logger.info("Run %s suspended on %s", ctx.id, iteration.signal.serialize())
            return InterruptedExecutionResult(
                snapshot=snapshot,
                iterations=ctx.iterations,
                context=ctx,
                signal=iteration.signal,
            )
        return SuccessExecutionResult(iterations=ctx.iterations, context=ctx)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, resume: Optional[IterationState] = None) -> ExecutionResult:
        """Loop until success, suspension or a run-fatal error.

        ``resume`` is a parsed iteration state (program, model output and
        replay journal) executed first, without a new model call.
        """
        ctx = self.ctx
        pending = resume
        try:
            while True:
                self._check_abort()
                try:
                    if pending is not None:
                        resumed, pending = pending, None
                        state = await self.execute_and_classify(resumed)
                    else:
                        state = await self._iterate()

                    iteration = self._to_record(state)
                    ctx.iterations.append(iteration)
                    logger.debug("%s finished with status %s", iteration.id, iteration.status)
                    await self._call_hook("on_iteration_end", self.on_iteration_end, iteration)

                    self._check_abort()
                    if iteration.status == "success":
                        return self._result(iteration, state)
                    if iteration.status == "partial" and iteration.is_think:
                        self._fold_think(iteration)
                except LoopExceededError:
                    raise
                except Exception as exc:
                    ctx.iterations.append(self._fatal_record(exc))
                    raise
        except Exception as exc:
            logger.warning("Run %s failed: %s", ctx.id, exc)
            return ErrorExecutionResult(iterations=ctx.iterations, context=ctx, error=exc)


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


async def execute_context(
    *,
    client: Any,
    instructions: Optional[str] = None,
    objects: Optional[Sequence[ObjectInstance]] = None,
    tools: Optional[Sequence[Tool]] = None,
    exits: Optional[Sequence[Exit]] = None,
    options: Union[LoopConfig, dict, None] = None,
    transcript: Optional[Sequence[Union[TranscriptMessage, dict]]] = None,
    signal: Any = None,
    on_iteration_start: Optional[Hook] = None,
    on_iteration_end: Optional[Hook] = None,
    on_trace: Optional[TraceHook] = None,
    version: Any = None,
    sandbox: Any = None,
) -> ExecutionResult:
    """Run the model-program loop and return its outcome.

    Args:
        client: Model client with an async ``agenerate`` method.
        instructions: Free-text task instructions for the system prompt.
        objects: Declared objects exposed to programs.
        tools: Declared global tools exposed to programs.
        exits: Named terminal outcomes programs may return.
        options: ``LoopConfig`` or dict with ``loop``, ``temperature``,
            ``model``, ``model_token_limit``, ``slow_tool_warning``.
        transcript: Prior conversation (``TranscriptMessage`` or dicts).
        signal: Abort indicator (anything with ``is_set()``).
        on_iteration_start: Hook called before each program runs.
        on_iteration_end: Hook called with every appended ``Iteration``.
        on_trace: Hook called with ``(trace, iteration_index)``; must be
            thread-safe since slow-call warnings fire from a timer thread.
        version: Prompt version adapter (``DefaultPromptVersion()``).
        sandbox: Program executor (``Sandbox()``).

    Returns:
        ``SuccessExecutionResult``, ``InterruptedExecutionResult`` or
        ``ErrorExecutionResult``.  Only argument errors (duplicate names,
        invalid options) raise.
    """
    ctx = Context(
        instructions=instructions,
        objects=objects or (),
        tools=tools or (),
        exits=exits or (),
        transcript=transcript or (),
        options=options,
        version=version,
    )
    runner = LoopRunner(
        ctx,
        client,
        sandbox=sandbox,
        signal=signal,
        on_iteration_start=on_iteration_start,
        on_iteration_end=on_iteration_end,
        on_trace=on_trace,
    )
    return await runner.run()


def execute_context_sync(**kwargs: Any) -> ExecutionResult:
    """Blocking wrapper around :func:`execute_context`."""
    return asyncio.run(execute_context(**kwargs))
