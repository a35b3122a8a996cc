"""Steps of one loop iteration.

Each step handles one concern within an iteration.  Shared mutable state
(the run ``Context``, the model client, the sandbox) is injected via the
constructor; per-iteration values flow through ``IterationState``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..core.records import (
    AbortSignalTrace,
    CodeExecutionTrace,
    LLMCallMetrics,
    LLMCallTrace,
    TranscriptMessage,
    now_ms,
)
from ..errors import (
    AbortedError,
    CodeExecutionError,
    InvalidCodeError,
    ThinkSignal,
)
from ..instrumentation import build_bindings
from ..sandbox import Failed, Ok, Paused
from ..truncation import truncate_wrapped_content, wrap_content
from .context import IterationState

if TYPE_CHECKING:
    from ..core.context import Context
    from ..prompts import PromptVersion
    from ..protocols import ModelClientLike, SandboxLike

logger = logging.getLogger(__name__)


def _is_aborted(signal: Any) -> bool:
    return signal is not None and signal.is_set()


# ---------------------------------------------------------------------------
# LLMCallStep
# ---------------------------------------------------------------------------


class LLMCallStep:
    """Fit the messages into the token budget and call the model."""

    requires = frozenset({"id", "traces"})
    provides = frozenset({"messages", "llm", "raw"})

    def __init__(self, client: "ModelClientLike", ctx: "Context", signal: Any = None) -> None:
        self.client = client
        self.ctx = ctx
        self.signal = signal

    async def __call__(self, state: IterationState) -> IterationState:
        ctx = self.ctx
        started = now_ms()
        messages = [
            m
            for m in truncate_wrapped_content(
                ctx.get_messages(), ctx.config.input_token_budget, throw_on_failure=False
            )
            if m.content.strip()
        ]

        response = await self.client.agenerate(
            system_prompt=next((m.content for m in messages if m.role == "system"), ""),
            messages=[m.as_dict() for m in messages if m.role in ("user", "assistant")],
            model=ctx.model,
            temperature=ctx.temperature,
            stop=ctx.version.get_stop_tokens(),
            signal=self.signal,
        )
        text = getattr(response, "text", None)
        if not isinstance(text, str) or not text:
            raise RuntimeError("No output from LLM")

        meta = getattr(response, "raw", None) or {}
        tokens = meta.get("tokens") or {}
        cost = meta.get("cost") or {}
        model = meta.get("model") or {}
        llm = LLMCallMetrics(
            started_at=started,
            ended_at=now_ms(),
            status="success",
            cached=bool(meta.get("cached", False)),
            tokens=int(tokens.get("input", 0) or 0) + int(tokens.get("output", 0) or 0),
            spend=float(cost.get("input", 0) or 0) + float(cost.get("output", 0) or 0),
            output=text,
            model=(
                f"{model.get('integration', '')}:{model.get('model', '')}"
                if model
                else ctx.model or ""
            ),
        )
        state.traces.append(
            LLMCallTrace(
                started_at=started, ended_at=llm.ended_at, status="success", model=ctx.model or ""
            )
        )
        logger.debug("%s: model answered with %d characters", state.id, len(text))
        return state.replace(
            messages=tuple(m.as_dict() for m in messages), llm=llm, raw=text
        )


# ---------------------------------------------------------------------------
# ParseProgramStep
# ---------------------------------------------------------------------------


class ParseProgramStep:
    """Extract the program from the model output.

    Pure.  A response without code yields an empty program, which the
    sandbox reports as invalid code.
    """

    requires = frozenset({"raw"})
    provides = frozenset({"code"})

    def __init__(self, version: "PromptVersion") -> None:
        self.version = version

    async def __call__(self, state: IterationState) -> IterationState:
        parsed = self.version.parse_assistant_response(state.raw)
        llm = state.llm.model_copy(update={"output": parsed.raw}) if state.llm else None
        return state.replace(code=parsed.code.strip(), raw=parsed.raw, llm=llm)


# ---------------------------------------------------------------------------
# ExecuteProgramStep
# ---------------------------------------------------------------------------


class ExecuteProgramStep:
    """Bind tools and objects, then run the program in the sandbox."""

    requires = frozenset({"code", "traces", "journal"})
    provides = frozenset({"object_state", "outcome", "mutations"})

    def __init__(self, ctx: "Context", sandbox: "SandboxLike", signal: Any = None) -> None:
        self.ctx = ctx
        self.sandbox = sandbox
        self.signal = signal

    async def __call__(self, state: IterationState) -> IterationState:
        object_state = (
            state.object_state if state.object_state is not None else self.ctx.object_state()
        )
        bindings = build_bindings(self.ctx, state.traces, state.journal)

        if _is_aborted(self.signal):
            state.traces.append(AbortSignalTrace(reason="The operation was aborted by user."))
            return state.replace(object_state=object_state, outcome=Failed(error=AbortedError()))

        logger.debug("%s: executing program:\n%s", state.id, state.code[:200])
        outcome = await self.sandbox.run(bindings, state.code, self.signal)
        return state.replace(
            object_state=object_state,
            outcome=outcome,
            mutations=tuple(bindings.mutation_list),
        )


# ---------------------------------------------------------------------------
# ClassifyResultStep
# ---------------------------------------------------------------------------


class ClassifyResultStep:
    """Turn the sandbox outcome into an iteration status.

    Recoverable failures append the program and a corrective message to the
    partial execution messages.  Think keeps the partial messages and adds
    the thinking message.  Success (including interrupt and execute signals)
    clears them and resets the iteration counter.  Any other failure is
    raised and ends the run.
    """

    requires = frozenset({"outcome", "raw"})
    provides = frozenset({"status", "variables", "signal", "error", "return_value"})

    def __init__(self, ctx: "Context") -> None:
        self.ctx = ctx

    def _retry_with(self, state: IterationState, message: TranscriptMessage) -> None:
        self.ctx.add_partial_message(
            TranscriptMessage(
                role="assistant",
                content=wrap_content(state.raw, preserve="top", flex=4, min_tokens=25),
            )
        )
        self.ctx.add_partial_message(message)

    def _code_execution_trace(self, state: IterationState, outcome: Any) -> None:
        state.traces.append(
            CodeExecutionTrace(
                started_at=state.started_ts,
                ended_at=now_ms(),
                lines_executed=outcome.lines_executed,
            )
        )

    def _check_exit(self, return_value: Any) -> Any:
        """Match the returned action against the declared exits."""
        exits = self.ctx.exits
        if not exits:
            return return_value
        names = ", ".join(e.name for e in exits)
        action = return_value.get("action") if isinstance(return_value, dict) else None
        exit_ = self.ctx.get_exit(action) if action is not None else None
        if exit_ is None:
            raise CodeExecutionError(
                f"The program must return {{'action': <exit>, ...}} with one of: {names}. "
                f"Got: {return_value!r}"
            )
        payload = {k: v for k, v in return_value.items() if k != "action"}
        try:
            exit_.validate(payload)
        except ValidationError as exc:
            raise CodeExecutionError(
                f"Invalid return value for exit '{exit_.name}': {exc}"
            ) from None
        return {**return_value, "action": exit_.name}

    def _failed(self, state: IterationState, error: BaseException, variables: dict) -> IterationState:
        if isinstance(error, InvalidCodeError):
            self._retry_with(state, self.ctx.version.get_invalid_code_message(error))
            return state.replace(status="error", error=error, variables={})
        if isinstance(error, CodeExecutionError):
            self._retry_with(state, self.ctx.version.get_code_execution_error_message(error))
            return state.replace(status="error", error=error, variables=variables)
        if isinstance(error, AbortedError):
            return state.replace(status="error", error=error, variables=variables)
        raise error

    async def __call__(self, state: IterationState) -> IterationState:
        outcome = state.outcome

        if isinstance(outcome, Failed):
            return self._failed(state, outcome.error, outcome.variables)

        signal = outcome.signal if isinstance(outcome, Paused) else None
        return_value = outcome.return_value if isinstance(outcome, Ok) else None

        if isinstance(return_value, dict) and return_value.get("action") == "think":
            signal = ThinkSignal(
                "Thinking requested",
                {k: v for k, v in return_value.items() if k != "action"},
            )
            signal.variables = outcome.variables

        if isinstance(signal, ThinkSignal):
            self._retry_with(state, self.ctx.version.get_thinking_message(signal))
            self._code_execution_trace(state, outcome)
            return state.replace(status="partial", variables=signal.variables, signal=signal)

        if isinstance(outcome, Ok):
            try:
                return_value = self._check_exit(return_value)
            except CodeExecutionError as exc:
                return self._failed(state, exc, outcome.variables)

        self.ctx.partial_execution_messages = []
        self.ctx.iteration = 0
        self._code_execution_trace(state, outcome)
        return state.replace(
            status="success",
            variables=outcome.variables,
            signal=signal,
            return_value=return_value,
        )
