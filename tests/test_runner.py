"""Tests for the loop runner and the public execute_context entry points."""

import asyncio
import threading
import time

import pytest
from pydantic import BaseModel

from conftest import MockClient, program

from codeloop import (
    AbortedError,
    ErrorExecutionResult,
    Exit,
    InterruptedExecutionResult,
    InterruptSignal,
    LoopExceededError,
    ObjectInstance,
    Property,
    SuccessExecutionResult,
    Tool,
    execute_context,
    execute_context_sync,
)
from codeloop.loop import IterationState
from codeloop.prompts import FN_END


def _run(client, **kwargs):
    return asyncio.run(execute_context(client=client, **kwargs))


def _add_tool():
    return Tool("add", lambda x: x["a"] + x["b"], input=dict[str, int], output=int)


class Answer(BaseModel):
    answer: int


# ---------------------------------------------------------------------------
# Success paths
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestSuccess:
    def test_single_iteration(self):
        """One program calls a tool and returns through an exit."""
        client = MockClient(
            [program("total = add(a=2, b=3)\nreturn {'action': 'done', 'total': total}")]
        )
        result = _run(
            client,
            instructions="Add two numbers",
            tools=[_add_tool()],
            exits=[Exit("done")],
        )

        assert isinstance(result, SuccessExecutionResult)
        assert result.return_value == {"action": "done", "total": 5}
        assert len(result.iterations) == 1

        iteration = result.last
        assert iteration.status == "success"
        assert iteration.variables == {"total": 5}
        assert [t.type for t in iteration.traces] == ["llm_call", "tool_call", "code_execution"]
        assert iteration.llm.tokens == 15
        assert iteration.llm.spend == pytest.approx(0.003)
        assert iteration.llm.model == "mock:mock-1"

        call = client.calls[0]
        assert call["stop"] == [FN_END]
        assert call["temperature"] == 0.7
        assert "Add two numbers" in call["system_prompt"]
        assert "add(input) -> output" in call["system_prompt"]

    def test_any_return_value_without_exits(self):
        """Without exits any return value ends the run."""
        result = _run(MockClient([program("return 42")]))
        assert result.return_value == 42

    def test_transcript_and_options_reach_the_client(self):
        """Transcript, model and temperature are sent to the client."""
        client = MockClient([program("return 1")])
        _run(
            client,
            transcript=[{"role": "user", "content": "hello"}],
            options={"model": "gpt-test", "temperature": 0.2},
        )
        call = client.calls[0]
        assert call["messages"] == [{"role": "user", "content": "hello"}]
        assert call["model"] == "gpt-test"
        assert call["temperature"] == 0.2

    def test_counter_is_reset_on_success(self):
        """Success clears the counter and partial messages."""
        result = _run(MockClient([program("1 / 0"), program("return 1")]))
        assert result.status == "success"
        assert result.context.iteration == 0
        assert result.context.partial_execution_messages == []

    def test_execute_context_sync(self):
        """The sync wrapper runs the loop to completion."""
        result = execute_context_sync(client=MockClient([program("return 'ok'")]))
        assert result.return_value == "ok"

    def test_execute_signal_ends_the_run(self):
        """ExecuteSignal ends the run successfully."""
        result = _run(MockClient([program("x = 1\nraise ExecuteSignal('run now')")]))
        assert isinstance(result, SuccessExecutionResult)
        assert result.last.is_execute
        assert result.last.traces_of("execute_signal")


# ---------------------------------------------------------------------------
# Recoverable failures
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestRetries:
    def test_unparsable_responses_exhaust_the_loop(self):
        """Responses without code are retried until the budget runs out."""
        client = MockClient(["no code", "still none", "nope", "unused"])
        result = _run(client)

        assert isinstance(result, ErrorExecutionResult)
        assert isinstance(result.error, LoopExceededError)
        assert len(result.iterations) == 3
        assert all(it.error_type == "InvalidCodeError" for it in result.iterations)
        assert len(client.calls) == 3

        retry = client.calls[1]["messages"]
        assert retry[-2] == {"role": "assistant", "content": "no code"}
        assert retry[-1]["role"] == "user"
        assert "Invalid code" in retry[-1]["content"]

    def test_code_failures_produce_one_record_each(self):
        """Each failed program adds one error record."""
        client = MockClient([program("x = 1 / 0")] * 2)
        result = _run(client, options={"loop": 2})
        assert isinstance(result.error, LoopExceededError)
        assert [it.status for it in result.iterations] == ["error", "error"]
        assert result.iterations[0].error_type == "CodeExecutionError"

    def test_recovers_after_failure(self):
        """The error is fed back and the next program succeeds."""
        client = MockClient([program("x = 1\ny = x / 0"), program("return 'fixed'")])
        result = _run(client)
        assert result.return_value == "fixed"
        assert [it.status for it in result.iterations] == ["error", "success"]
        correction = client.calls[1]["messages"][-1]["content"]
        assert "failed at line 2" in correction
        assert "ZeroDivisionError" in correction

    def test_read_only_property_write_fails_iteration(self):
        """Writing a read-only property fails the iteration only."""
        cart = ObjectInstance("cart", properties=[Property("owner", "bob")])
        client = MockClient([program("cart.owner = 'eve'"), program("return cart.owner")])
        result = _run(client, objects=[cart])
        assert result.iterations[0].error_type == "AssignmentError"
        assert result.return_value == "bob"


# ---------------------------------------------------------------------------
# Exits
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestExits:
    def test_unknown_action_is_retried(self):
        """Unknown actions fail; aliases are normalized."""
        client = MockClient(
            [
                program("return {'action': 'other'}"),
                program("return {'action': 'finish', 'answer': '3'}"),
            ]
        )
        result = _run(client, exits=[Exit("done", schema=Answer, aliases=("finish",))])
        first = result.iterations[0]
        assert first.status == "error"
        assert "must return" in first.error_message
        assert result.return_value == {"action": "done", "answer": "3"}

    def test_invalid_payload_is_retried(self):
        """Exit payloads failing the schema are retried."""
        client = MockClient(
            [
                program("return {'action': 'done', 'answer': 'lots'}"),
                program("return {'action': 'done', 'answer': 7}"),
            ]
        )
        result = _run(client, exits=[Exit("done", schema=Answer)])
        assert "Invalid return value for exit 'done'" in result.iterations[0].error_message
        assert result.return_value == {"action": "done", "answer": 7}


# ---------------------------------------------------------------------------
# Think
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestThink:
    def test_think_action_folds_values(self):
        """A think return folds its values into the next prompt."""
        client = MockClient(
            [
                program("seen = 2\nreturn {'action': 'think', 'n': 4}"),
                program("return n * seen"),
            ]
        )
        result = _run(client)
        first, second = result.iterations
        assert first.status == "partial"
        assert first.is_think
        assert second.return_value == 8
        assert "`n` = 4" in client.calls[1]["system_prompt"]
        assert "Thinking" in client.calls[1]["messages"][-1]["content"]

    def test_think_helper(self):
        """think() pauses and the next program sees the variables."""
        client = MockClient(
            [program("x = 5\nthink('check x')"), program("return x + 1")]
        )
        result = _run(client)
        assert result.iterations[0].traces_of("think_signal")
        assert result.return_value == 6

    def test_think_consumes_the_budget(self):
        """Think iterations count against the loop budget."""
        client = MockClient([program("think()")] * 3)
        result = _run(client, options={"loop": 2})
        assert isinstance(result.error, LoopExceededError)
        assert [it.status for it in result.iterations] == ["partial", "partial"]


# ---------------------------------------------------------------------------
# Objects and interrupts
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestObjectsAndInterrupts:
    def test_object_mutation_is_recorded(self):
        """Property writes are committed and recorded."""
        cart = ObjectInstance("cart", properties=[Property("count", 1, writable=True, type=int)])
        result = _run(MockClient([program("cart.count = cart.count + 1\nreturn cart.count")]), objects=[cart])
        assert result.return_value == 2
        assert cart.properties[0].value == 2
        mutation = result.last.mutations[0]
        assert (mutation.before, mutation.after) == (1, 2)
        assert result.last.traces_of("property")

    def test_interrupt_suspends_the_run(self):
        """An interrupting tool suspends the run with a snapshot."""
        def approve(_):
            raise InterruptSignal("Needs approval")

        client = MockClient([program("ok = approve('refund')\nreturn ok")])
        result = _run(client, tools=[Tool("approve", approve, input=str)])

        assert isinstance(result, InterruptedExecutionResult)
        assert result.status == "interrupted"
        assert result.snapshot.tool_call["name"] == "approve"
        assert result.snapshot.tool_call["input"] == "refund"
        assert result.snapshot.status == "pending"
        assert result.iterations[-1].is_interrupted


# ---------------------------------------------------------------------------
# Fatal errors and abort
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestFatal:
    def test_abort_before_start(self):
        """An abort set before start adds no record and calls no model."""
        abort = threading.Event()
        abort.set()
        client = MockClient([program("return 1")])
        result = _run(client, signal=abort)
        assert isinstance(result.error, AbortedError)
        assert result.iterations == []
        assert client.calls == []

    def test_abort_during_program(self):
        """An abort mid-program fails it and adds a fatal record."""
        abort = threading.Event()

        def stop(_):
            abort.set()
            return True

        client = MockClient([program("stop()\nx = 2\nreturn x")])
        result = _run(client, tools=[Tool("stop", stop)], signal=abort)

        assert isinstance(result.error, AbortedError)
        first, synthesized = result.iterations
        assert first.status == "error"
        assert first.error_type == "AbortedError"
        assert synthesized.id.startswith("iteration_")
        assert synthesized.llm.status == "error"

    def test_abort_before_execution_is_traced(self):
        """An abort from the start hook is traced."""
        abort = threading.Event()
        client = MockClient([program("return 1")])
        result = _run(client, signal=abort, on_iteration_start=lambda state: abort.set())
        first = result.iterations[0]
        assert first.traces_of("abort_signal")[0].reason == "The operation was aborted by user."
        assert isinstance(result.error, AbortedError)

    def test_no_output_is_fatal(self):
        """An empty model answer ends the run."""
        result = _run(MockClient([]))
        assert isinstance(result.error, RuntimeError)
        assert str(result.error) == "No output from LLM"
        assert len(result.iterations) == 1
        assert result.iterations[0].id.startswith("iteration_")


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestHooks:
    def test_iteration_hooks(self):
        """Start and end hooks see every iteration."""
        started, ended = [], []

        async def on_end(iteration):
            ended.append(iteration.status)

        client = MockClient([program("1 / 0"), program("return 1")])
        _run(client, on_iteration_start=lambda s: started.append(s), on_iteration_end=on_end)

        assert [s.code for s in started] == ["1 / 0", "return 1"]
        assert all(isinstance(s, IterationState) for s in started)
        assert ended == ["error", "success"]

    def test_failing_hook_does_not_stop_the_run(self):
        """Hook errors are logged, not raised."""
        def boom(_):
            raise RuntimeError("hook failed")

        result = _run(MockClient([program("return 1")]), on_iteration_end=boom)
        assert result.return_value == 1

    def test_on_trace_receives_iteration_index(self):
        """Traces arrive with the index of their iteration."""
        seen = []
        client = MockClient([program("x = 1 / 0"), program("return add(a=1, b=1)")])
        _run(
            client,
            tools=[_add_tool()],
            on_trace=lambda trace, index: seen.append((trace.type, index)),
        )
        assert seen == [
            ("llm_call", 0),
            ("llm_call", 1),
            ("tool_call", 1),
            ("code_execution", 1),
        ]

    def test_on_trace_receives_slow_tool_warnings_from_timer_thread(self):
        """Slow-call warnings reach on_trace from the timer thread."""
        seen = []

        def slow(_):
            time.sleep(0.2)
            return "done"

        _run(
            MockClient([program("return slow()")]),
            tools=[Tool("slow", slow)],
            options={"slow_tool_warning": 0.01},
            on_trace=lambda trace, index: seen.append(
                (trace.type, index, threading.current_thread())
            ),
        )
        warnings = [(index, thread) for kind, index, thread in seen if kind == "tool_slow"]
        assert len(warnings) == 1
        index, thread = warnings[0]
        assert index == 0
        assert thread is not threading.current_thread()
