"""Tests for signals and error types."""

import pytest

from codeloop.errors import (
    AssignmentError,
    CodeExecutionError,
    ContextSizeExceededError,
    ExecuteSignal,
    InterruptSignal,
    LoopExceededError,
    SnapshotConsumedError,
    SnapshotError,
    ThinkSignal,
    VMSignal,
)


@pytest.mark.unit
class TestSignals:
    def test_think_signal_defaults(self):
        """ThinkSignal has a default message and no state."""
        signal = ThinkSignal()
        assert str(signal) == "Thinking requested"
        assert signal.context is None
        assert signal.variables == {}

    def test_signals_share_a_base(self):
        """All control signals derive from VMSignal."""
        for cls in (ThinkSignal, ExecuteSignal, InterruptSignal):
            assert issubclass(cls, VMSignal)
        assert str(ExecuteSignal()) == "ExecuteSignal"

    def test_interrupt_serialize(self):
        """Serialized interrupts include the annotated tool call."""
        signal = InterruptSignal("Needs approval")
        assert signal.serialize() == "InterruptSignal: Needs approval"
        signal.tool_call = {"name": "approve", "input": {"user": "bob"}}
        assert signal.serialize() == (
            'InterruptSignal: Needs approval (tool=approve, input={"user": "bob"})'
        )


@pytest.mark.unit
class TestErrors:
    def test_loop_exceeded_message(self):
        """Message names the exhausted budget."""
        error = LoopExceededError(3)
        assert error.loop == 3
        assert str(error) == "Loop limit exceeded: maximum of 3 iteration(s) reached"

    def test_assignment_error_is_execution_error(self):
        """Assignment failures are execution errors."""
        assert issubclass(AssignmentError, CodeExecutionError)

    def test_context_size_exceeded(self):
        """Carries the measured total and the limit."""
        error = ContextSizeExceededError(120, 100)
        assert (error.total_tokens, error.token_limit) == (120, 100)
        assert "120" in str(error)

    def test_snapshot_errors(self):
        """Consumed-snapshot errors are snapshot errors."""
        assert issubclass(SnapshotConsumedError, SnapshotError)
