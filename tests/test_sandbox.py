"""Tests for the restricted program sandbox."""

import asyncio
import threading

import pytest

from conftest import run_code

from codeloop.core.declarations import Tool
from codeloop.core.records import ThinkSignalTrace
from codeloop.errors import (
    AbortedError,
    CodeExecutionError,
    InterruptSignal,
    InvalidCodeError,
    ThinkSignal,
)
from codeloop.instrumentation import Bindings, TraceLog
from codeloop.sandbox import Failed, Ok, Paused, Sandbox, compile_program


def _bindings(**namespace):
    bindings = Bindings(traces=TraceLog())
    bindings.namespace = dict(namespace)
    return bindings


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestCompileProgram:
    @pytest.mark.parametrize(
        "code",
        [
            "import os",
            "from os import path",
            "x = (1).__class__",
            "open('f')",
            "eval('1')",
            "global x",
            "__builtins__",
        ],
    )
    def test_rejects_forbidden_constructs(self, code):
        """Imports, dunder access, dangerous builtins and global are rejected."""
        with pytest.raises(InvalidCodeError):
            compile_program(code)

    def test_syntax_error_reports_line(self):
        """Syntax errors carry the offending line."""
        with pytest.raises(InvalidCodeError) as exc_info:
            compile_program("x = 1\ny = (")
        assert exc_info.value.line is not None
        assert "SyntaxError" in str(exc_info.value)

    def test_empty_program(self):
        """Blank programs are invalid."""
        with pytest.raises(InvalidCodeError, match="No code"):
            compile_program("   \n")

    def test_collects_top_level_names_only(self):
        """Names bound inside functions and comprehensions are not collected."""
        _, names = compile_program(
            "a = 1\n"
            "def f(x):\n"
            "    inner = x\n"
            "    return inner\n"
            "squares = [i * i for i in range(3)]\n"
            "for k in range(2):\n"
            "    pass\n"
        )
        assert names == ["a", "f", "squares", "k"]


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestSandboxRun:
    def test_ok_result(self):
        """A returning program yields its value, variables and line count."""
        result = run_code("x = 2\ny = x * 3\nreturn {'action': 'done', 'value': y}")
        assert isinstance(result, Ok)
        assert result.return_value == {"action": "done", "value": 6}
        assert result.variables == {"x": 2, "y": 6}
        assert result.lines_executed == 3

    def test_print_is_captured(self):
        """print output is captured, not written to stdout."""
        result = run_code("print('hello', 42)")
        assert result.stdout == "hello 42\n"

    def test_invalid_code_is_failed(self):
        """Invalid code fails without running a line."""
        result = run_code("import os")
        assert isinstance(result, Failed)
        assert isinstance(result.error, InvalidCodeError)
        assert result.lines_executed == 0

    def test_runtime_error_reports_line(self):
        """Runtime errors report the line, stack and variables so far."""
        result = run_code("x = 1\ny = x / 0\nz = 3")
        assert isinstance(result, Failed)
        assert isinstance(result.error, CodeExecutionError)
        assert result.error.line == 2
        assert "ZeroDivisionError" in str(result.error)
        assert "y = x / 0" in result.error.stacktrace
        assert result.variables == {"x": 1}

    def test_error_inside_nested_function(self):
        """Errors in helper functions point at the helper's line."""
        code = "def f():\n    return missing\nvalue = f()"
        result = run_code(code)
        assert isinstance(result.error, CodeExecutionError)
        assert result.error.line == 2
        assert "in f" in result.error.stacktrace

    def test_functions_see_top_level_names(self):
        """Helper functions read top-level variables."""
        code = "base = 10\ndef add(x):\n    return base + x\nreturn add(5)"
        assert run_code(code).return_value == 15

    def test_injected_variable_can_be_updated(self):
        """Injected variables can be reassigned."""
        result = run_code("count = count + 1", bindings=_bindings(count=1))
        assert result.variables == {"count": 2}

    def test_think_pauses_with_context(self):
        """think() pauses with its context and the variables."""
        bindings = _bindings()
        result = run_code("total = 3\nthink('check total', total=total)", bindings=bindings)
        assert isinstance(result, Paused)
        assert isinstance(result.signal, ThinkSignal)
        assert result.signal.context == {"total": 3}
        assert result.signal.variables == {"total": 3}
        assert isinstance(bindings.traces[0], ThinkSignalTrace)
        assert bindings.traces[0].line == 2

    def test_swallowed_tool_signal_still_pauses(self):
        """A caught tool signal still pauses the program."""
        def approve(_):
            raise InterruptSignal("Needs approval")

        bindings = _bindings()
        bindings.namespace["approve"] = bindings.wrap_tool(Tool("approve", approve))
        code = "try:\n    approve('x')\nexcept Exception:\n    pass\nreturn 'ignored'"
        result = run_code(code, bindings=bindings)
        assert isinstance(result, Paused)
        assert isinstance(result.signal, InterruptSignal)

    def test_await_and_gather(self):
        """Async tools can be awaited and gathered."""
        async def fetch(x):
            await asyncio.sleep(0)
            return x * 2

        bindings = _bindings()
        bindings.namespace["fetch"] = bindings.wrap_tool(Tool("fetch", fetch))
        code = (
            "one = await fetch(1)\n"
            "many = await asyncio.gather(fetch(2), fetch(3))\n"
            "return [one, *many]"
        )
        assert run_code(code, bindings=bindings).return_value == [2, 4, 6]

    def test_abort_stops_program(self):
        """A set abort signal fails the program."""
        abort = threading.Event()
        abort.set()
        result = run_code("x = 1", abort=abort)
        assert isinstance(result, Failed)
        assert isinstance(result.error, AbortedError)

    def test_timeout(self):
        """Programs running past the timeout fail."""
        result = run_code("await asyncio.sleep(1)", sandbox=Sandbox(timeout=0.05))
        assert isinstance(result, Failed)
        assert "timed out" in str(result.error)

    def test_builtins_are_restricted(self):
        """Builtins outside the safe table are undefined."""
        result = run_code("x = dir()")
        assert isinstance(result, Failed)
        assert "NameError" in str(result.error)


@pytest.mark.unit
def test_safe_builtins_table():
    """The safe table holds common builtins and nothing forbidden or private."""
    from codeloop.sandbox import FORBIDDEN_NAMES, SAFE_BUILTINS

    assert not FORBIDDEN_NAMES & set(SAFE_BUILTINS)
    assert {"len", "sorted", "sum", "enumerate", "ValueError"} <= set(SAFE_BUILTINS)
    assert not [k for k in SAFE_BUILTINS if k.startswith("_") and k != "__build_class__"]
