"""Restricted Python sandbox that runs one generated program.

The program body is compiled into an ``async def`` so it can ``await`` tool
calls (and fire several at once with ``asyncio.gather``).  Top-level names
keep module semantics: they are declared ``global`` inside the wrapper, so a
program can update an injected variable and the final values are reported as
the program variables.

Instead of letting errors and signals propagate, :meth:`Sandbox.run` returns
a tagged result: :class:`Ok`, :class:`Paused` or :class:`Failed`.
"""

from __future__ import annotations

import ast
import asyncio
import json
import logging
import math
import traceback
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Literal, Optional, Protocol, Union

from RestrictedPython import safe_builtins

from .errors import (
    AbortedError,
    CodeExecutionError,
    ExecuteSignal,
    InterruptSignal,
    InvalidCodeError,
    ThinkSignal,
    VMSignal,
)
from .core.records import ExecuteSignalTrace, ThinkSignalTrace, now_ms
from .instrumentation import Bindings

logger = logging.getLogger(__name__)

PROGRAM_FILENAME = "<program>"
_PROGRAM_FN = "__program__"
_TICK_FN = "__tick__"

# Names a program may neither read nor rebind.
FORBIDDEN_NAMES = frozenset(
    {
        "open",
        "exec",
        "eval",
        "compile",
        "__import__",
        "input",
        "breakpoint",
        "globals",
        "locals",
        "vars",
        "getattr",
        "setattr",
        "delattr",
        "memoryview",
        "exit",
        "quit",
        "help",
    }
)

_SAFE_ADDITIONS = (
    "all", "any", "ascii", "bin", "bytes", "dict", "enumerate", "filter",
    "format", "frozenset", "hasattr", "iter", "list", "map", "max", "min",
    "next", "reversed", "set", "sum", "type",
    "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "IndexError", "KeyError", "LookupError", "NameError", "NotImplementedError",
    "RuntimeError", "StopIteration", "TimeoutError", "TypeError", "ValueError",
    "ZeroDivisionError",
)


def _build_safe_builtins() -> dict[str, Any]:
    import builtins

    # RestrictedPython's table without its private hooks, plus common helpers.
    safe = {k: v for k, v in safe_builtins.items() if not k.startswith("_")}
    safe.update({name: getattr(builtins, name) for name in _SAFE_ADDITIONS})
    for blocked in FORBIDDEN_NAMES:
        safe.pop(blocked, None)
    # Needed for class statements inside programs.
    safe["__build_class__"] = builtins.__build_class__
    return safe


SAFE_BUILTINS = _build_safe_builtins()


def think(reason: str = "Thinking requested", **context: Any) -> None:
    """Program helper: pause and hand the computed values back to the model."""
    raise ThinkSignal(reason, context or None)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class Ok:
    return_value: Any = None
    variables: dict[str, Any] = field(default_factory=dict)
    lines_executed: int = 0
    stdout: str = ""
    outcome: Literal["ok"] = "ok"

    @property
    def success(self) -> bool:
        return True


@dataclass
class Paused:
    signal: VMSignal
    variables: dict[str, Any] = field(default_factory=dict)
    lines_executed: int = 0
    stdout: str = ""
    outcome: Literal["paused"] = "paused"

    @property
    def success(self) -> bool:
        return False


@dataclass
class Failed:
    error: BaseException
    variables: dict[str, Any] = field(default_factory=dict)
    lines_executed: int = 0
    stdout: str = ""
    outcome: Literal["failed"] = "failed"

    @property
    def success(self) -> bool:
        return False


SandboxResult = Union[Ok, Paused, Failed]


class SandboxLike(Protocol):
    """Anything that can run a program against a set of bindings."""

    async def run(
        self, bindings: Bindings, code: str, abort: Any = None
    ) -> SandboxResult: ...


# ---------------------------------------------------------------------------
# AST checks and rewriting
# ---------------------------------------------------------------------------


class _Validator(ast.NodeVisitor):
    """Reject constructs the sandbox does not allow."""

    def __init__(self, code: str) -> None:
        self.code = code
        self._function_depth = 0

    def _reject(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", None)
        raise InvalidCodeError(
            f"{message} (line {line})" if line else message, code=self.code, line=line
        )

    def visit_Import(self, node: ast.Import) -> None:
        self._reject(node, "Import statements are not allowed")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._reject(node, "Import statements are not allowed")

    def visit_Global(self, node: ast.Global) -> None:
        self._reject(node, "'global' statements are not allowed")

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        if self._function_depth == 0:
            self._reject(node, "'nonlocal' is only allowed inside functions")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self._reject(node, f"Access to private attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id in FORBIDDEN_NAMES or node.id.startswith("__"):
            self._reject(node, f"Use of '{node.id}' is not allowed")

    def _visit_function(self, node: ast.AST) -> None:
        self._function_depth += 1
        self.generic_visit(node)
        self._function_depth -= 1

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function
    visit_Lambda = _visit_function

    def visit_Yield(self, node: ast.Yield) -> None:
        if self._function_depth == 0:
            self._reject(node, "'yield' outside a function is not allowed")
        self.generic_visit(node)

    visit_YieldFrom = visit_Yield  # type: ignore[assignment]


def _top_level_names(body: list[ast.stmt]) -> list[str]:
    """Names bound at the top level of the program (not in nested scopes)."""
    names: list[str] = []

    def add(name: str) -> None:
        if name not in names:
            names.append(name)

    class _Collector(ast.NodeVisitor):
        def visit_Name(self, node: ast.Name) -> None:
            if isinstance(node.ctx, (ast.Store, ast.Del)):
                add(node.id)

        def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
            add(node.name)
            for deco in node.decorator_list:
                self.visit(deco)

        def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
            add(node.name)
            for deco in node.decorator_list:
                self.visit(deco)

        def visit_ClassDef(self, node: ast.ClassDef) -> None:
            add(node.name)

        def visit_Lambda(self, node: ast.Lambda) -> None:
            return

        def _skip_comprehension(self, node: ast.AST) -> None:
            # Only the walrus targets of a comprehension leak to the enclosing scope.
            for child in ast.walk(node):
                if isinstance(child, ast.NamedExpr) and isinstance(child.target, ast.Name):
                    add(child.target.id)

        visit_ListComp = _skip_comprehension
        visit_SetComp = _skip_comprehension
        visit_DictComp = _skip_comprehension
        visit_GeneratorExp = _skip_comprehension

        def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
            if node.name:
                add(node.name)
            self.generic_visit(node)

        def visit_MatchAs(self, node: ast.AST) -> None:
            if getattr(node, "name", None):
                add(node.name)  # type: ignore[attr-defined]
            self.generic_visit(node)

        def visit_MatchStar(self, node: ast.AST) -> None:
            if getattr(node, "name", None):
                add(node.name)  # type: ignore[attr-defined]

        def visit_MatchMapping(self, node: ast.AST) -> None:
            if getattr(node, "rest", None):
                add(node.rest)  # type: ignore[attr-defined]
            self.generic_visit(node)

    collector = _Collector()
    for stmt in body:
        collector.visit(stmt)
    return names


class _LineCounter(ast.NodeTransformer):
    """Prefix every statement with ``__tick__(lineno)``."""

    def _tick(self, stmt: ast.stmt) -> ast.stmt:
        call = ast.Expr(
            value=ast.Call(
                func=ast.Name(id=_TICK_FN, ctx=ast.Load()),
                args=[ast.Constant(value=stmt.lineno)],
                keywords=[],
            )
        )
        return ast.copy_location(call, stmt)

    def generic_visit(self, node: ast.AST) -> ast.AST:
        super().generic_visit(node)
        for attr in ("body", "orelse", "finalbody"):
            stmts = getattr(node, attr, None)
            if isinstance(stmts, list) and stmts and isinstance(stmts[0], ast.stmt):
                instrumented: list[ast.stmt] = []
                for stmt in stmts:
                    instrumented.append(self._tick(stmt))
                    instrumented.append(stmt)
                setattr(node, attr, instrumented)
        return node


def compile_program(code: str) -> tuple[Any, list[str]]:
    """Validate and compile *code*.

    Returns the compiled module (which defines the program coroutine
    function) and the top-level names it binds.  Raises
    ``InvalidCodeError``.
    """
    if not code or not code.strip():
        raise InvalidCodeError("No code was found in the response", code=code)

    try:
        module = compile(
            code,
            PROGRAM_FILENAME,
            "exec",
            flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
            dont_inherit=True,
        )
    except SyntaxError as exc:
        raise InvalidCodeError(
            f"SyntaxError: {exc.msg} (line {exc.lineno})", code=code, line=exc.lineno
        ) from None

    _Validator(code).visit(module)
    names = _top_level_names(module.body)

    body: list[ast.stmt] = _LineCounter().generic_visit(module).body  # type: ignore[attr-defined]
    if names:
        body = [ast.Global(names=names), *body]
    body = body or [ast.Pass()]

    wrapper = ast.AsyncFunctionDef(
        name=_PROGRAM_FN,
        args=ast.arguments(
            posonlyargs=[], args=[], vararg=None, kwonlyargs=[],
            kw_defaults=[], kwarg=None, defaults=[],
        ),
        body=body,
        decorator_list=[],
        returns=None,
        type_comment=None,
        type_params=[],
    )
    tree = ast.Module(body=[wrapper], type_ignores=[])
    ast.fix_missing_locations(tree)
    try:
        compiled = compile(tree, PROGRAM_FILENAME, "exec", dont_inherit=True)
    except SyntaxError as exc:
        raise InvalidCodeError(
            f"SyntaxError: {exc.msg} (line {exc.lineno})", code=code, line=exc.lineno
        ) from None
    return compiled, names


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


def _program_frames(tb: Any) -> list[traceback.FrameSummary]:
    return [f for f in traceback.extract_tb(tb) if f.filename == PROGRAM_FILENAME]


def _code_execution_error(exc: BaseException, code: str) -> CodeExecutionError:
    frames = _program_frames(exc.__traceback__)
    line = frames[-1].lineno if frames else None
    lines = code.splitlines()
    stack = []
    for frame in frames:
        source = lines[frame.lineno - 1].strip() if frame.lineno and frame.lineno <= len(lines) else ""
        where = "program" if frame.name == _PROGRAM_FN else frame.name
        stack.append(f"  line {frame.lineno}, in {where}: {source}")
    stacktrace = "\n".join(stack) if stack else None

    if isinstance(exc, CodeExecutionError):
        exc.line = exc.line or line
        exc.stacktrace = exc.stacktrace or stacktrace
        return exc
    error = CodeExecutionError(f"{type(exc).__name__}: {exc}", line=line, stacktrace=stacktrace)
    error.__cause__ = exc
    return error


class Sandbox:
    """Runs generated programs against instrumented bindings.

    Args:
        timeout: Optional wall-clock limit in seconds for one program.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout

    def _globals(self, bindings: Bindings, stdout: list[str], tick: Any) -> dict[str, Any]:
        def _print(*args: Any, sep: str = " ", end: str = "\n", **_: Any) -> None:
            stdout.append(sep.join(str(a) for a in args) + end)

        env: dict[str, Any] = {
            "__builtins__": {**SAFE_BUILTINS, "print": _print},
            "__name__": "program",
            _TICK_FN: tick,
            "think": think,
            "ThinkSignal": ThinkSignal,
            "ExecuteSignal": ExecuteSignal,
            "InterruptSignal": InterruptSignal,
            "asyncio": SimpleNamespace(
                gather=asyncio.gather, sleep=asyncio.sleep, wait_for=asyncio.wait_for
            ),
            "json": SimpleNamespace(dumps=json.dumps, loads=json.loads),
            "math": math,
        }
        env.update(bindings.namespace)
        return env

    async def _await_program(self, program: Any) -> Any:
        if self.timeout is None:
            return await program()
        try:
            return await asyncio.wait_for(program(), self.timeout)
        except asyncio.TimeoutError:
            raise CodeExecutionError(f"Execution timed out after {self.timeout}s") from None

    async def run(self, bindings: Bindings, code: str, abort: Any = None) -> SandboxResult:
        """Execute *code* and report a tagged result. Never raises."""
        try:
            compiled, names = compile_program(code)
        except InvalidCodeError as exc:
            return Failed(error=exc)

        stdout: list[str] = []
        counter = {"lines": 0}

        def tick(_line: int) -> None:
            counter["lines"] += 1
            if abort is not None and abort.is_set():
                raise AbortedError()

        env = self._globals(bindings, stdout, tick)

        def paused(signal: VMSignal) -> Paused:
            signal.variables = {n: env[n] for n in names if n in env}
            return Paused(
                signal=signal,
                variables=signal.variables,
                lines_executed=counter["lines"],
                stdout="".join(stdout),
            )

        def failed(error: BaseException) -> Failed:
            return Failed(
                error=error,
                variables={n: env[n] for n in names if n in env},
                lines_executed=counter["lines"],
                stdout="".join(stdout),
            )

        try:
            exec(compiled, env)
            return_value = await self._await_program(env[_PROGRAM_FN])
        except VMSignal as signal:
            if bindings.signal is not None:
                return paused(bindings.signal)
            # Raised by the program itself rather than through a tool.
            if isinstance(signal, ThinkSignal):
                bindings.traces.append(ThinkSignalTrace(ended_at=now_ms(), line=counter["lines"]))
            elif isinstance(signal, ExecuteSignal):
                bindings.traces.append(ExecuteSignalTrace(ended_at=now_ms(), line=counter["lines"]))
            return paused(signal)
        except AbortedError as exc:
            return failed(exc)
        except Exception as exc:
            if bindings.signal is not None:
                logger.debug(
                    "Program failed after a tool raised %s", type(bindings.signal).__name__
                )
                return paused(bindings.signal)
            return failed(_code_execution_error(exc, code))
        finally:
            bindings.close()

        if bindings.signal is not None:
            # A tool raised a signal and the program swallowed it.
            return paused(bindings.signal)
        return Ok(
            return_value=return_value,
            variables={n: env[n] for n in names if n in env},
            lines_executed=counter["lines"],
            stdout="".join(stdout),
        )
