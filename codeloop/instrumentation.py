"""Sandbox bindings for declared tools and objects.

Every binding records what the program does with it: tool calls become
``tool_call`` traces, accepted property writes become ``property`` traces plus
an ``ObjectMutation`` diff.  Bindings are rebuilt for every iteration.
"""

from __future__ import annotations

import copy
import inspect
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal, Optional

from pydantic import BaseModel, ValidationError

from .core.config import SLOW_TOOL_WARNING
from .core.context import Context, strip_invalid_identifiers
from .core.declarations import ObjectInstance, Property, Tool
from .core.records import (
    AbortSignalTrace,
    ExecuteSignalTrace,
    ObjectMutation,
    PropertyTrace,
    ThinkSignalTrace,
    ToolCallTrace,
    ToolSlowTrace,
    now_ms,
)
from .errors import (
    AbortedError,
    AssignmentError,
    ExecuteSignal,
    InterruptSignal,
    ThinkSignal,
    ToolReplayError,
    VMSignal,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# TraceLog
# ---------------------------------------------------------------------------


class TraceLog(list):
    """Append-only trace list that notifies a listener on every append.

    Slow-call warnings are appended from a timer thread, so appends and
    listener calls are serialized with a lock and the listener must be
    thread-safe.
    """

    def __init__(
        self,
        items: Iterable[Any] = (),
        on_append: Optional[Callable[[Any], None]] = None,
    ) -> None:
        super().__init__(items)
        self._on_append = on_append
        self._lock = threading.RLock()

    def append(self, trace: Any) -> None:  # type: ignore[override]
        with self._lock:
            super().append(trace)
            if self._on_append is not None:
                try:
                    self._on_append(trace)
                except Exception as exc:
                    logger.warning("on_trace hook failed: %s", exc)


# ---------------------------------------------------------------------------
# CallJournal
# ---------------------------------------------------------------------------


class JournalEntry(BaseModel):
    """Outcome of one tool call, in call order.

    ``live`` marks a call that was still running when the program suspended;
    it runs again on replay.
    """

    tool: str
    object: Optional[str] = None
    status: Literal["ok", "error", "pending", "live"]
    awaitable: bool = False
    output: Any = None
    error: Optional[str] = None


_UNSET = object()


class CallJournal:
    """Tool-call log used to re-enter a suspended program.

    Live runs record every completed call.  A journal rebuilt from a snapshot
    replays those results without invoking the tools again and answers the
    pending call with the resolved value (or raises the rejection error);
    calls past the journal run live.
    """

    def __init__(
        self,
        entries: Iterable[JournalEntry | dict] = (),
        *,
        resolution: Any = _UNSET,
        rejection: Optional[BaseException] = None,
    ) -> None:
        self.entries: list[Optional[JournalEntry]] = [
            e if isinstance(e, JournalEntry) else JournalEntry.model_validate(e)
            for e in entries
        ]
        self._replay_count = len(self.entries)
        self._resolution = resolution
        self._rejection = rejection
        self._cursor = 0
        self.pending_index: Optional[int] = None

    @property
    def replaying(self) -> bool:
        return self._cursor < self._replay_count

    def begin(self) -> int:
        """Reserve the next call index."""
        index = self._cursor
        self._cursor += 1
        if index >= len(self.entries):
            self.entries.append(None)
        return index

    def recorded(self, index: int) -> Optional[JournalEntry]:
        """The finished entry to replay at *index*, if any."""
        if index < self._replay_count:
            entry = self.entries[index]
            if entry is not None and entry.status != "live":
                return entry
        return None

    def answer(self, entry: JournalEntry) -> Any:
        """Return (or raise) the recorded outcome of a replayed call."""
        if entry.status == "ok":
            return entry.output
        if entry.status == "error":
            raise ToolReplayError(entry.error or "Tool call failed")
        if self._rejection is not None:
            raise self._rejection
        if self._resolution is _UNSET:
            raise InterruptSignal("Pending tool call has no resolution")
        return self._resolution

    def record(
        self,
        index: int,
        *,
        tool: str,
        object: Optional[str],
        status: Literal["ok", "error", "pending", "live"],
        awaitable: bool,
        output: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.entries[index] = JournalEntry(
            tool=tool,
            object=object,
            status=status,
            awaitable=awaitable,
            output=output,
            error=str(error) if error is not None else None,
        )
        if status == "pending":
            self.pending_index = index

    def export(self) -> list[dict[str, Any]]:
        """Entries up to the pending call, JSON-ready.

        Calls still running at suspension are kept as ``live`` entries so the
        indexes after them stay aligned on replay.
        """
        end = self.pending_index + 1 if self.pending_index is not None else len(self.entries)
        out: list[dict[str, Any]] = []
        for entry in self.entries[:end]:
            try:
                out.append(entry.model_dump(mode="json"))
            except Exception:
                out.append({**entry.model_dump(exclude={"output"}), "output": repr(entry.output)})
        return out


# ---------------------------------------------------------------------------
# Bindings
# ---------------------------------------------------------------------------


def _collect_input(tool: Tool, args: tuple, kwargs: dict) -> Any:
    if args and kwargs:
        raise TypeError(
            f"{tool.name}() takes either one positional input or keyword arguments"
        )
    if len(args) > 1:
        raise TypeError(f"{tool.name}() takes a single input, got {len(args)}")
    if kwargs:
        return dict(kwargs)
    return args[0] if args else None


def _deep_equal(a: Any, b: Any) -> bool:
    if a is b:
        return True
    try:
        return bool(a == b)
    except Exception:
        return False


def _snapshot_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    try:
        return copy.deepcopy(value)
    except Exception:
        return value


@dataclass
class Bindings:
    """Per-iteration sandbox bindings and everything they record.

    ``namespace`` is what the program sees.  ``mutations`` keeps one diff per
    mutated property; ``signal`` is the first control signal raised by a tool
    (reported even if the program swallowed it).
    """

    traces: TraceLog
    journal: CallJournal = field(default_factory=CallJournal)
    slow_tool_warning: float = SLOW_TOOL_WARNING
    namespace: dict[str, Any] = field(default_factory=dict)
    mutations: dict[str, ObjectMutation] = field(default_factory=dict)
    signal: Optional[VMSignal] = None
    _timers: set = field(default_factory=set)
    _coroutines: list = field(default_factory=list)

    # -- Signals ---------------------------------------------------------------

    def _report_signal(self, err: BaseException) -> None:
        if isinstance(err, VMSignal) and self.signal is None:
            self.signal = err

    # -- Timers ----------------------------------------------------------------

    def _start_slow_timer(
        self, tool: Tool, object: Optional[str], tool_input: Any
    ) -> threading.Timer:
        delay = self.slow_tool_warning

        # Runs on the timer thread, not the event loop.
        def _warn() -> None:
            logger.warning("Tool %s is taking more than %.1fs", tool.name, delay)
            self.traces.append(
                ToolSlowTrace(
                    tool_name=tool.name, object=object, input=tool_input, duration=delay
                )
            )

        timer = threading.Timer(delay, _warn)
        timer.daemon = True
        self._timers.add(timer)
        timer.start()
        return timer

    def _cancel_timer(self, timer: threading.Timer) -> None:
        timer.cancel()
        self._timers.discard(timer)

    def close(self) -> None:
        """Cancel leftover slow-call timers and never-awaited tool calls."""
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        for coro in self._coroutines:
            if inspect.getcoroutinestate(coro) == inspect.CORO_CREATED:
                coro.close()
        self._coroutines.clear()

    @property
    def mutation_list(self) -> list[ObjectMutation]:
        return list(self.mutations.values())

    # -- Tools -----------------------------------------------------------------

    def wrap_tool(self, tool: Tool, object: Optional[str] = None) -> Callable[..., Any]:
        """Build the program-facing callable for *tool*.

        Sync handlers return their value; async handlers return an
        awaitable the program must ``await``.
        """

        def _record(started: int, tool_input: Any, output: Any, error: Any, success: bool) -> None:
            self.traces.append(
                ToolCallTrace(
                    started_at=started,
                    ended_at=now_ms(),
                    tool_name=tool.name,
                    object=object,
                    input=tool_input,
                    output=output,
                    error=error,
                    success=success,
                )
            )

        def _on_error(
            index: int, started: int, tool_input: Any, err: BaseException, awaitable: bool
        ) -> None:
            if isinstance(err, InterruptSignal):
                err.tool_call = {
                    "name": tool.name,
                    "object": object,
                    "input": tool_input,
                    "input_schema": tool.input_schema,
                    "output_schema": tool.output_schema,
                }
                self.journal.record(
                    index, tool=tool.name, object=object, status="pending", awaitable=awaitable
                )
                self._report_signal(err)
                _record(started, tool_input, None, err.serialize(), False)
                return
            if isinstance(err, ThinkSignal):
                self.traces.append(ThinkSignalTrace(ended_at=now_ms()))
                self._report_signal(err)
                _record(started, tool_input, None, None, True)
                return
            if isinstance(err, ExecuteSignal):
                self.traces.append(ExecuteSignalTrace(ended_at=now_ms()))
                self._report_signal(err)
                _record(started, tool_input, None, None, True)
                return
            if isinstance(err, AbortedError):
                self.traces.append(AbortSignalTrace(reason=str(err)))
            self.journal.record(
                index,
                tool=tool.name,
                object=object,
                status="error",
                awaitable=awaitable,
                error=err,
            )
            _record(started, tool_input, None, f"{type(err).__name__}: {err}", False)

        def _on_success(
            index: int, started: int, tool_input: Any, output: Any, awaitable: bool
        ) -> Any:
            output = tool.coerce_output(output)
            self.journal.record(
                index,
                tool=tool.name,
                object=object,
                status="ok",
                awaitable=awaitable,
                output=output,
            )
            _record(started, tool_input, output, None, True)
            return output

        def _track(coro: Any) -> Any:
            self._coroutines.append(coro)
            return coro

        def _replay(index: int, started: int, tool_input: Any, entry: JournalEntry) -> Any:
            logger.debug("Replaying call #%d to %s", index, tool.name)

            def _answer() -> Any:
                try:
                    output = self.journal.answer(entry)
                except BaseException as err:
                    _on_error(index, started, tool_input, err, entry.awaitable)
                    raise
                return _on_success(index, started, tool_input, output, entry.awaitable)

            if entry.awaitable:

                async def _replayed() -> Any:
                    return _answer()

                return _track(_replayed())
            return _answer()

        def call(*args: Any, **kwargs: Any) -> Any:
            tool_input = tool.coerce_input(_collect_input(tool, args, kwargs))
            index = self.journal.begin()
            started = now_ms()

            entry = self.journal.recorded(index)
            if entry is not None:
                return _replay(index, started, tool_input, entry)

            self.journal.record(
                index, tool=tool.name, object=object, status="live", awaitable=False
            )
            timer = self._start_slow_timer(tool, object, tool_input)
            try:
                result = tool.execute(tool_input)
            except BaseException as err:
                self._cancel_timer(timer)
                _on_error(index, started, tool_input, err, False)
                raise

            if inspect.isawaitable(result):

                async def _finish() -> Any:
                    try:
                        output = await result
                    except BaseException as err:
                        _on_error(index, started, tool_input, err, True)
                        raise
                    finally:
                        self._cancel_timer(timer)
                    return _on_success(index, started, tool_input, output, True)

                return _track(_finish())

            self._cancel_timer(timer)
            return _on_success(index, started, tool_input, result, False)

        call.__name__ = tool.name
        call.__doc__ = tool.description or None
        return call

    # -- Objects ---------------------------------------------------------------

    def bind_object(self, obj: ObjectInstance) -> "ObjectBinding":
        return ObjectBinding(obj, self)

    def _write_property(self, obj: ObjectInstance, prop: Property, value: Any) -> None:
        current = prop.value
        if _deep_equal(value, current):
            return
        if not prop.writable:
            raise AssignmentError(
                f"Property {obj.name}.{prop.name} is read-only and cannot be modified"
            )
        try:
            parsed = prop.validate(value)
        except ValidationError as exc:
            raise AssignmentError(
                f"Invalid value for Object property {obj.name}.{prop.name}: {exc}"
            ) from None
        if _deep_equal(parsed, current):
            return

        key = f"{obj.name}.{prop.name}"
        before = (
            self.mutations[key].before if key in self.mutations else _snapshot_value(current)
        )
        prop.value = parsed
        self.traces.append(
            PropertyTrace(object=obj.name, property=prop.name, value=_snapshot_value(parsed))
        )
        self.mutations[key] = ObjectMutation(
            object=obj.name, property=prop.name, before=before, after=_snapshot_value(parsed)
        )


class ObjectBinding:
    """Sealed, program-facing view of a declared object.

    Properties are served from an explicit table of getters and setters;
    tools are exposed as wrapped callables.  Adding or deleting attributes
    raises ``AssignmentError``.
    """

    __slots__ = ("_object", "_bindings", "_getters", "_setters", "_tools")

    def __init__(self, obj: ObjectInstance, bindings: Bindings) -> None:
        getters: dict[str, Callable[[], Any]] = {}
        setters: dict[str, Callable[[Any], None]] = {}
        for prop in obj.properties:
            getters[prop.name] = lambda p=prop: _snapshot_value(p.value)
            setters[prop.name] = lambda value, p=prop: bindings._write_property(obj, p, value)
        tools = {t.name: bindings.wrap_tool(t, object=obj.name) for t in obj.tools}

        object.__setattr__(self, "_object", obj)
        object.__setattr__(self, "_bindings", bindings)
        object.__setattr__(self, "_getters", getters)
        object.__setattr__(self, "_setters", setters)
        object.__setattr__(self, "_tools", tools)

    def __getattr__(self, name: str) -> Any:
        getters = object.__getattribute__(self, "_getters")
        if name in getters:
            return getters[name]()
        tools = object.__getattribute__(self, "_tools")
        if name in tools:
            return tools[name]
        obj = object.__getattribute__(self, "_object")
        raise AttributeError(f"Object {obj.name!r} has no member {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        setters = object.__getattribute__(self, "_setters")
        obj = object.__getattribute__(self, "_object")
        if name not in setters:
            raise AssignmentError(
                f"Cannot add or replace member {obj.name}.{name}: object shape is fixed"
            )
        setters[name](value)

    def __delattr__(self, name: str) -> None:
        obj = object.__getattribute__(self, "_object")
        raise AssignmentError(f"Cannot delete member {obj.name}.{name}")

    def __dir__(self) -> list[str]:
        return sorted(
            [*object.__getattribute__(self, "_getters"), *object.__getattribute__(self, "_tools")]
        )

    def __repr__(self) -> str:
        obj = object.__getattribute__(self, "_object")
        return f"<object {obj.name}: {', '.join(self.__dir__())}>"


def build_bindings(
    ctx: Context,
    traces: TraceLog,
    journal: Optional[CallJournal] = None,
) -> Bindings:
    """Build the sandbox namespace for the next program of *ctx*.

    Injected variables come first so declared objects and tools win on name
    clashes.  Global tools are bound under their name and every alias.
    """
    bindings = Bindings(
        traces=traces,
        journal=journal or CallJournal(),
        slow_tool_warning=ctx.config.slow_tool_warning,
    )
    namespace: dict[str, Any] = dict(strip_invalid_identifiers(ctx.injected_variables))

    for obj in ctx.objects:
        namespace[obj.name] = bindings.bind_object(obj)

    for tool in ctx.tools:
        wrapped = bindings.wrap_tool(tool)
        for key in (tool.name, *tool.aliases):
            namespace[key] = wrapped

    bindings.namespace = namespace
    return bindings
