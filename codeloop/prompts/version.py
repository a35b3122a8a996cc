"""Prompt version adapters: system prompt, corrective messages and parsing."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..core.declarations import ListenExit, ThinkExit
from ..core.records import TranscriptMessage
from ..errors import CodeExecutionError, InvalidCodeError, ThinkSignal
from ..truncation import wrap_content
from . import templates
from .extraction import FN_END, extract_code

if TYPE_CHECKING:
    from ..core.context import Context


@dataclass
class AssistantResponse:
    """Parsed model output. ``code`` is empty when no program was found."""

    code: str
    raw: str


@runtime_checkable
class PromptVersion(Protocol):
    """Prompt-format adapter used by the loop runner."""

    def parse_assistant_response(self, raw: str) -> AssistantResponse: ...

    def get_stop_tokens(self) -> list[str]: ...

    def get_system_prompt(self, ctx: "Context") -> str: ...

    def get_invalid_code_message(self, error: InvalidCodeError) -> TranscriptMessage: ...

    def get_thinking_message(self, signal: ThinkSignal) -> TranscriptMessage: ...

    def get_code_execution_error_message(
        self, error: CodeExecutionError
    ) -> TranscriptMessage: ...


def _to_json(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)


def _schema_line(label: str, schema: dict[str, Any]) -> str:
    return f"  {label}: {json.dumps(schema, ensure_ascii=False)}" if schema else ""


class DefaultPromptVersion:
    """Marker-delimited Python programs (``■fn_start`` / ``■fn_end``)."""

    # -- Parsing ---------------------------------------------------------------

    def parse_assistant_response(self, raw: str) -> AssistantResponse:
        return AssistantResponse(code=extract_code(raw or "") or "", raw=raw or "")

    def get_stop_tokens(self) -> list[str]:
        return [FN_END]

    # -- System prompt ---------------------------------------------------------

    def _format_tools(self, ctx: "Context") -> str:
        if not ctx.tools:
            return templates.NO_TOOLS
        lines = []
        for tool in ctx.tools:
            lines.append(f"- `{tool.signature()}`")
            if tool.aliases:
                lines.append(f"  aliases: {', '.join(tool.aliases)}")
            lines.extend(
                line
                for line in (
                    _schema_line("input", tool.input_schema),
                    _schema_line("output", tool.output_schema),
                )
                if line
            )
        return "\n".join(lines)

    def _format_objects(self, ctx: "Context") -> str:
        if not ctx.objects:
            return templates.NO_OBJECTS
        blocks = []
        for obj in ctx.objects:
            header = f"## `{obj.name}`"
            if obj.description:
                header += f"\n{obj.description}"
            lines = [header]
            values = obj.property_values()
            for prop in obj.properties:
                access = "writable" if prop.writable else "read-only"
                line = f"- `{obj.name}.{prop.name}` ({access}) = {_to_json(values[prop.name])}"
                if prop.description:
                    line += f"  # {prop.description}"
                lines.append(line)
            for tool in obj.tools:
                lines.append(f"- `{obj.name}.{tool.signature()}`")
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    def _format_variables(self, ctx: "Context") -> str:
        if not ctx.injected_variables:
            return templates.NO_VARIABLES
        return wrap_content(
            "\n".join(f"- `{k}` = {_to_json(v)}" for k, v in ctx.injected_variables.items()),
            preserve="top",
            flex=2,
            min_tokens=50,
        )

    def _format_exits(self, ctx: "Context") -> str:
        exits = ctx.exits or [ListenExit, ThinkExit]
        lines = []
        for exit_ in exits:
            line = f"- `{exit_.name}`"
            if exit_.aliases:
                line += f" (aliases: {', '.join(exit_.aliases)})"
            if exit_.description:
                line += f": {exit_.description}"
            if exit_.payload_schema:
                line += f"\n  payload: {json.dumps(exit_.payload_schema, ensure_ascii=False)}"
            lines.append(line)
        return "\n".join(lines)

    def get_system_prompt(self, ctx: "Context") -> str:
        return templates.SYSTEM_PROMPT.format(
            instructions=ctx.instructions.strip() or templates.NO_INSTRUCTIONS,
            tools=self._format_tools(ctx),
            objects=self._format_objects(ctx),
            variables=self._format_variables(ctx),
            exits=self._format_exits(ctx),
        )

    # -- Corrective messages ---------------------------------------------------

    def get_invalid_code_message(self, error: InvalidCodeError) -> TranscriptMessage:
        return TranscriptMessage(
            role="user",
            content=templates.INVALID_CODE_MESSAGE.format(error=str(error)),
        )

    def get_thinking_message(self, signal: ThinkSignal) -> TranscriptMessage:
        values = dict(signal.variables)
        if isinstance(signal.context, dict):
            values.update(signal.context)
        variables = (
            "\n".join(f"- `{k}` = {_to_json(v)}" for k, v in values.items())
            or templates.NO_VARIABLES
        )
        return TranscriptMessage(
            role="user",
            content=templates.THINKING_MESSAGE.format(
                reason=signal.reason,
                variables=wrap_content(variables, preserve="top", flex=2, min_tokens=50),
            ),
        )

    def get_code_execution_error_message(
        self, error: CodeExecutionError
    ) -> TranscriptMessage:
        stacktrace = ""
        if error.stacktrace:
            stacktrace = "\n" + wrap_content(
                error.stacktrace, preserve="both", flex=1, min_tokens=25
            ) + "\n"
        return TranscriptMessage(
            role="user",
            content=templates.CODE_EXECUTION_ERROR_MESSAGE.format(
                location=f" at line {error.line}" if error.line else "",
                error=str(error),
                stacktrace=stacktrace,
            ),
        )
