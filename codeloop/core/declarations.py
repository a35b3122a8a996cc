"""Declarations handed to a run: tools, objects with properties, and exits.

Schemas are plain Python annotations (builtins, ``TypedDict``, pydantic
models, ...) validated through ``pydantic.TypeAdapter``.  ``None`` means
"anything".
"""

from __future__ import annotations

import keyword
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, TypeAdapter, ValidationError


def _adapter(annotation: Any) -> Optional[TypeAdapter]:
    return TypeAdapter(annotation) if annotation is not None else None


def _json_schema(adapter: Optional[TypeAdapter]) -> dict[str, Any]:
    if adapter is None:
        return {}
    try:
        return adapter.json_schema()
    except Exception:
        # Arbitrary classes have no JSON schema; an empty schema means "any".
        return {}


def is_valid_identifier(name: str) -> bool:
    """True when *name* can be bound as a variable inside a program."""
    return (
        isinstance(name, str)
        and name.isidentifier()
        and not keyword.iskeyword(name)
        and not name.startswith("_")
    )


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    return value


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------


@dataclass
class Tool:
    """A callable exposed to generated programs.

    The handler receives a single input value and may be sync or async.
    Programs call a tool either with one positional value or with keyword
    arguments (collected into a dict)::

        add = Tool("add", lambda x: x["a"] + x["b"], input=dict[str, int])
        # program: total = add(a=2, b=3)
    """

    name: str
    handler: Callable[[Any], Any]
    description: str = ""
    input: Any = None
    output: Any = None
    aliases: Sequence[str] = ()

    def __post_init__(self) -> None:
        for key in (self.name, *self.aliases):
            if not is_valid_identifier(key):
                raise ValueError(f"Invalid tool name or alias: {key!r}")
        self.aliases = tuple(self.aliases)

    @cached_property
    def input_adapter(self) -> Optional[TypeAdapter]:
        return _adapter(self.input)

    @cached_property
    def output_adapter(self) -> Optional[TypeAdapter]:
        return _adapter(self.output)

    @property
    def input_schema(self) -> dict[str, Any]:
        return _json_schema(self.input_adapter)

    @property
    def output_schema(self) -> dict[str, Any]:
        return _json_schema(self.output_adapter)

    def coerce_input(self, value: Any) -> Any:
        """Validate *value* against the input schema, best effort.

        Invalid input is returned untouched; the tool decides what to do.
        """
        if self.input_adapter is None:
            return value
        try:
            return self.input_adapter.validate_python(value)
        except ValidationError:
            return value

    def coerce_output(self, value: Any) -> Any:
        if self.output_adapter is None:
            return value
        try:
            return self.output_adapter.validate_python(value)
        except ValidationError:
            return value

    def execute(self, value: Any) -> Any:
        """Invoke the handler. May return an awaitable."""
        return self.handler(value)

    def signature(self) -> str:
        """One-line description used in the system prompt."""
        out = f"{self.name}(input) -> output"
        if self.description:
            out += f"  # {self.description}"
        return out


# ---------------------------------------------------------------------------
# Objects
# ---------------------------------------------------------------------------


@dataclass
class Property:
    """A named value on an object; read-only unless ``writable``."""

    name: str
    value: Any = None
    writable: bool = False
    type: Any = None
    description: str = ""

    def __post_init__(self) -> None:
        if not is_valid_identifier(self.name):
            raise ValueError(f"Invalid property name: {self.name!r}")

    @cached_property
    def adapter(self) -> Optional[TypeAdapter]:
        return _adapter(self.type)

    def validate(self, value: Any) -> Any:
        """Return the validated value; raises ``ValidationError``."""
        if self.adapter is None:
            return value
        return self.adapter.validate_python(value)


@dataclass
class ObjectInstance:
    """A bundle of properties and tools exposed under one name."""

    name: str
    description: str = ""
    properties: list[Property] = field(default_factory=list)
    tools: list[Tool] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not is_valid_identifier(self.name):
            raise ValueError(f"Invalid object name: {self.name!r}")
        seen: set[str] = set()
        for member in [p.name for p in self.properties] + [t.name for t in self.tools]:
            if member in seen:
                raise ValueError(f"Duplicate member {member!r} on object {self.name!r}")
            seen.add(member)

    def get_property(self, name: str) -> Optional[Property]:
        return next((p for p in self.properties if p.name == name), None)

    def property_values(self) -> dict[str, Any]:
        return {p.name: _dump(p.value) for p in self.properties}


# ---------------------------------------------------------------------------
# Exits
# ---------------------------------------------------------------------------


@dataclass
class Exit:
    """A named terminal outcome a program can return.

    Programs end with ``return {"action": "<exit name>", ...}``; the remaining
    keys are the exit payload, validated against ``schema`` when set.
    """

    name: str
    description: str = ""
    schema: Any = None
    aliases: Sequence[str] = ()

    def __post_init__(self) -> None:
        self.aliases = tuple(self.aliases)

    @cached_property
    def adapter(self) -> Optional[TypeAdapter]:
        return _adapter(self.schema)

    @property
    def payload_schema(self) -> dict[str, Any]:
        return _json_schema(self.adapter)

    def matches(self, action: Any) -> bool:
        return action == self.name or action in self.aliases

    def validate(self, payload: dict[str, Any]) -> Any:
        if self.adapter is None:
            return payload
        return self.adapter.validate_python(payload)


ListenExit = Exit(
    name="listen",
    description="Hand the turn back to the user and wait for their reply.",
)

ThinkExit = Exit(
    name="think",
    description="Pause, look at the variables computed so far and write a new program.",
)
