"""Context: the mutable state of one run."""

from __future__ import annotations

import dataclasses
import logging
import uuid
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

from pydantic import ValidationError

from .config import LoopConfig
from .declarations import Exit, ObjectInstance, Tool, is_valid_identifier
from .records import Iteration, TranscriptMessage

if TYPE_CHECKING:
    from ..prompts import PromptVersion

logger = logging.getLogger(__name__)


def strip_invalid_identifiers(variables: dict[str, Any]) -> dict[str, Any]:
    """Drop entries that cannot be bound as program variables."""
    kept = {k: v for k, v in variables.items() if is_valid_identifier(k)}
    dropped = set(variables) - set(kept)
    if dropped:
        logger.debug("Ignoring invalid variable names: %s", sorted(dropped))
    return kept


def _coerce_messages(
    messages: Iterable[TranscriptMessage | dict[str, Any]],
) -> list[TranscriptMessage]:
    return [
        m if isinstance(m, TranscriptMessage) else TranscriptMessage.model_validate(m)
        for m in messages
    ]


def _ensure_unique(names: list[str], kind: str) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise ValueError(f"Duplicate {kind} name: {name!r}")
        seen.add(name)


class Context:
    """Mutable state of one run, owned by the loop runner.

    Created once per run from caller options and discarded at the end; it is
    never persisted (snapshots keep only what is needed to resume).
    """

    def __init__(
        self,
        *,
        instructions: Optional[str] = None,
        objects: Sequence[ObjectInstance] = (),
        tools: Sequence[Tool] = (),
        exits: Sequence[Exit] = (),
        transcript: Iterable[TranscriptMessage | dict[str, Any]] = (),
        loop: Optional[int] = None,
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        options: LoopConfig | dict | None = None,
        version: Optional["PromptVersion"] = None,
        id: Optional[str] = None,
    ) -> None:
        from ..prompts import DefaultPromptVersion

        self.id = id or f"ctx_{uuid.uuid4().hex[:16]}"
        self.instructions = instructions or ""
        self.objects = list(objects)
        self.tools = list(tools)
        self.exits = list(exits)
        self.transcript = _coerce_messages(transcript)
        self.config = LoopConfig.from_options(options)
        overrides = {"loop": loop, "temperature": temperature, "model": model}
        if any(v is not None for v in overrides.values()):
            self.config = dataclasses.replace(
                self.config, **{k: v for k, v in overrides.items() if v is not None}
            )
        self.version = version or DefaultPromptVersion()

        _ensure_unique([o.name for o in self.objects], "object")
        _ensure_unique([e.name for e in self.exits], "exit")
        _ensure_unique(
            [key for t in self.tools for key in (t.name, *t.aliases)]
            + [o.name for o in self.objects],
            "tool",
        )

        self.injected_variables: dict[str, Any] = {}
        self.iterations: list[Iteration] = []
        self.partial_execution_messages: list[TranscriptMessage] = []
        self.iteration = 0

    # -- Options ---------------------------------------------------------------

    @property
    def loop(self) -> int:
        return self.config.loop

    @property
    def temperature(self) -> float:
        return self.config.temperature

    @property
    def model(self) -> Optional[str]:
        return self.config.model

    # -- Lookups ---------------------------------------------------------------

    def get_tool(self, name: str) -> Optional[Tool]:
        return next((t for t in self.tools if name == t.name or name in t.aliases), None)

    def get_object(self, name: str) -> Optional[ObjectInstance]:
        return next((o for o in self.objects if o.name == name), None)

    def get_exit(self, action: Any) -> Optional[Exit]:
        return next((e for e in self.exits if e.matches(action)), None)

    def object_state(self) -> dict[str, dict[str, Any]]:
        """Current property values of every object."""
        return {o.name: o.property_values() for o in self.objects}

    def restore_object_state(self, state: dict[str, dict[str, Any]]) -> None:
        for obj in self.objects:
            values = state.get(obj.name, {})
            for prop in obj.properties:
                if prop.name not in values:
                    continue
                try:
                    prop.value = prop.validate(values[prop.name])
                except ValidationError:
                    logger.warning(
                        "Restored value of %s.%s does not match its type", obj.name, prop.name
                    )
                    prop.value = values[prop.name]

    # -- Messages --------------------------------------------------------------

    def get_messages(self) -> list[TranscriptMessage]:
        """Effective message list for the next model call.

        Synthesized system prompt, then the transcript, then the partial
        execution messages of the current attempt.
        """
        system = TranscriptMessage(
            role="system", content=self.version.get_system_prompt(self)
        )
        return [system, *self.transcript, *self.partial_execution_messages]

    def add_partial_message(self, message: TranscriptMessage) -> None:
        self.partial_execution_messages.append(message)

    def __repr__(self) -> str:
        return (
            f"Context(id={self.id!r}, tools={len(self.tools)}, "
            f"objects={len(self.objects)}, iterations={len(self.iterations)})"
        )
