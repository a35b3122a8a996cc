"""Configuration for a run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

DEFAULT_LOOP = 3
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MODEL_TOKEN_LIMIT = 128_000

# Seconds a tool call may run before a ``tool_slow`` trace is recorded.
SLOW_TOOL_WARNING = 15.0

RESPONSE_LENGTH_BUFFER_MIN_TOKENS = 1_000
RESPONSE_LENGTH_BUFFER_MAX_TOKENS = 16_000
RESPONSE_LENGTH_BUFFER_PERCENTAGE = 0.1


def response_length_buffer(input_length: int) -> int:
    """Tokens reserved for the model's answer: 10% of the input, clamped."""
    buffer = RESPONSE_LENGTH_BUFFER_PERCENTAGE * input_length
    return int(
        min(
            max(buffer, RESPONSE_LENGTH_BUFFER_MIN_TOKENS),
            RESPONSE_LENGTH_BUFFER_MAX_TOKENS,
        )
    )


@dataclass
class LoopConfig:
    """Options of one run (``options`` of ``execute_context``).

    Attributes:
        loop: Maximum number of iterations before the run fails. Reset
            after every fully successful iteration.
        temperature: Sampling temperature passed to the model client.
        model: Model identifier passed to the model client (client default
            when ``None``).
        model_token_limit: Context window of the model, in tokens.
        slow_tool_warning: Seconds before a running tool call is reported
            as slow.
    """

    loop: int = DEFAULT_LOOP
    temperature: float = DEFAULT_TEMPERATURE
    model: Optional[str] = None
    model_token_limit: int = DEFAULT_MODEL_TOKEN_LIMIT
    slow_tool_warning: float = SLOW_TOOL_WARNING

    def __post_init__(self) -> None:
        if not isinstance(self.loop, int) or isinstance(self.loop, bool) or self.loop < 1:
            raise ValueError(f"loop must be a positive integer, got {self.loop!r}")
        if self.model_token_limit <= 0:
            raise ValueError("model_token_limit must be positive")

    @classmethod
    def from_options(cls, options: "LoopConfig | dict | None") -> "LoopConfig":
        """Accept a config, a plain dict of overrides, or ``None``."""
        if isinstance(options, LoopConfig):
            return options
        values = {k: v for k, v in (options or {}).items() if v is not None}
        return cls(**values)

    @property
    def input_token_budget(self) -> int:
        """Token budget of the messages sent to the model."""
        return self.model_token_limit - response_length_buffer(self.model_token_limit)
