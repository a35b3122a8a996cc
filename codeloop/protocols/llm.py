"""ModelClientLike: structural protocol for model clients."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from ..providers.litellm import LLMResponse


@runtime_checkable
class ModelClientLike(Protocol):
    """Minimal interface the loop runner needs from a model client.

    Concrete implementations include ``LiteLLMClient`` or any object with an
    async ``agenerate`` method returning an ``LLMResponse``-shaped value
    (``text`` plus a ``raw`` metadata dict).
    """

    async def agenerate(
        self,
        *,
        system_prompt: str,
        messages: Sequence[dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        stop: Optional[list[str]] = None,
        signal: Any = None,
    ) -> "LLMResponse":
        """Return the model's answer to *messages*."""
        ...
