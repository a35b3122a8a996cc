"""Model clients.

- ``LiteLLMClient`` / ``LiteLLMConfig``: LiteLLM integration (100+ providers)
"""

from __future__ import annotations

from .litellm import LITELLM_AVAILABLE, LiteLLMClient, LiteLLMConfig, LLMResponse

__all__ = [
    "LiteLLMClient",
    "LiteLLMConfig",
    "LLMResponse",
    "LITELLM_AVAILABLE",
]
