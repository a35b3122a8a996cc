"""Prompt version adapters and program extraction."""

from .extraction import FN_END, FN_START, extract_code
from .version import AssistantResponse, DefaultPromptVersion, PromptVersion

__all__ = [
    "AssistantResponse",
    "DefaultPromptVersion",
    "PromptVersion",
    "extract_code",
    "FN_START",
    "FN_END",
]
