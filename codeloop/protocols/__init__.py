"""Structural protocols for pluggable collaborators."""

from ..prompts.version import PromptVersion
from ..sandbox import SandboxLike
from .llm import ModelClientLike

__all__ = ["ModelClientLike", "PromptVersion", "SandboxLike"]
