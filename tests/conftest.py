"""Shared fixtures and mock collaborators for codeloop tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from codeloop.instrumentation import Bindings, TraceLog
from codeloop.prompts import FN_START
from codeloop.providers.litellm import LLMResponse
from codeloop.sandbox import Sandbox

# ---------------------------------------------------------------------------
# Mock model client
# ---------------------------------------------------------------------------


class MockClient:
    """Model client returning queued responses (``""`` once exhausted)."""

    def __init__(self, responses: list[str] | None = None):
        self._responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    async def agenerate(
        self,
        *,
        system_prompt,
        messages,
        model=None,
        temperature=None,
        stop=None,
        signal=None,
    ):
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": list(messages),
                "model": model,
                "temperature": temperature,
                "stop": stop,
            }
        )
        text = self._responses.pop(0) if self._responses else ""
        return LLMResponse(
            text=text,
            raw={
                "tokens": {"input": 10, "output": 5},
                "cost": {"input": 0.001, "output": 0.002},
                "cached": False,
                "model": {"integration": "mock", "model": "mock-1"},
            },
        )


def program(code: str) -> str:
    """Model answer carrying *code* (the closing marker is a stop token)."""
    return f"{FN_START}\n{code}\n"


def run_code(code: str, bindings: Bindings | None = None, sandbox: Sandbox | None = None, abort=None):
    """Run *code* in a sandbox and return the tagged result."""
    bindings = bindings or Bindings(traces=TraceLog())
    return asyncio.run((sandbox or Sandbox()).run(bindings, code, abort))


@pytest.fixture
def client_factory():
    return MockClient
