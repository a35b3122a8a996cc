"""LiteLLM model client for the loop runner.

Implements ``ModelClientLike`` (``agenerate``) on top of
``litellm.acompletion`` and keeps plain ``complete`` helpers for ad-hoc use.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ..errors import AbortedError

logger = logging.getLogger(__name__)

try:
    import litellm
    from litellm import Router, acompletion, completion

    LITELLM_AVAILABLE = True
except ImportError:
    LITELLM_AVAILABLE = False
    logger.warning("LiteLLM not installed. Install with: pip install litellm")

# Seconds between abort-indicator checks while a request is in flight.
ABORT_POLL_INTERVAL = 0.1


# ---------------------------------------------------------------------------
# LLMResponse
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Model output plus provider metadata.

    ``raw`` follows the shape read by the loop runner::

        {"tokens": {"input": int, "output": int},
         "cost": {"input": float, "output": float},
         "cached": bool,
         "model": {"integration": str, "model": str}}
    """

    text: str
    raw: Optional[Dict[str, Any]] = field(default=None)


# ---------------------------------------------------------------------------
# LiteLLMConfig
# ---------------------------------------------------------------------------


@dataclass
class LiteLLMConfig:
    """Configuration for LiteLLM client."""

    model: str
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    api_version: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    top_p: Optional[float] = None
    timeout: int = 60
    max_retries: int = 3
    fallbacks: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    # Debugging
    verbose: bool = False

    # Claude-specific parameter handling
    sampling_priority: str = "temperature"  # "temperature" | "top_p" | "top_k"

    # HTTP/SSL settings
    extra_headers: Optional[Dict[str, str]] = None
    ssl_verify: Optional[Union[bool, str]] = None

    # Model-specific parameters (reasoning_effort, budget_tokens, etc.)
    extra_params: Optional[Dict[str, Any]] = None


_CONFIG_FIELDS = {
    "api_version",
    "top_p",
    "timeout",
    "max_retries",
    "metadata",
    "verbose",
    "extra_headers",
    "ssl_verify",
}

_HANDLED_PARAMS = {
    "temperature",
    "top_p",
    "top_k",
    "max_tokens",
    "timeout",
    "num_retries",
}


# ---------------------------------------------------------------------------
# LiteLLMClient
# ---------------------------------------------------------------------------


class LiteLLMClient:
    """Model client backed by LiteLLM (OpenAI, Anthropic, Gemini, Bedrock, ...).

    Claude Parameter Handling:
        Anthropic models reject requests that set both temperature and top_p.
        Conflicts are resolved using ``sampling_priority``.

    Example::

        client = LiteLLMClient(model="gpt-4o-mini")
        result = await execute_context(instructions="...", client=client)
    """

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        fallbacks: Optional[List[str]] = None,
        sampling_priority: str = "temperature",
        config: Optional[LiteLLMConfig] = None,
        **kwargs: Any,
    ) -> None:
        if not LITELLM_AVAILABLE:
            raise ImportError(
                "LiteLLM is not installed. Install with: pip install litellm"
            )

        if config:
            self.config = config
            if model is None:
                model = config.model
        else:
            if model is None:
                raise ValueError(
                    "Either 'model' parameter or 'config' with model must be provided"
                )
            config_kwargs = {k: v for k, v in kwargs.items() if k in _CONFIG_FIELDS}
            extra_params = {k: v for k, v in kwargs.items() if k not in _CONFIG_FIELDS}
            self.config = LiteLLMConfig(
                model=model,
                api_key=api_key,
                api_base=api_base,
                temperature=temperature,
                max_tokens=max_tokens,
                fallbacks=fallbacks,
                sampling_priority=sampling_priority,
                extra_params=extra_params or None,
                **config_kwargs,
            )

        self.model = model

        if self.config.verbose:
            litellm.set_verbose = True

        self.router: Optional[Any] = None
        if self.config.fallbacks:
            self._setup_router()

    # -- Router ---------------------------------------------------------------

    def _setup_router(self) -> None:
        """Route the primary model with its fallbacks."""
        model_list = [
            {
                "model_name": self.config.model,
                "litellm_params": {
                    "model": self.config.model,
                    "api_key": self.config.api_key,
                    "api_base": self.config.api_base,
                    "temperature": self.config.temperature,
                    "max_tokens": self.config.max_tokens,
                },
            }
        ]
        for fallback_model in self.config.fallbacks or []:
            model_list.append(
                {
                    "model_name": fallback_model,
                    "litellm_params": {
                        "model": fallback_model,
                        "temperature": self.config.temperature,
                        "max_tokens": self.config.max_tokens,
                    },
                }
            )

        self.router = Router(
            model_list=model_list,
            fallbacks=[{self.config.model: self.config.fallbacks}],
            num_retries=self.config.max_retries,
            timeout=self.config.timeout,
        )

    # -- Claude parameter resolution -----------------------------------------

    @staticmethod
    def _resolve_sampling_params(
        params: Dict[str, Any], model: str, sampling_priority: str = "temperature"
    ) -> Dict[str, Any]:
        """Keep a single sampling parameter for Claude models."""
        if "claude" not in model.lower():
            return params

        if sampling_priority not in ("temperature", "top_p", "top_k"):
            raise ValueError(
                f"Invalid sampling_priority: {sampling_priority}. "
                "Must be one of: temperature, top_p, top_k"
            )

        resolved = {
            k: v
            for k, v in params.items()
            if not (k in ("temperature", "top_p", "top_k") and v is None)
        }
        present = [k for k in ("temperature", "top_p", "top_k") if k in resolved]
        if len(present) <= 1:
            return resolved

        if sampling_priority in present and (
            sampling_priority != "temperature" or resolved["temperature"] > 0
        ):
            keep = sampling_priority
        elif "temperature" in present and resolved["temperature"] > 0:
            keep = "temperature"
        elif "top_p" in present:
            keep = "top_p"
        else:
            keep = present[0]

        for key in present:
            if key != keep:
                resolved.pop(key)
        logger.info("Claude model %s: using %s only", model, keep)
        return resolved

    # -- Call building --------------------------------------------------------

    def _build_call_params(
        self, messages: List[Dict[str, str]], **kwargs: Any
    ) -> Dict[str, Any]:
        """Build the keyword arguments of a ``litellm`` completion call."""
        model = kwargs.pop("model", None) or self.config.model
        merged: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": kwargs.get("temperature", self.config.temperature),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "timeout": kwargs.get("timeout", self.config.timeout),
            "num_retries": kwargs.get("num_retries", self.config.max_retries),
            "drop_params": True,
        }

        if kwargs.get("top_p") is not None or self.config.top_p is not None:
            merged["top_p"] = kwargs.get("top_p", self.config.top_p)
        if kwargs.get("top_k") is not None:
            merged["top_k"] = kwargs.get("top_k")

        call_params = self._resolve_sampling_params(
            merged, model, self.config.sampling_priority
        )

        if self.config.api_key:
            call_params["api_key"] = self.config.api_key
        if self.config.api_base:
            call_params["api_base"] = self.config.api_base
        if self.config.api_version:
            call_params["api_version"] = self.config.api_version
        if self.config.metadata:
            call_params["metadata"] = self.config.metadata
        if self.config.extra_headers:
            call_params["extra_headers"] = self.config.extra_headers
        if self.config.ssl_verify is not None:
            call_params["ssl_verify"] = self.config.ssl_verify
        if self.config.extra_params:
            call_params.update(self.config.extra_params)

        call_params.update(
            {
                k: v
                for k, v in kwargs.items()
                if k not in call_params and k not in _HANDLED_PARAMS and v is not None
            }
        )
        return call_params

    # -- Response handling ----------------------------------------------------

    def _to_response(self, response: Any) -> LLMResponse:
        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        hidden = getattr(response, "_hidden_params", None) or {}
        model = response.model or self.config.model

        input_cost, output_cost = 0.0, float(hidden.get("response_cost") or 0.0)
        try:
            input_cost, output_cost = litellm.cost_per_token(
                model=model,
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
            )
        except Exception as e:
            logger.debug("No per-token pricing for %s: %s", model, e)

        return LLMResponse(
            text=text,
            raw={
                "tokens": {"input": input_tokens, "output": output_tokens},
                "cost": {"input": input_cost, "output": output_cost},
                "cached": bool(hidden.get("cache_hit")),
                "model": {
                    "integration": self._get_provider_from_model(model),
                    "model": model,
                },
            },
        )

    # -- Completion methods ---------------------------------------------------

    def complete(
        self, prompt: str, system: Optional[str] = None, **kwargs: Any
    ) -> LLMResponse:
        """Generate completion for the given prompt."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return self.complete_messages(messages, **kwargs)

    def complete_messages(
        self, messages: List[Dict[str, str]], **kwargs: Any
    ) -> LLMResponse:
        """Multi-turn completion preserving structured message context."""
        call_params = self._build_call_params(messages, **kwargs)
        try:
            if self.router:
                response = self.router.completion(**call_params)
            else:
                response = completion(**call_params)
        except Exception as e:
            logger.error("Error in LiteLLM completion: %s", e)
            raise
        return self._to_response(response)

    async def acomplete(
        self, prompt: str, system: Optional[str] = None, **kwargs: Any
    ) -> LLMResponse:
        """Async version of complete."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return await self._acomplete_messages(messages, **kwargs)

    async def _acomplete_messages(
        self, messages: List[Dict[str, str]], signal: Any = None, **kwargs: Any
    ) -> LLMResponse:
        call_params = self._build_call_params(messages, **kwargs)
        if self.router:
            request = self.router.acompletion(**call_params)
        else:
            request = acompletion(**call_params)
        try:
            response = await _await_with_abort(request, signal)
        except AbortedError:
            raise
        except Exception as e:
            logger.error("Error in LiteLLM async completion: %s", e)
            raise
        return self._to_response(response)

    async def agenerate(
        self,
        *,
        system_prompt: str,
        messages: Sequence[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        stop: Optional[List[str]] = None,
        signal: Any = None,
    ) -> LLMResponse:
        """One model call for the loop runner.

        ``signal`` is the run's abort indicator; the request is cancelled
        once it is set.
        """
        return await self._acomplete_messages(
            [{"role": "system", "content": system_prompt}, *messages],
            signal=signal,
            model=model,
            temperature=self.config.temperature if temperature is None else temperature,
            stop=stop or None,
        )

    # -- Helpers --------------------------------------------------------------

    def _get_provider_from_model(self, model: str) -> str:
        """Infer provider from model name."""
        if "/" in model:
            return model.split("/", 1)[0]
        model_lower = model.lower()
        if "gpt" in model_lower or "openai" in model_lower:
            return "openai"
        elif "claude" in model_lower or "anthropic" in model_lower:
            return "anthropic"
        elif "gemini" in model_lower or "palm" in model_lower:
            return "google"
        elif "command" in model_lower or "cohere" in model_lower:
            return "cohere"
        elif "llama" in model_lower or "mistral" in model_lower:
            return "meta"
        else:
            return "unknown"


async def _await_with_abort(request: Any, signal: Any) -> Any:
    """Await *request*, cancelling it when the abort indicator is set."""
    if signal is None:
        return await request
    if signal.is_set():
        request.close()
        raise AbortedError()
    task = asyncio.ensure_future(request)
    while True:
        done, _ = await asyncio.wait({task}, timeout=ABORT_POLL_INTERVAL)
        if done:
            return task.result()
        if signal.is_set():
            task.cancel()
            raise AbortedError()
