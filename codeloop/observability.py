"""OpikIterationLogger: log loop iterations to Opik.

Pass an instance as the ``on_iteration_end`` hook of ``execute_context``;
every iteration becomes one Opik trace carrying the program, its outcome,
the model metrics and the recorded traces.  Optionally registers the
LiteLLM ``OpikLogger`` callback for per-call token/cost tracking.

Gracefully degrades to a no-op when Opik is not installed or is disabled.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from pydantic_core import to_jsonable_python

from .core.records import Iteration

logger = logging.getLogger(__name__)

# Soft-import Opik; OpikIterationLogger is a no-op when the package is absent.
try:
    import opik as _opik

    OPIK_AVAILABLE = True
except ImportError:
    _opik = None  # type: ignore[assignment]
    OPIK_AVAILABLE = False


def _opik_disabled() -> bool:
    """Check environment variables for Opik disable signals."""
    if os.environ.get("OPIK_DISABLED", "").lower() in ("true", "1", "yes"):
        return True
    if os.environ.get("OPIK_ENABLED", "").lower() in ("false", "0", "no"):
        return True
    return False


def register_opik_litellm_callback(project_name: str = "codeloop") -> bool:
    """Register ``OpikLogger`` on ``litellm.callbacks``.

    Returns ``True`` if the callback is registered.
    """
    if not OPIK_AVAILABLE or _opik_disabled():
        return False
    try:
        import litellm
        from litellm.integrations.opik.opik import OpikLogger

        already = any(
            type(cb).__name__ == "OpikLogger" for cb in getattr(litellm, "callbacks", [])
        )
        if not already:
            litellm.callbacks.append(OpikLogger(project_name=project_name))
            logger.debug("Opik LiteLLM callback registered for token tracking")
        return True
    except ImportError:
        logger.debug("LiteLLM Opik integration not available")
        return False
    except Exception as exc:
        logger.debug("Failed to register Opik LiteLLM callback: %s", exc)
        return False


class OpikIterationLogger:
    """Send one Opik trace per iteration record.

    Args:
        project_name: Opik project name.
        tags: Tags applied to every trace.
        register_litellm_callback: Also register ``OpikLogger`` on
            ``litellm.callbacks``.
    """

    def __init__(
        self,
        project_name: str = "codeloop",
        tags: list[str] | None = None,
        register_litellm_callback: bool = True,
    ) -> None:
        self.project_name = project_name
        self.tags = tags or ["codeloop"]
        self._client: Any | None = None
        self.enabled = OPIK_AVAILABLE and not _opik_disabled()

        if self.enabled:
            try:
                self._client = _opik.Opik(project_name=project_name)
            except Exception as exc:
                logger.debug("OpikIterationLogger: failed to create Opik client: %s", exc)
                self.enabled = False

        if self.enabled and register_litellm_callback:
            register_opik_litellm_callback(project_name=project_name)

    def __call__(self, iteration: Iteration) -> None:
        if not self.enabled:
            return
        try:
            self._log_iteration(iteration)
        except Exception as exc:
            logger.debug("OpikIterationLogger: failed to log trace (non-critical): %s", exc)

    def _log_iteration(self, iteration: Iteration) -> None:
        trace = self._client.trace(
            name="codeloop_iteration",
            input={"code": iteration.code, "messages": iteration.messages},
            output=self._build_output(iteration),
            metadata=self._build_metadata(iteration),
            tags=self.tags + [iteration.status],
            project_name=self.project_name,
        )
        trace.end()

    def _build_output(self, iteration: Iteration) -> dict[str, Any]:
        output: dict[str, Any] = {"status": iteration.status}
        if iteration.return_value is not None:
            output["return_value"] = to_jsonable_python(
                iteration.return_value, serialize_unknown=True
            )
        if iteration.signal_type:
            output["signal"] = iteration.signal_type
        if iteration.error_message:
            output["error"] = f"{iteration.error_type}: {iteration.error_message}"
        return output

    def _build_metadata(self, iteration: Iteration) -> dict[str, Any]:
        trace_counts: dict[str, int] = {}
        for trace in iteration.traces:
            trace_counts[trace.type] = trace_counts.get(trace.type, 0) + 1
        return {
            "iteration_id": iteration.id,
            "model": iteration.llm.model,
            "tokens": iteration.llm.tokens,
            "spend": iteration.llm.spend,
            "cached": iteration.llm.cached,
            "duration_ms": iteration.ended_ts - iteration.started_ts,
            "mutations": len(iteration.mutations),
            "trace_types": trace_counts,
        }
