"""Terminal outcomes of a run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Union

from ..errors import InterruptSignal
from .records import Iteration

if TYPE_CHECKING:
    from ..snapshots import Snapshot
    from .context import Context


@dataclass
class SuccessExecutionResult:
    iterations: list[Iteration]
    context: "Context"
    status: Literal["success"] = "success"

    @property
    def last(self) -> Iteration:
        return self.iterations[-1]

    @property
    def return_value(self):
        return self.last.return_value


@dataclass
class InterruptedExecutionResult:
    """The run is suspended; resume it with ``resolve_snapshot``."""

    snapshot: "Snapshot"
    iterations: list[Iteration]
    context: "Context"
    signal: InterruptSignal
    status: Literal["interrupted"] = "interrupted"


@dataclass
class ErrorExecutionResult:
    """The run failed; ``iterations`` still holds every attempt."""

    iterations: list[Iteration]
    context: "Context"
    error: BaseException
    status: Literal["error"] = "error"


ExecutionResult = Union[
    SuccessExecutionResult, InterruptedExecutionResult, ErrorExecutionResult
]
