"""Inner-loop stop conditions (the ``tool_stop_when`` bound).

A generation round ends on its own when the model answers without tool
calls. These conditions bound it further; each is checked after every
step that requested tools, and the round stops when any of them fires.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ralphloop.generation.step_loop import StepResult


StepStopCondition = Callable[[Sequence["StepResult"]], bool]
"""Predicate over the steps completed so far in one generation round."""


class StepCountIs:
    """Stops once *count* steps have run."""

    __slots__ = ("count",)

    def __init__(self, count: int) -> None:
        if count < 1:
            msg = f"step count must be >= 1, got {count}"
            raise ValueError(msg)
        self.count = count

    def __call__(self, steps: Sequence[StepResult]) -> bool:
        return len(steps) >= self.count

    def __repr__(self) -> str:
        return f"StepCountIs({self.count})"


class HasToolCall:
    """Stops after a step that called the tool named *name*."""

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __call__(self, steps: Sequence[StepResult]) -> bool:
        if not steps:
            return False
        return any(tc.name == self.name for tc in steps[-1].tool_calls)

    def __repr__(self) -> str:
        return f"HasToolCall({self.name!r})"


def should_stop(
    conditions: StepStopCondition | Sequence[StepStopCondition],
    steps: Sequence[StepResult],
) -> bool:
    """Return ``True`` when any of *conditions* fires for *steps*."""
    if callable(conditions):
        return bool(conditions(steps))
    return any(cond(steps) for cond in conditions)
