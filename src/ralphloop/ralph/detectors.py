"""Pluggable stop conditions bounding how many outer iterations may run.

A stop condition is consulted once after every evaluated iteration that did
not report completion, and decides whether the next iteration may start.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ralphloop.ralph.config import LoopState

# ---------------------------------------------------------------------------
# StopDecision
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StopDecision:
    """Outcome of a single stop-condition check."""

    should_stop: bool
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.should_stop


_CONTINUE = StopDecision(should_stop=False)


# ---------------------------------------------------------------------------
# StopCondition ABC
# ---------------------------------------------------------------------------


class StopCondition(ABC):
    """Base class for outer-loop stop conditions.

    Implementations must be pure with respect to the :class:`LoopState`
    they are given: they read it, never modify it.
    """

    __slots__ = ()

    @abstractmethod
    async def check(self, state: LoopState) -> StopDecision:
        """Return a stop decision for the current loop state."""


# ---------------------------------------------------------------------------
# Built-in conditions
# ---------------------------------------------------------------------------


class IterationCountIs(StopCondition):
    """Stops once *count* iterations have run."""

    __slots__ = ("count",)

    def __init__(self, count: int) -> None:
        if count < 1:
            msg = f"iteration count must be >= 1, got {count}"
            raise ValueError(msg)
        self.count = count

    async def check(self, state: LoopState) -> StopDecision:
        if state.iteration >= self.count:
            return StopDecision(
                should_stop=True,
                reason=f"Reached max iterations ({state.iteration}/{self.count})",
                metadata={"current": state.iteration, "max": self.count},
            )
        return _CONTINUE

    def __repr__(self) -> str:
        return f"IterationCountIs({self.count})"


class Timeout(StopCondition):
    """Stops when elapsed wall-clock time reaches *seconds*."""

    __slots__ = ("seconds",)

    def __init__(self, seconds: float) -> None:
        if seconds <= 0:
            msg = f"timeout must be > 0, got {seconds}"
            raise ValueError(msg)
        self.seconds = seconds

    async def check(self, state: LoopState) -> StopDecision:
        elapsed = state.elapsed()
        if elapsed >= self.seconds:
            return StopDecision(
                should_stop=True,
                reason=f"Timeout exceeded ({elapsed:.1f}s/{self.seconds:.1f}s)",
                metadata={"elapsed": elapsed, "timeout": self.seconds},
            )
        return _CONTINUE

    def __repr__(self) -> str:
        return f"Timeout({self.seconds})"


class TokenBudget(StopCondition):
    """Stops when total tokens across all iterations reach *max_tokens*."""

    __slots__ = ("max_tokens",)

    def __init__(self, max_tokens: int) -> None:
        if max_tokens < 1:
            msg = f"max_tokens must be >= 1, got {max_tokens}"
            raise ValueError(msg)
        self.max_tokens = max_tokens

    async def check(self, state: LoopState) -> StopDecision:
        used = state.total_usage().total_tokens
        if used >= self.max_tokens:
            return StopDecision(
                should_stop=True,
                reason=f"Token budget exhausted ({used}/{self.max_tokens})",
                metadata={"current": used, "max": self.max_tokens},
            )
        return _CONTINUE

    def __repr__(self) -> str:
        return f"TokenBudget({self.max_tokens})"


class PredicateStopCondition(StopCondition):
    """Adapts a plain ``(LoopState) -> bool`` callable (sync or async)."""

    __slots__ = ("_fn",)

    def __init__(self, fn: Callable[[LoopState], bool | Awaitable[bool]]) -> None:
        self._fn = fn

    async def check(self, state: LoopState) -> StopDecision:
        outcome = self._fn(state)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if outcome:
            name = getattr(self._fn, "__name__", type(self._fn).__name__)
            return StopDecision(should_stop=True, reason=f"Stop predicate {name} fired")
        return _CONTINUE

    def __repr__(self) -> str:
        return f"PredicateStopCondition({self._fn!r})"


# ---------------------------------------------------------------------------
# AnyOf: first match wins
# ---------------------------------------------------------------------------


class AnyOf(StopCondition):
    """Aggregates conditions and returns the first triggered decision."""

    __slots__ = ("_conditions",)

    def __init__(self, conditions: list[StopCondition] | None = None) -> None:
        self._conditions: list[StopCondition] = list(conditions) if conditions else []

    def add(self, condition: StopCondition) -> AnyOf:
        """Append a condition (supports chaining)."""
        self._conditions.append(condition)
        return self

    async def check(self, state: LoopState) -> StopDecision:
        for condition in self._conditions:
            decision = await condition.check(state)
            if decision.should_stop:
                return decision
        return _CONTINUE

    def __len__(self) -> int:
        return len(self._conditions)

    def __repr__(self) -> str:
        return f"AnyOf(conditions={len(self._conditions)})"


def iteration_count_is(count: int) -> IterationCountIs:
    """Functional spelling of :class:`IterationCountIs`."""
    return IterationCountIs(count)


def as_stop_condition(
    value: StopCondition | Callable[[LoopState], bool | Awaitable[bool]],
) -> StopCondition:
    """Return *value* as a :class:`StopCondition`, wrapping plain callables.

    Raises:
        TypeError: If *value* is neither a condition nor callable.
    """
    if isinstance(value, StopCondition):
        return value
    if callable(value):
        return PredicateStopCondition(value)
    msg = f"stop_when must be a StopCondition or callable, got {type(value).__name__}"
    raise TypeError(msg)
