"""Ralph loop state, iteration records, verdicts, and loop errors."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ralphloop.generation.messages import merge_usage
from ralphloop.generation.step_loop import GenerationResult
from ralphloop.types import Message, RalphError, Usage, UserMessage

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CompletionReason(StrEnum):
    """Authoritative outcome of a loop invocation."""

    VERIFIED = "verified"
    MAX_ITERATIONS = "max-iterations"
    ABORTED = "aborted"

    def is_success(self) -> bool:
        """Return ``True`` only when the evaluator confirmed completion."""
        return self is CompletionReason.VERIFIED


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RalphLoopError(RalphError):
    """Base class for outer-loop errors."""


class ConfigurationError(RalphLoopError):
    """Raised at construction time for missing or invalid loop settings."""


class _IterationError(RalphLoopError):
    def __init__(self, message: str, *, iteration: int) -> None:
        super().__init__(message)
        self.iteration = iteration


class EvaluationError(_IterationError):
    """The evaluator raised or returned a malformed verdict."""


class GenerationError(_IterationError):
    """The inner loop failed to produce a generation result."""


class StopConditionError(_IterationError):
    """The stop condition raised while deciding whether to continue."""


class CancellationError(_IterationError):
    """An external abort signal was observed."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Verdict:
    """An evaluator's completion judgment for one iteration.

    Args:
        complete: Whether the original task is done.
        reason: Explanation (for judges, the raw judge response).
        feedback: Text injected as a new user turn before the next
            iteration when ``complete`` is false.
    """

    complete: bool
    reason: str | None = None
    feedback: str | None = None


@dataclass(frozen=True, slots=True)
class IterationRecord:
    """One finished iteration. ``verdict`` is ``None`` if evaluation failed."""

    index: int
    result: GenerationResult
    verdict: Verdict | None
    duration: float


# ---------------------------------------------------------------------------
# LoopState
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class LoopState:
    """Runtime state owned by a single loop invocation.

    ``messages`` and ``records`` only ever grow; use ``append_message`` and
    ``append_record`` rather than mutating the lists directly.
    """

    prompt: str
    messages: list[Message] = field(default_factory=list)
    records: list[IterationRecord] = field(default_factory=list)
    iteration: int = 0
    start_time: float = field(default_factory=time.monotonic)

    @classmethod
    def start(cls, prompt: str) -> LoopState:
        """Create state whose history begins with *prompt* as the first turn."""
        return cls(prompt=prompt, messages=[UserMessage(content=prompt)])

    # ---- queries ----------------------------------------------------------

    def elapsed(self) -> float:
        """Seconds since the loop started."""
        return time.monotonic() - self.start_time

    def total_usage(self) -> Usage:
        """Token usage summed over every recorded iteration."""
        usage = Usage()
        for record in self.records:
            usage = merge_usage(usage, record.result.usage)
        return usage

    def latest_record(self) -> IterationRecord | None:
        return self.records[-1] if self.records else None

    # ---- mutations --------------------------------------------------------

    def append_message(self, message: Message) -> None:
        self.messages.append(message)

    def append_record(self, record: IterationRecord) -> None:
        """Append *record*; its index must follow the previous one."""
        expected = len(self.records) + 1
        if record.index != expected:
            msg = f"iteration records must be contiguous: expected {expected}, got {record.index}"
            raise ValueError(msg)
        self.records.append(record)

    # ---- serialisation ----------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a plain dict for logging and inspection."""
        return {
            "prompt": self.prompt,
            "iteration": self.iteration,
            "elapsed": self.elapsed(),
            "messages": [m.model_dump() for m in self.messages],
            "records": [
                {
                    "index": r.index,
                    "text": r.result.text,
                    "complete": r.verdict.complete if r.verdict else None,
                    "duration": r.duration,
                }
                for r in self.records
            ],
            "usage": self.total_usage().model_dump(),
        }

    def __repr__(self) -> str:
        return (
            f"LoopState(iteration={self.iteration}, "
            f"messages={len(self.messages)}, "
            f"elapsed={self.elapsed():.1f}s)"
        )


# ---------------------------------------------------------------------------
# RalphResult
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RalphResult:
    """Final outcome of a loop invocation.

    Args:
        final_text: Text of the last generation result (empty if none).
        iterations: Number of iterations started.
        completion_reason: The authoritative outcome.
        reason: Verdict reason, stop-condition reason, or error message.
        last_result: The last successful generation result, if any.
        all_iteration_results: Generation results in iteration order.
        records: Every committed :class:`IterationRecord`.
        messages: The final conversation history.
        usage: Token usage summed over all recorded iterations.
        error: The triggering error when ``completion_reason`` is ``aborted``.
    """

    final_text: str
    iterations: int
    completion_reason: CompletionReason
    reason: str | None = None
    last_result: GenerationResult | None = None
    all_iteration_results: tuple[GenerationResult, ...] = ()
    records: tuple[IterationRecord, ...] = ()
    messages: tuple[Message, ...] = ()
    usage: Usage = field(default_factory=Usage)
    error: RalphLoopError | None = None

    @property
    def succeeded(self) -> bool:
        return self.completion_reason.is_success()
