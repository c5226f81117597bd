"""Completion evaluators: the closed set of verdict producers.

Three variants exist and ``evaluate()`` handles each one exhaustively:

* ``SelfJudge`` asks the loop's own model whether the task is done.
* ``JudgeModel`` asks a separate model the same question.
* ``Callback`` hands an :class:`EvaluationContext` to a caller function.

Judges never receive tools; the transcript is flattened to plain text turns
before the completion question is appended.
"""

from __future__ import annotations

import inspect
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, assert_never

from ralphloop.generation.messages import flatten_transcript
from ralphloop.generation.step_loop import GenerationResult
from ralphloop.log import get_logger
from ralphloop.models.provider import ModelProvider, get_provider
from ralphloop.ralph.config import EvaluationError, IterationRecord, Verdict
from ralphloop.types import Message, SystemMessage, UserMessage

_log = get_logger(__name__)

DEFAULT_COMPLETION_QUESTION = (
    "Has the original task been fully completed? Answer YES or NO on the first line. "
    "If NO, explain on the following lines exactly what is still missing or wrong."
)

JUDGE_INSTRUCTIONS = (
    "You are reviewing the work of an assistant on a task. Read the conversation "
    "and judge strictly whether the user's original request has been satisfied. "
    "Do not attempt the task yourself."
)

_AFFIRMATIVE = frozenset({"yes", "y", "true", "complete", "completed", "done"})
_TOKEN_RE = re.compile(r"^\W*(\w+)\W*(.*)$", re.DOTALL)


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SelfJudge:
    """Judge completion with the loop's own model."""

    question: str = DEFAULT_COMPLETION_QUESTION


@dataclass(frozen=True, slots=True)
class JudgeModel:
    """Judge completion with a distinct model.

    Args:
        model: ``"provider:model_name"`` string or a ready ``ModelProvider``.
        question: Completion question appended to the transcript.
    """

    model: str | ModelProvider
    question: str = DEFAULT_COMPLETION_QUESTION


CallbackFn = Callable[["EvaluationContext"], Any]


@dataclass(frozen=True, slots=True)
class Callback:
    """Judge completion with a caller-supplied function.

    ``fn`` may be sync or async and must return a ``bool``, a
    :class:`Verdict`, or a mapping with a ``"complete"`` key (and optional
    ``"reason"`` / ``"feedback"``).
    """

    fn: CallbackFn


Evaluator = SelfJudge | JudgeModel | Callback

EVALUATOR_TYPES: tuple[type, ...] = (SelfJudge, JudgeModel, Callback)


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    """Input handed to every evaluator."""

    latest_result: GenerationResult
    iteration: int
    records: Sequence[IterationRecord]
    original_prompt: str
    messages: Sequence[Message] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Verdict parsing
# ---------------------------------------------------------------------------


def parse_verdict(text: str) -> Verdict:
    """Parse a judge response into a :class:`Verdict`.

    The first word decides: an affirmative token means complete. The raw
    response becomes ``reason``; for a negative verdict the text after the
    first word (or the whole response if nothing follows) is ``feedback``.
    """
    raw = text.strip()
    match = _TOKEN_RE.match(raw)
    if match is None:
        return Verdict(complete=False, reason=raw or None, feedback=raw or None)
    token, rest = match.group(1).lower(), match.group(2).strip()
    if token in _AFFIRMATIVE:
        return Verdict(complete=True, reason=raw)
    return Verdict(complete=False, reason=raw, feedback=rest or raw)


def _coerce_callback_result(value: Any) -> Verdict:
    if isinstance(value, Verdict):
        return value
    if isinstance(value, bool):
        return Verdict(complete=value)
    if isinstance(value, Mapping) and isinstance(value.get("complete"), bool):
        return Verdict(
            complete=value["complete"],
            reason=value.get("reason"),
            feedback=value.get("feedback"),
        )
    raise TypeError(f"malformed verdict of type {type(value).__name__}: {value!r}")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def _ask_judge(provider: ModelProvider, question: str, ctx: EvaluationContext) -> Verdict:
    transcript = [*ctx.messages, *ctx.latest_result.response_messages]
    messages: list[Message] = [
        SystemMessage(content=JUDGE_INSTRUCTIONS),
        *flatten_transcript(transcript),
        UserMessage(content=question),
    ]
    response = await provider.complete(messages, tools=None)
    verdict = parse_verdict(response.content)
    _log.debug(
        "judge %s on iteration %d: complete=%s", provider.model_id, ctx.iteration, verdict.complete
    )
    return verdict


async def evaluate(
    evaluator: Evaluator,
    ctx: EvaluationContext,
    *,
    primary: ModelProvider | None,
    judge: ModelProvider | None = None,
) -> Verdict:
    """Produce a verdict for the iteration described by *ctx*.

    Args:
        evaluator: One of the three evaluator variants.
        ctx: The latest result plus loop history.
        primary: The loop's own provider, used by ``SelfJudge``.
        judge: Pre-resolved provider for ``JudgeModel`` (resolved from
            ``evaluator.model`` when omitted).

    Raises:
        EvaluationError: If the evaluator raises or returns a malformed
            verdict. The original exception is chained as ``__cause__``.
    """
    try:
        match evaluator:
            case SelfJudge(question=question):
                if primary is None:
                    raise ValueError("SelfJudge requires the loop's model provider")
                return await _ask_judge(primary, question, ctx)
            case JudgeModel(model=model, question=question):
                if judge is None:
                    if isinstance(model, ModelProvider):
                        judge = model
                    else:
                        judge = get_provider(model)
                return await _ask_judge(judge, question, ctx)
            case Callback(fn=fn):
                outcome = fn(ctx)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                return _coerce_callback_result(outcome)
            case _:
                assert_never(evaluator)
    except EvaluationError:
        raise
    except Exception as exc:
        raise EvaluationError(
            f"Evaluator {type(evaluator).__name__} failed on iteration {ctx.iteration}: {exc}",
            iteration=ctx.iteration,
        ) from exc
