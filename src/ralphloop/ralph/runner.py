"""RalphLoop: iterate a generation round until an evaluator verifies completion.

Per iteration:
    1. **Generate**: run the inner step loop on the accumulated history.
    2. **Observe**: notify ``iteration_end`` / ``iteration_finish`` observers.
    3. **Evaluate**: ask the evaluator for a :class:`Verdict`.
    4. **Halt**: stop on a complete verdict, or when the stop condition fires;
       otherwise append the round's messages and any feedback, then repeat.

Errors from the inner loop, the evaluator or the stop condition abort the
loop; they are attached to the result, never treated as an incomplete verdict.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from ralphloop.config import DEFAULT_MAX_ITERATIONS, LoopSettings
from ralphloop.generation.step_loop import (
    GenerationResult,
    GenerationStream,
    InnerLoop,
    StepLoop,
)
from ralphloop.generation.stop import StepCountIs, StepStopCondition
from ralphloop.log import LogContext, get_logger
from ralphloop.models.provider import ModelProvider, get_provider
from ralphloop.ralph.config import (
    CancellationError,
    CompletionReason,
    ConfigurationError,
    GenerationError,
    IterationRecord,
    LoopState,
    RalphLoopError,
    RalphResult,
    StopConditionError,
    Verdict,
)
from ralphloop.ralph.detectors import IterationCountIs, StopCondition, as_stop_condition
from ralphloop.ralph.evaluators import (
    DEFAULT_COMPLETION_QUESTION,
    EVALUATOR_TYPES,
    EvaluationContext,
    Evaluator,
    JudgeModel,
    SelfJudge,
    evaluate,
)
from ralphloop.ralph.observers import (
    FINISH,
    ITERATION_END,
    ITERATION_FINISH,
    ITERATION_START,
    Observer,
    ObserverBus,
)
from ralphloop.ralph.streaming import RalphStream
from ralphloop.tool import Tool, ToolError, normalize_tools
from ralphloop.types import StreamEvent, UserMessage

_log = get_logger(__name__)

_T = TypeVar("_T")

__all__ = ["RalphLoop", "RalphResult"]


@dataclass(frozen=True, slots=True)
class _Outcome:
    """How the iteration loop ended, before the terminating round is committed."""

    reason: CompletionReason
    result: GenerationResult | None = None
    verdict: Verdict | None = None
    duration: float = 0.0
    detail: str | None = None
    error: RalphLoopError | None = None


# ---------------------------------------------------------------------------
# RalphLoop
# ---------------------------------------------------------------------------


class RalphLoop:
    """Outer loop that re-runs a generation round until the task is verified.

    Args:
        model: ``"provider:model_name"`` string or a ``ModelProvider``.
        evaluator: ``SelfJudge``, ``JudgeModel`` or ``Callback``.
        instructions: System prompt for every generation round.
        tools: Tools (or plain functions) available to every round.
        stop_when: Outer stop condition, or a ``(LoopState) -> bool`` callable.
        max_iterations: Shorthand for ``stop_when=IterationCountIs(n)``.
        tool_stop_when: Inner stop condition(s) bounding each round.
        on_iteration_start: Observer ``(iteration, state)``.
        on_iteration_end: Observer ``(iteration, result, duration)``.
        on_iteration_finish: Observer ``(iteration, result, duration)``.
        on_finish: Observer ``(result)``.
        temperature: Sampling temperature for generation rounds.
        max_tokens: Maximum output tokens per LLM call.
        max_retries: LLM call attempts inside a round.
        inner_loop: Replacement generation engine; ``instructions``,
            ``temperature``, ``max_tokens`` and ``max_retries`` only apply
            to the default :class:`StepLoop`.

    Raises:
        ConfigurationError: If the model or evaluator is missing or invalid,
            if ``max_iterations < 1``, or if both ``stop_when`` and
            ``max_iterations`` are given.
    """

    __slots__ = (
        "_evaluator",
        "_inner",
        "_judge",
        "_observers",
        "_provider",
        "_stop_when",
        "_tool_stop_when",
        "_tools",
    )

    def __init__(
        self,
        model: str | ModelProvider | None,
        *,
        evaluator: Evaluator | None,
        instructions: str | None = None,
        tools: Iterable[Tool | Callable[..., Any]] | None = None,
        stop_when: StopCondition | Callable[[LoopState], Any] | None = None,
        max_iterations: int | None = None,
        tool_stop_when: StepStopCondition | Sequence[StepStopCondition] | None = None,
        on_iteration_start: Observer | None = None,
        on_iteration_end: Observer | None = None,
        on_iteration_finish: Observer | None = None,
        on_finish: Observer | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int = 3,
        inner_loop: InnerLoop | None = None,
    ) -> None:
        if not model:
            raise ConfigurationError("A model is required")
        if evaluator is None:
            raise ConfigurationError("An evaluator is required")
        if not isinstance(evaluator, EVALUATOR_TYPES):
            raise ConfigurationError(
                f"evaluator must be SelfJudge, JudgeModel or Callback, "
                f"got {type(evaluator).__name__}"
            )
        if stop_when is not None and max_iterations is not None:
            raise ConfigurationError("Pass either stop_when or max_iterations, not both")
        if max_iterations is not None and max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {max_iterations}")

        self._provider = _resolve_model(model, "model")
        self._judge: ModelProvider | None = None
        if isinstance(evaluator, JudgeModel):
            self._judge = _resolve_model(evaluator.model, "judge model")
        self._evaluator = evaluator

        if stop_when is None:
            self._stop_when: StopCondition = IterationCountIs(
                max_iterations or DEFAULT_MAX_ITERATIONS
            )
        else:
            try:
                self._stop_when = as_stop_condition(stop_when)
            except TypeError as exc:
                raise ConfigurationError(str(exc)) from exc

        try:
            self._tools = list(normalize_tools(tools).values())
        except ToolError as exc:
            raise ConfigurationError(str(exc)) from exc
        self._tool_stop_when = tool_stop_when

        try:
            self._inner: InnerLoop = inner_loop or StepLoop(
                self._provider,
                instructions=instructions or "",
                temperature=temperature,
                max_tokens=max_tokens,
                max_retries=max_retries,
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        self._observers = ObserverBus()
        for event, handler in (
            (ITERATION_START, on_iteration_start),
            (ITERATION_END, on_iteration_end),
            (ITERATION_FINISH, on_iteration_finish),
            (FINISH, on_finish),
        ):
            if handler is not None:
                self._observers.on(event, handler)

    @classmethod
    def from_settings(
        cls,
        settings: LoopSettings,
        *,
        provider: ModelProvider | None = None,
        evaluator: Evaluator | None = None,
        tools: Iterable[Tool | Callable[..., Any]] | None = None,
        **kwargs: Any,
    ) -> RalphLoop:
        """Build a loop from declarative :class:`LoopSettings`.

        ``judge_model`` selects a :class:`JudgeModel` evaluator, otherwise the
        primary model judges itself. An explicit *evaluator* wins over both.
        """
        if evaluator is None:
            question = settings.completion_question or DEFAULT_COMPLETION_QUESTION
            if settings.judge_model:
                evaluator = JudgeModel(settings.judge_model, question=question)
            else:
                evaluator = SelfJudge(question=question)
        return cls(
            provider or settings.model,
            evaluator=evaluator,
            instructions=settings.instructions or None,
            tools=tools,
            max_iterations=settings.max_iterations,
            tool_stop_when=StepCountIs(settings.max_steps),
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            **kwargs,
        )

    # ---- public API -------------------------------------------------------

    @property
    def observers(self) -> ObserverBus:
        return self._observers

    async def loop(self, prompt: str, *, cancel: asyncio.Event | None = None) -> RalphResult:
        """Run iterations until verified, stopped, or aborted.

        Args:
            prompt: The original task; becomes the first conversation turn.
            cancel: Abort signal; checked between iterations and raced
                against every in-flight inner-loop and evaluator call. A
                signal that is already set still counts as one started
                iteration, which aborts before the inner loop is called.
        """
        state = self._begin(prompt)
        outcome = await self._drive(state, cancel)
        self._commit(state, outcome)
        return await self._finish(state, outcome)

    run = loop

    def stream(self, prompt: str, *, cancel: asyncio.Event | None = None) -> RalphStream:
        """Like :meth:`loop`, but stream the terminating iteration.

        Earlier iterations run without streaming. The iteration that ends
        the loop is re-issued in streaming mode from the same history, then
        evaluated again once drained; the streamed round replaces the
        non-streamed attempt in the records. If a verified round fails its
        re-evaluation while the stop condition allows more iterations, the
        loop carries on from the streamed round, so the handle can carry the
        events of more than one round.
        """
        return RalphStream(self._stream_events(prompt, cancel))

    # ---- iteration loop ---------------------------------------------------

    def _begin(self, prompt: str) -> LoopState:
        _log.info(
            "Ralph loop starting: evaluator=%s stop_when=%r tools=%d prompt_len=%d",
            type(self._evaluator).__name__,
            self._stop_when,
            len(self._tools),
            len(prompt),
        )
        return LoopState.start(prompt)

    async def _drive(self, state: LoopState, cancel: asyncio.Event | None) -> _Outcome:
        """Run iterations; the terminating round is returned uncommitted."""
        while True:
            if cancel is not None and cancel.is_set() and state.iteration > 0:
                error = CancellationError(
                    f"Aborted before iteration {state.iteration + 1}",
                    iteration=state.iteration,
                )
                return _Outcome(CompletionReason.ABORTED, detail=str(error), error=error)

            state.iteration += 1
            k = state.iteration
            with LogContext(iteration=k):
                await self._observers.emit(ITERATION_START, k, state)
                started = time.monotonic()
                try:
                    result = await self._generate(state, cancel)
                except RalphLoopError as exc:
                    return _Outcome(CompletionReason.ABORTED, detail=str(exc), error=exc)
                duration = time.monotonic() - started
                _log.debug(
                    "iteration %d generated %d step(s) in %.2fs", k, len(result.steps), duration
                )
                await self._observers.emit(ITERATION_END, k, result, duration)
                await self._observers.emit(ITERATION_FINISH, k, result, duration)

                try:
                    verdict = await self._evaluate(state, result, cancel)
                except RalphLoopError as exc:
                    return _Outcome(
                        CompletionReason.ABORTED,
                        result=result,
                        duration=duration,
                        detail=str(exc),
                        error=exc,
                    )
                if verdict.complete:
                    return _Outcome(
                        CompletionReason.VERIFIED,
                        result=result,
                        verdict=verdict,
                        duration=duration,
                        detail=verdict.reason,
                    )

                record = IterationRecord(k, result, verdict, duration)
                outcome = await self._halt(state, record)
                if outcome is not None:
                    return outcome
                self._advance(state, record)
                _log.debug("iteration %d incomplete; continuing", k)

    async def _halt(self, state: LoopState, record: IterationRecord) -> _Outcome | None:
        """Ask the stop condition about an incomplete *record*; ``None`` means go on."""
        candidate = dataclasses.replace(state, records=[*state.records, record])
        try:
            decision = await self._stop_when.check(candidate)
        except Exception as exc:
            error = StopConditionError(
                f"Stop condition {self._stop_when!r} failed on iteration {record.index}: {exc}",
                iteration=record.index,
            )
            error.__cause__ = exc
            return _Outcome(
                CompletionReason.ABORTED,
                result=record.result,
                verdict=record.verdict,
                duration=record.duration,
                detail=str(error),
                error=error,
            )
        if not decision.should_stop:
            return None
        return _Outcome(
            CompletionReason.MAX_ITERATIONS,
            result=record.result,
            verdict=record.verdict,
            duration=record.duration,
            detail=decision.reason,
        )

    @staticmethod
    def _advance(state: LoopState, record: IterationRecord) -> None:
        """Fold an incomplete round into the history the next round sees."""
        state.append_record(record)
        for message in record.result.response_messages:
            state.append_message(message)
        if record.verdict is not None and record.verdict.feedback:
            state.append_message(UserMessage(content=record.verdict.feedback))

    async def _generate(self, state: LoopState, cancel: asyncio.Event | None) -> GenerationResult:
        k = state.iteration
        try:
            return await self._guard(
                self._inner.run(list(state.messages), self._tools, self._tool_stop_when),
                cancel,
                k,
            )
        except CancellationError:
            raise
        except Exception as exc:
            raise GenerationError(
                f"Inner loop failed on iteration {k}: {exc}", iteration=k
            ) from exc

    async def _evaluate(
        self,
        state: LoopState,
        result: GenerationResult,
        cancel: asyncio.Event | None,
    ) -> Verdict:
        ctx = EvaluationContext(
            latest_result=result,
            iteration=state.iteration,
            records=tuple(state.records),
            original_prompt=state.prompt,
            messages=tuple(state.messages),
        )
        return await self._guard(
            evaluate(self._evaluator, ctx, primary=self._provider, judge=self._judge),
            cancel,
            state.iteration,
        )

    async def _guard(
        self,
        aw: Awaitable[_T],
        cancel: asyncio.Event | None,
        iteration: int,
    ) -> _T:
        """Await *aw*, cancelling it if *cancel* fires first."""
        if cancel is None:
            return await aw
        if cancel.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise CancellationError(f"Aborted during iteration {iteration}", iteration=iteration)
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        await asyncio.gather(task, return_exceptions=True)
        raise CancellationError(f"Aborted during iteration {iteration}", iteration=iteration)

    # ---- streaming --------------------------------------------------------

    async def _stream_events(
        self, prompt: str, cancel: asyncio.Event | None
    ) -> AsyncIterator[StreamEvent | RalphResult]:
        state = self._begin(prompt)
        while True:
            outcome = await self._drive(state, cancel)
            if outcome.reason is CompletionReason.ABORTED:
                break
            rejected: IterationRecord | None = None
            async for item in self._stream_final(state, outcome, cancel):
                if isinstance(item, _Outcome):
                    outcome = item
                elif isinstance(item, IterationRecord):
                    rejected = item
                else:
                    yield item
            if rejected is None:
                break
            self._advance(state, rejected)
            _log.debug("streamed iteration %d rejected; continuing", rejected.index)
        self._commit(state, outcome)
        yield await self._finish(state, outcome)

    async def _stream_final(
        self,
        state: LoopState,
        previous: _Outcome,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[StreamEvent | _Outcome | IterationRecord]:
        """Re-issue the terminating iteration as a stream, then re-evaluate it.

        Yields the round's events followed by either one :class:`_Outcome`
        or, when a round that was verified is rejected on re-evaluation and
        the stop condition allows another iteration, the streamed round as
        an :class:`IterationRecord` to continue from. If streaming fails or
        is cancelled, the outcome keeps the non-streamed attempt and reports
        ``aborted``.
        """
        k = state.iteration
        _log.debug("re-issuing iteration %d in streaming mode", k)
        await self._observers.emit(ITERATION_START, k, state)
        started = time.monotonic()
        try:
            handle: GenerationStream = self._inner.stream(
                list(state.messages), self._tools, self._tool_stop_when
            )
            async for event in handle:
                if cancel is not None and cancel.is_set():
                    await handle.aclose()
                    error: RalphLoopError = CancellationError(
                        f"Aborted while streaming iteration {k}", iteration=k
                    )
                    yield dataclasses.replace(
                        previous, reason=CompletionReason.ABORTED, detail=str(error), error=error
                    )
                    return
                yield event
            result = handle.result
        except Exception as exc:
            error = GenerationError(
                f"Streaming inner loop failed on iteration {k}: {exc}", iteration=k
            )
            error.__cause__ = exc
            yield dataclasses.replace(
                previous, reason=CompletionReason.ABORTED, detail=str(error), error=error
            )
            return

        duration = time.monotonic() - started
        await self._observers.emit(ITERATION_END, k, result, duration)
        await self._observers.emit(ITERATION_FINISH, k, result, duration)
        try:
            verdict = await self._evaluate(state, result, cancel)
        except RalphLoopError as exc:
            yield _Outcome(
                CompletionReason.ABORTED,
                result=result,
                duration=duration,
                detail=str(exc),
                error=exc,
            )
            return

        if verdict.complete:
            yield _Outcome(
                CompletionReason.VERIFIED,
                result=result,
                verdict=verdict,
                duration=duration,
                detail=verdict.reason,
            )
            return
        if previous.reason is CompletionReason.MAX_ITERATIONS:
            yield _Outcome(
                CompletionReason.MAX_ITERATIONS,
                result=result,
                verdict=verdict,
                duration=duration,
                detail=previous.detail,
            )
            return

        record = IterationRecord(k, result, verdict, duration)
        outcome = await self._halt(state, record)
        yield record if outcome is None else outcome

    # ---- termination ------------------------------------------------------

    def _commit(self, state: LoopState, outcome: _Outcome) -> None:
        """Record the terminating round, if one produced a result."""
        if outcome.result is None:
            return
        state.append_record(
            IterationRecord(state.iteration, outcome.result, outcome.verdict, outcome.duration)
        )
        for message in outcome.result.response_messages:
            state.append_message(message)

    async def _finish(self, state: LoopState, outcome: _Outcome) -> RalphResult:
        results = tuple(r.result for r in state.records)
        last = results[-1] if results else None
        result = RalphResult(
            final_text=last.text if last else "",
            iterations=state.iteration,
            completion_reason=outcome.reason,
            reason=outcome.detail,
            last_result=last,
            all_iteration_results=results,
            records=tuple(state.records),
            messages=tuple(state.messages),
            usage=state.total_usage(),
            error=outcome.error,
        )
        if outcome.error is not None:
            _log.error(
                "Ralph loop aborted after %d iteration(s): %s",
                state.iteration,
                outcome.error,
                exc_info=outcome.error,
            )
        else:
            _log.info(
                "Ralph loop finished: reason=%s iterations=%d elapsed=%.1fs",
                outcome.reason,
                state.iteration,
                state.elapsed(),
            )
        await self._observers.emit(FINISH, result)
        return result

    def __repr__(self) -> str:
        return (
            f"RalphLoop(model={self._provider.model_id!r}, "
            f"evaluator={type(self._evaluator).__name__}, stop_when={self._stop_when!r})"
        )


def _resolve_model(model: str | ModelProvider, label: str) -> ModelProvider:
    if isinstance(model, ModelProvider):
        return model
    try:
        return get_provider(model)
    except Exception as exc:
        raise ConfigurationError(f"Cannot resolve {label} '{model}': {exc}") from exc
