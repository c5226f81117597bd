"""Tests for RalphLoop.stream() and the RalphStream handle."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest

from ralphloop.config import ModelConfig
from ralphloop.generation.step_loop import GenerationResult, GenerationStream, StepResult
from ralphloop.models.provider import ModelProvider
from ralphloop.models.types import ModelResponse, StreamChunk
from ralphloop.ralph import (
    Callback,
    CancellationError,
    CompletionReason,
    GenerationError,
    RalphLoop,
    RalphLoopError,
    RalphResult,
    RalphStream,
)
from ralphloop.types import AssistantMessage, Message, StepEvent, StreamEvent, TextEvent, Usage

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _result(text: str) -> GenerationResult:
    return GenerationResult(
        text=text,
        steps=[StepResult(step_number=1, text=text)],
        response_messages=[AssistantMessage(content=text)],
        usage=Usage(input_tokens=3, output_tokens=2, total_tokens=5),
    )


class _StreamingLoop:
    """InnerLoop stand-in: ``run`` returns ``run-N``, ``stream`` streams *streamed*."""

    def __init__(self, streamed: str = "streamed final answer", *, fail_after: int = -1) -> None:
        self.streamed = streamed
        self.fail_after = fail_after
        self.run_histories: list[list[Message]] = []
        self.stream_histories: list[list[Message]] = []
        self.closed = False

    async def run(
        self, history: Sequence[Message], tools: Any = None, stop_when: Any = None
    ) -> GenerationResult:
        self.run_histories.append(list(history))
        return _result(f"run-{len(self.run_histories)}")

    def stream(
        self, history: Sequence[Message], tools: Any = None, stop_when: Any = None
    ) -> GenerationStream:
        self.stream_histories.append(list(history))
        return GenerationStream(self._events())

    async def _events(self) -> AsyncIterator[StreamEvent | GenerationResult]:
        try:
            yield StepEvent(step_number=1, status="started", started_at=0.0)
            for i, word in enumerate(self.streamed.split(" ")):
                if i == self.fail_after:
                    raise RuntimeError("connection reset")
                yield TextEvent(text=word if i == 0 else f" {word}")
            yield StepEvent(step_number=1, status="completed", started_at=0.0, completed_at=1.0)
            yield _result(self.streamed)
        finally:
            self.closed = True


class _FakeProvider(ModelProvider):
    def __init__(self) -> None:
        super().__init__(ModelConfig(provider="fake", model_name="fake"))

    async def complete(self, messages: list[Message], **kwargs: Any) -> ModelResponse:
        return ModelResponse(content="yes")

    async def stream(self, messages: list[Message], **kwargs: Any) -> AsyncIterator[StreamChunk]:
        yield StreamChunk(delta="yes")


def _complete_at(n: int) -> Callback:
    return Callback(lambda ctx: ctx.iteration >= n)


def _make_loop(inner: _StreamingLoop, evaluator: Callback, **kwargs: Any) -> RalphLoop:
    return RalphLoop(_FakeProvider(), evaluator=evaluator, inner_loop=inner, **kwargs)


# ---------------------------------------------------------------------------
# Streaming the terminating iteration
# ---------------------------------------------------------------------------


class TestStream:
    async def test_returns_handle(self) -> None:
        handle = _make_loop(_StreamingLoop(), _complete_at(1)).stream("task")
        assert isinstance(handle, RalphStream)
        assert not handle.done
        assert "pending" in repr(handle)

    async def test_completion_at_three_of_five(self) -> None:
        inner = _StreamingLoop()
        handle = _make_loop(inner, _complete_at(3), max_iterations=5).stream("task")

        chunks = [chunk async for chunk in handle.text_stream()]
        result = handle.result

        assert "".join(chunks) == "streamed final answer"
        assert len(inner.run_histories) == 3
        assert len(inner.stream_histories) == 1
        assert result.completion_reason == CompletionReason.VERIFIED
        assert result.iterations == 3
        assert len(result.all_iteration_results) == 3
        assert result.final_text == "streamed final answer"
        assert [r.text for r in result.all_iteration_results] == [
            "run-1",
            "run-2",
            "streamed final answer",
        ]

    async def test_stream_reissues_from_same_history(self) -> None:
        inner = _StreamingLoop()
        handle = _make_loop(inner, _complete_at(2)).stream("task")
        await handle.collect()

        assert inner.stream_histories[0] == inner.run_histories[-1]

    async def test_events_only_from_terminating_iteration(self) -> None:
        inner = _StreamingLoop("a b")
        handle = _make_loop(inner, _complete_at(2)).stream("task")

        events = [event async for event in handle]

        assert [type(e).__name__ for e in events] == [
            "StepEvent",
            "TextEvent",
            "TextEvent",
            "StepEvent",
        ]
        assert handle.done
        assert "done" in repr(handle)

    async def test_budget_exhausted(self) -> None:
        inner = _StreamingLoop()
        handle = _make_loop(inner, Callback(lambda ctx: False), max_iterations=2).stream("task")

        result = await handle.collect()

        assert result.completion_reason == CompletionReason.MAX_ITERATIONS
        assert result.reason == "Reached max iterations (2/2)"
        assert len(inner.run_histories) == 2
        assert len(inner.stream_histories) == 1
        assert result.iterations == 2

    async def test_streamed_round_is_reevaluated(self) -> None:
        calls: list[int] = []

        def judge(ctx: Any) -> bool:
            calls.append(ctx.iteration)
            return len(calls) == 1

        inner = _StreamingLoop()
        loop = _make_loop(inner, Callback(judge), max_iterations=1)
        result = await loop.stream("task").collect()

        assert calls == [1, 1]
        assert result.completion_reason == CompletionReason.MAX_ITERATIONS
        assert result.reason == "Reached max iterations (1/1)"
        assert result.final_text == "streamed final answer"

    async def test_rejected_streamed_round_continues_within_budget(self) -> None:
        calls: list[int] = []

        def judge(ctx: Any) -> bool:
            calls.append(ctx.iteration)
            return len(calls) != 2

        inner = _StreamingLoop("s")
        handle = _make_loop(inner, Callback(judge), max_iterations=10).stream("task")
        events = [event async for event in handle]
        result = handle.result

        assert calls == [1, 1, 2, 2]
        assert result.completion_reason == CompletionReason.VERIFIED
        assert result.iterations == 2
        assert [r.text for r in result.all_iteration_results] == ["s", "s"]
        assert [r.verdict.complete for r in result.records if r.verdict] == [False, True]
        assert len(inner.run_histories) == 2
        assert len(inner.stream_histories) == 2
        assert inner.run_histories[1][-1] == AssistantMessage(content="s")
        assert len([e for e in events if isinstance(e, TextEvent)]) == 2

    async def test_usage_and_messages_cover_streamed_round(self) -> None:
        inner = _StreamingLoop("final")
        result = await _make_loop(inner, _complete_at(2)).stream("task").collect()

        assert result.usage.total_tokens == 10
        assert result.messages[-1] == AssistantMessage(content="final")
        assert AssistantMessage(content="run-2") not in result.messages

    async def test_observers_fire_for_streamed_round(self) -> None:
        started: list[int] = []
        ended: list[tuple[int, str]] = []
        finished: list[RalphResult] = []
        loop = _make_loop(
            _StreamingLoop("s"),
            _complete_at(2),
            on_iteration_start=lambda k, state: started.append(k),
            on_iteration_end=lambda k, result, d: ended.append((k, result.text)),
            on_finish=finished.append,
        )

        handle = loop.stream("task")
        await handle.collect()

        assert started == [1, 2, 2]
        assert ended == [(1, "run-1"), (2, "run-2"), (2, "s")]
        assert finished == [handle.result]

    async def test_stream_failure_keeps_non_streamed_round(self) -> None:
        inner = _StreamingLoop("one two three", fail_after=1)
        handle = _make_loop(inner, _complete_at(1)).stream("task")

        chunks = [chunk async for chunk in handle.text_stream()]
        result = handle.result

        assert chunks == ["one"]
        assert result.completion_reason == CompletionReason.ABORTED
        assert isinstance(result.error, GenerationError)
        assert isinstance(result.error.__cause__, RuntimeError)
        assert result.final_text == "run-1"
        assert len(result.records) == 1

    async def test_evaluation_failure_in_earlier_iteration_skips_streaming(self) -> None:
        def judge(ctx: Any) -> bool:
            raise ValueError("bad judge")

        inner = _StreamingLoop()
        result = await _make_loop(inner, Callback(judge)).stream("task").collect()

        assert result.completion_reason == CompletionReason.ABORTED
        assert inner.stream_histories == []


# ---------------------------------------------------------------------------
# Cancellation while streaming
# ---------------------------------------------------------------------------


class TestStreamCancellation:
    async def test_cancel_before_start_yields_nothing(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        inner = _StreamingLoop()
        handle = _make_loop(inner, _complete_at(1)).stream("task", cancel=cancel)

        events = [event async for event in handle]

        assert events == []
        assert handle.result.completion_reason == CompletionReason.ABORTED
        assert handle.result.iterations == 1
        assert handle.result.records == ()
        assert inner.stream_histories == []

    async def test_cancel_mid_stream_closes_source(self) -> None:
        cancel = asyncio.Event()
        inner = _StreamingLoop("one two three four")
        handle = _make_loop(inner, _complete_at(1)).stream("task", cancel=cancel)

        seen: list[str] = []
        async for chunk in handle.text_stream():
            seen.append(chunk)
            cancel.set()

        result = handle.result
        assert seen == ["one"]
        assert inner.closed
        assert result.completion_reason == CompletionReason.ABORTED
        assert isinstance(result.error, CancellationError)
        assert result.final_text == "run-1"


# ---------------------------------------------------------------------------
# Handle contract
# ---------------------------------------------------------------------------


class TestHandle:
    async def test_result_before_drain_raises(self) -> None:
        handle = _make_loop(_StreamingLoop(), _complete_at(1)).stream("task")
        with pytest.raises(RalphLoopError, match="not been drained"):
            _ = handle.result

    async def test_single_consumption(self) -> None:
        handle = _make_loop(_StreamingLoop(), _complete_at(1)).stream("task")
        await handle.collect()

        with pytest.raises(RalphLoopError, match="once"):
            async for _ in handle:
                pass

    async def test_collect_after_iteration_returns_result(self) -> None:
        handle = _make_loop(_StreamingLoop(), _complete_at(1)).stream("task")
        async for _ in handle:
            pass

        result = await handle.collect()
        assert result is handle.result

    async def test_aclose_before_iteration(self) -> None:
        inner = _StreamingLoop()
        handle = _make_loop(inner, _complete_at(1)).stream("task")

        await handle.aclose()

        assert inner.run_histories == []
        assert not handle.done
