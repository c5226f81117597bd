"""Inner step loop: one bounded model/tool generation round.

``StepLoop`` calls the provider, executes any requested tools in
parallel, feeds the results back, and repeats until the model answers
with text only or the round's own stop condition fires. The outer Ralph
loop consumes it only through the ``InnerLoop`` protocol, so tests and
callers can substitute any object with the same two methods.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ralphloop.generation.messages import (
    build_messages,
    merge_usage,
    parse_tool_arguments,
)
from ralphloop.generation.stop import StepCountIs, StepStopCondition, should_stop
from ralphloop.log import get_logger
from ralphloop.models.provider import ModelProvider
from ralphloop.models.types import FinishReason, ModelError, ModelResponse
from ralphloop.tool import Tool, normalize_tools
from ralphloop.types import (
    AssistantMessage,
    Message,
    RalphError,
    StepEvent,
    StreamEvent,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolResult,
    ToolResultEvent,
    Usage,
)

_log = get_logger(__name__)

DEFAULT_STEP_LIMIT = 10

ToolsArg = Iterable[Tool | Callable[..., Any]] | None
StopArg = StepStopCondition | Sequence[StepStopCondition] | None


class StepLoopError(RalphError):
    """Raised when a generation round cannot complete (retries exhausted, bad stream)."""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class StepResult(BaseModel):
    """One LLM call of a generation round plus the tools it triggered."""

    model_config = {"frozen": True}

    step_number: int
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: FinishReason = "stop"


class GenerationResult(BaseModel):
    """Outcome of one generation round.

    Args:
        text: Text of the final step.
        steps: Every step of the round, in order.
        response_messages: Assistant messages and tool results the round
            produced, ready to append to the conversation history.
        usage: Token usage summed over all steps.
        finish_reason: Finish reason of the final step.
    """

    model_config = {"frozen": True}

    text: str = ""
    steps: list[StepResult] = Field(default_factory=list)
    response_messages: list[Message] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: FinishReason = "stop"


class GenerationStream:
    """Incrementally consumable generation round.

    Wraps an async iterator that yields stream events followed by exactly
    one ``GenerationResult``; the result is captured rather than passed to
    the consumer. The stream can be iterated once.
    """

    __slots__ = ("_consumed", "_result", "_source")

    def __init__(self, source: AsyncIterator[StreamEvent | GenerationResult]) -> None:
        self._source = source
        self._result: GenerationResult | None = None
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise StepLoopError("GenerationStream can only be consumed once")
        self._consumed = True
        async for item in self._source:
            if isinstance(item, GenerationResult):
                self._result = item
            else:
                yield item
        if self._result is None:
            raise StepLoopError("Generation stream ended without a result")

    async def text_stream(self) -> AsyncIterator[str]:
        """Yield only the text deltas."""
        async for event in self:
            if isinstance(event, TextEvent):
                yield event.text

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> GenerationResult:
        """The drained round's result.

        Raises:
            StepLoopError: If the stream has not been fully consumed.
        """
        if self._result is None:
            raise StepLoopError("GenerationStream has not been drained yet")
        return self._result

    async def collect(self) -> GenerationResult:
        """Drain the stream (if not already consumed) and return the result."""
        if not self._consumed:
            async for _ in self:
                pass
        return self.result

    async def aclose(self) -> None:
        """Close the underlying source, abandoning any in-flight call."""
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


@runtime_checkable
class InnerLoop(Protocol):
    """The narrow interface the outer loop needs from a generation engine."""

    async def run(
        self,
        history: Sequence[Message],
        tools: ToolsArg = None,
        stop_when: StopArg = None,
    ) -> GenerationResult: ...

    def stream(
        self,
        history: Sequence[Message],
        tools: ToolsArg = None,
        stop_when: StopArg = None,
    ) -> GenerationStream: ...


# ---------------------------------------------------------------------------
# StepLoop
# ---------------------------------------------------------------------------


class StepLoop:
    """Default ``InnerLoop`` backed by a ``ModelProvider``.

    Args:
        provider: The model provider to call.
        instructions: System prompt prepended to every call.
        temperature: Sampling temperature override.
        max_tokens: Maximum output tokens per call.
        max_retries: Attempts per LLM call in non-streaming mode.
        retry_delay: Base delay in seconds; doubles after every failed attempt.
    """

    __slots__ = (
        "_instructions",
        "_max_retries",
        "_max_tokens",
        "_provider",
        "_retry_delay",
        "_temperature",
    )

    def __init__(
        self,
        provider: ModelProvider,
        *,
        instructions: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        if max_retries < 1:
            msg = f"max_retries must be >= 1, got {max_retries}"
            raise ValueError(msg)
        self._provider = provider
        self._instructions = instructions
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._max_retries = max_retries
        self._retry_delay = retry_delay

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    async def run(
        self,
        history: Sequence[Message],
        tools: ToolsArg = None,
        stop_when: StopArg = None,
    ) -> GenerationResult:
        """Run one generation round to completion.

        Raises:
            StepLoopError: If an LLM call still fails after all retries.
        """
        tool_map = normalize_tools(tools)
        schemas = [t.to_schema() for t in tool_map.values()] or None
        conditions = stop_when or StepCountIs(DEFAULT_STEP_LIMIT)
        msg_list = build_messages(self._instructions, history)
        response_messages: list[Message] = []
        steps: list[StepResult] = []
        usage = Usage()

        while True:
            response = await self._call_llm(msg_list, schemas)
            usage = merge_usage(usage, response.usage)
            assistant = AssistantMessage(content=response.content, tool_calls=response.tool_calls)
            msg_list.append(assistant)
            response_messages.append(assistant)

            tool_results: list[ToolResult] = []
            if response.tool_calls:
                executed = await self._execute_tools(tool_map, response.tool_calls)
                tool_results = [r for r, _ in executed]
                msg_list.extend(tool_results)
                response_messages.extend(tool_results)

            steps.append(
                StepResult(
                    step_number=len(steps) + 1,
                    text=response.content,
                    tool_calls=response.tool_calls,
                    tool_results=tool_results,
                    usage=response.usage,
                    finish_reason=response.finish_reason,
                )
            )
            if not response.tool_calls or should_stop(conditions, steps):
                break

        _log.debug("generation round finished: steps=%d tokens=%d", len(steps), usage.total_tokens)
        return GenerationResult(
            text=steps[-1].text,
            steps=steps,
            response_messages=response_messages,
            usage=usage,
            finish_reason=steps[-1].finish_reason,
        )

    def stream(
        self,
        history: Sequence[Message],
        tools: ToolsArg = None,
        stop_when: StopArg = None,
    ) -> GenerationStream:
        """Run one generation round in streaming mode (same semantics as ``run``)."""
        return GenerationStream(self._stream_events(history, tools, stop_when))

    # ---- internals --------------------------------------------------------

    async def _stream_events(
        self,
        history: Sequence[Message],
        tools: ToolsArg,
        stop_when: StopArg,
    ) -> AsyncIterator[StreamEvent | GenerationResult]:
        tool_map = normalize_tools(tools)
        schemas = [t.to_schema() for t in tool_map.values()] or None
        conditions = stop_when or StepCountIs(DEFAULT_STEP_LIMIT)
        msg_list = build_messages(self._instructions, history)
        response_messages: list[Message] = []
        steps: list[StepResult] = []
        usage = Usage()

        while True:
            started_at = time.time()
            step_number = len(steps) + 1
            yield StepEvent(step_number=step_number, status="started", started_at=started_at)

            text_parts: list[str] = []
            # index -> accumulated tool call fields
            tc_acc: dict[int, dict[str, str]] = {}
            step_usage = Usage()
            finish_reason: FinishReason = "stop"

            async for chunk in self._provider.stream(
                msg_list,
                tools=schemas,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            ):
                if chunk.delta:
                    text_parts.append(chunk.delta)
                    yield TextEvent(text=chunk.delta)
                for tcd in chunk.tool_call_deltas:
                    acc = tc_acc.setdefault(tcd.index, {"id": "", "name": "", "arguments": ""})
                    if tcd.id:
                        acc["id"] = tcd.id
                    if tcd.name:
                        acc["name"] = tcd.name
                    acc["arguments"] += tcd.arguments
                if chunk.finish_reason is not None:
                    finish_reason = chunk.finish_reason
                if chunk.usage.total_tokens:
                    step_usage = chunk.usage

            tool_calls = [
                ToolCall(id=acc["id"], name=acc["name"], arguments=acc["arguments"])
                for _, acc in sorted(tc_acc.items())
            ]
            text = "".join(text_parts)
            usage = merge_usage(usage, step_usage)
            assistant = AssistantMessage(content=text, tool_calls=tool_calls)
            msg_list.append(assistant)
            response_messages.append(assistant)

            tool_results: list[ToolResult] = []
            if tool_calls:
                for tc in tool_calls:
                    yield ToolCallEvent(
                        tool_name=tc.name, tool_call_id=tc.id, arguments=tc.arguments
                    )
                executed = await self._execute_tools(tool_map, tool_calls)
                for result, duration_ms in executed:
                    tool_results.append(result)
                    yield ToolResultEvent(
                        tool_name=result.tool_name,
                        tool_call_id=result.tool_call_id,
                        result=result.content,
                        error=result.error,
                        success=result.error is None,
                        duration_ms=duration_ms,
                    )
                msg_list.extend(tool_results)
                response_messages.extend(tool_results)

            steps.append(
                StepResult(
                    step_number=step_number,
                    text=text,
                    tool_calls=tool_calls,
                    tool_results=tool_results,
                    usage=step_usage,
                    finish_reason=finish_reason,
                )
            )
            yield StepEvent(
                step_number=step_number,
                status="completed",
                started_at=started_at,
                completed_at=time.time(),
                usage=step_usage,
            )
            if not tool_calls or should_stop(conditions, steps):
                break

        yield GenerationResult(
            text=steps[-1].text,
            steps=steps,
            response_messages=response_messages,
            usage=usage,
            finish_reason=steps[-1].finish_reason,
        )

    async def _call_llm(
        self,
        msg_list: list[Message],
        schemas: list[dict[str, Any]] | None,
    ) -> ModelResponse:
        """Single LLM call; transient failures are retried with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return await self._provider.complete(
                    msg_list,
                    tools=schemas,
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                )
            except ModelError as exc:
                if not exc.retryable:
                    raise StepLoopError(f"LLM call failed: {exc}") from exc
                last_error = exc
            except (ConnectionError, TimeoutError) as exc:
                last_error = exc
            if attempt < self._max_retries - 1:
                _log.warning(
                    "Retry %d/%d for LLM call: %s", attempt + 1, self._max_retries, last_error
                )
                await asyncio.sleep(self._retry_delay * 2**attempt)

        _log.error("LLM call failed after %d attempts", self._max_retries)
        raise StepLoopError(
            f"LLM call failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    async def _execute_tools(
        self,
        tool_map: dict[str, Tool],
        tool_calls: list[ToolCall],
    ) -> list[tuple[ToolResult, float]]:
        """Execute tool calls in parallel, catching errors per tool.

        Returns ``(result, duration_ms)`` pairs in tool-call order.
        """
        results: list[tuple[ToolResult, float]] = [
            (ToolResult(tool_call_id="", tool_name=""), 0.0) for _ in tool_calls
        ]

        async def _run_one(idx: int) -> None:
            tc = tool_calls[idx]
            started = time.monotonic()
            t = tool_map.get(tc.name)
            if t is None:
                result = ToolResult(
                    tool_call_id=tc.id, tool_name=tc.name, error=f"Unknown tool '{tc.name}'"
                )
            else:
                try:
                    action = parse_tool_arguments(tc)
                    output = await t.execute(**action.arguments)
                    content = output if isinstance(output, str) else str(output)
                    result = ToolResult(tool_call_id=tc.id, tool_name=tc.name, content=content)
                except Exception as exc:
                    _log.warning("Tool '%s' failed: %s", tc.name, exc)
                    result = ToolResult(tool_call_id=tc.id, tool_name=tc.name, error=str(exc))
            results[idx] = (result, (time.monotonic() - started) * 1000)

        async with asyncio.TaskGroup() as tg:
            for i in range(len(tool_calls)):
                tg.create_task(_run_one(i))

        return results

    def __repr__(self) -> str:
        return f"StepLoop(provider={self._provider!r})"
