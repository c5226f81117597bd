"""RalphStream: incremental handle over a loop's terminating iteration."""

from __future__ import annotations

from collections.abc import AsyncIterator

from ralphloop.ralph.config import RalphLoopError, RalphResult
from ralphloop.types import StreamEvent, TextEvent


class RalphStream:
    """Async iterable over the events of the terminating iteration.

    Iterating drives the whole loop: earlier iterations run to completion
    silently, then the terminating iteration's events are yielded as they
    arrive. A streamed round that fails re-evaluation with budget left is
    followed by further rounds, so more than one round's events may appear.
    Once drained, :attr:`result` holds the same bookkeeping
    ``RalphLoop.loop()`` would return.

    Usage::

        handle = loop.stream("Fix the failing tests")
        async for chunk in handle.text_stream():
            print(chunk, end="")
        print(handle.result.completion_reason)
    """

    __slots__ = ("_consumed", "_result", "_source")

    def __init__(self, source: AsyncIterator[StreamEvent | RalphResult]) -> None:
        self._source = source
        self._result: RalphResult | None = None
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RalphLoopError("RalphStream can only be consumed once")
        self._consumed = True
        async for item in self._source:
            if isinstance(item, RalphResult):
                self._result = item
            else:
                yield item

    async def text_stream(self) -> AsyncIterator[str]:
        """Yield only the text deltas of the terminating iteration."""
        async for event in self:
            if isinstance(event, TextEvent):
                yield event.text

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> RalphResult:
        """The loop's result once the stream has been drained.

        Raises:
            RalphLoopError: If the stream has not been fully consumed.
        """
        if self._result is None:
            raise RalphLoopError("RalphStream has not been drained yet")
        return self._result

    async def collect(self) -> RalphResult:
        """Drain the stream (if not already consumed) and return the result."""
        if not self._consumed:
            async for _ in self:
                pass
        return self.result

    async def aclose(self) -> None:
        """Stop the loop early; no result is produced."""
        await self._source.aclose()  # type: ignore[attr-defined]

    def __repr__(self) -> str:
        state = "done" if self.done else ("running" if self._consumed else "pending")
        return f"RalphStream({state})"
