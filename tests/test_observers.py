"""Tests for ralphloop.ralph.observers."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from ralphloop.ralph.observers import (
    EVENTS,
    FINISH,
    ITERATION_END,
    ITERATION_START,
    ObserverBus,
)


class TestObserverBus:
    async def test_emit_passes_positional_args(self) -> None:
        bus = ObserverBus()
        seen: list[tuple[Any, ...]] = []
        bus.on(ITERATION_END, lambda *args: seen.append(args))

        await bus.emit(ITERATION_END, 1, "result", 0.5)

        assert seen == [(1, "result", 0.5)]

    async def test_registration_order(self) -> None:
        bus = ObserverBus()
        order: list[str] = []
        bus.on(FINISH, lambda r: order.append("a"))
        bus.on(FINISH, lambda r: order.append("b"))

        await bus.emit(FINISH, None)

        assert order == ["a", "b"]

    async def test_async_handler(self) -> None:
        bus = ObserverBus()
        seen: list[int] = []

        async def handler(k: int, state: Any) -> None:
            seen.append(k)

        bus.on(ITERATION_START, handler)
        await bus.emit(ITERATION_START, 7, None)

        assert seen == [7]

    async def test_failures_are_logged_and_dropped(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = ObserverBus()
        after: list[int] = []

        def broken(k: int, state: Any) -> None:
            raise RuntimeError("observer failed")

        async def broken_async(k: int, state: Any) -> None:
            raise ValueError("async observer failed")

        bus.on(ITERATION_START, broken)
        bus.on(ITERATION_START, broken_async)
        bus.on(ITERATION_START, lambda k, state: after.append(k))

        with caplog.at_level(logging.WARNING, logger="ralphloop"):
            await bus.emit(ITERATION_START, 1, None)

        assert after == [1]
        assert sum("raised; ignoring" in r.getMessage() for r in caplog.records) == 2

    def test_unknown_event(self) -> None:
        with pytest.raises(ValueError, match="Unknown loop event"):
            ObserverBus().on("iteration_begin", print)

    async def test_off(self) -> None:
        bus = ObserverBus()
        seen: list[Any] = []
        handler = seen.append
        bus.on(FINISH, handler)
        bus.off(FINISH, handler)
        bus.off(FINISH, handler)

        await bus.emit(FINISH, "r")

        assert seen == []
        assert not bus.has_handlers(FINISH)

    def test_clear(self) -> None:
        bus = ObserverBus()
        for event in EVENTS:
            bus.on(event, print)
        bus.clear()
        assert not any(bus.has_handlers(event) for event in EVENTS)

    async def test_emit_without_handlers(self) -> None:
        await ObserverBus().emit(FINISH, None)
