"""Observer bus for outer-loop notifications.

Observers are notified at fixed points of every loop invocation:

* ``iteration_start(iteration, state)`` before the inner loop runs.
* ``iteration_end(iteration, result, duration)`` and
  ``iteration_finish(iteration, result, duration)`` after a successful
  round, before evaluation.
* ``finish(result)`` once, with the terminal ``RalphResult``.

When ``RalphLoop.stream()`` re-issues the terminating iteration, that
iteration fires ``iteration_start``, ``iteration_end`` and
``iteration_finish`` a second time with the same index.

An observer can never change what the loop does: whatever it raises is
logged and dropped.
"""

from __future__ import annotations

import contextlib
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from ralphloop.log import get_logger

_log = get_logger(__name__)

Observer = Callable[..., Any]
"""Sync or async callable invoked with an event's positional arguments."""

ITERATION_START = "iteration_start"
ITERATION_END = "iteration_end"
ITERATION_FINISH = "iteration_finish"
FINISH = "finish"

EVENTS = (ITERATION_START, ITERATION_END, ITERATION_FINISH, FINISH)


class ObserverBus:
    """Per-loop registry of observers, called in registration order."""

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[Observer]] = defaultdict(list)

    def on(self, event: str, handler: Observer) -> None:
        """Subscribe *handler* to *event*.

        Raises:
            ValueError: If *event* is not a known loop event.
        """
        if event not in EVENTS:
            raise ValueError(f"Unknown loop event '{event}'. Known: {list(EVENTS)}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Observer) -> None:
        """Unsubscribe *handler*; does nothing if it is not registered."""
        with contextlib.suppress(ValueError):
            self._handlers[event].remove(handler)

    async def emit(self, event: str, *args: Any) -> None:
        """Call every handler for *event*, logging and dropping failures."""
        for handler in self._handlers[event]:
            try:
                outcome = handler(*args)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                _log.warning("Observer %r for '%s' raised; ignoring", handler, event, exc_info=True)

    def has_handlers(self, event: str) -> bool:
        return len(self._handlers[event]) > 0

    def clear(self) -> None:
        self._handlers.clear()
