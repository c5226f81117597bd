"""Logging for ralphloop.

Every module logs through ``get_logger(__name__)``; nothing is printed
unless an application (or the ``ralphloop`` CLI) calls
:func:`configure_logging`. ``LogContext`` binds key-value pairs, such as
the current iteration, to every record emitted inside its scope::

    log = get_logger("ralph.runner")
    with LogContext(iteration=3):
        log.info("evaluating")   # 12:00:01 I ralph.runner [iteration=3] evaluating
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import IO, Any

_PREFIX = "ralphloop"

_bindings: ContextVar[dict[str, Any] | None] = ContextVar("ralphloop_log_bindings", default=None)


def get_logger(name: str) -> logging.Logger:
    """Logger for *name* under the ``ralphloop`` namespace."""
    if name != _PREFIX and not name.startswith(f"{_PREFIX}."):
        name = f"{_PREFIX}.{name}"
    return logging.getLogger(name)


def current_context() -> dict[str, Any]:
    """A copy of the bindings active in the calling context."""
    return dict(_bindings.get() or {})


class LogContext:
    """Bind key-value pairs to records logged within the ``with`` block.

    Nested contexts merge, inner values winning; bindings live in a
    ``ContextVar``, so concurrent loop invocations never see each other's.
    """

    def __init__(self, **bindings: Any) -> None:
        self._bindings = bindings
        self._token: Any = None

    def __enter__(self) -> LogContext:
        self._token = _bindings.set({**current_context(), **self._bindings})
        return self

    def __exit__(self, *_: object) -> None:
        if self._token is not None:
            _bindings.reset(self._token)
            self._token = None


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

_LEVEL_STYLE: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("D", "\033[2m"),
    logging.INFO: ("I", "\033[36m"),
    logging.WARNING: ("W", "\033[33m"),
    logging.ERROR: ("E", "\033[31m"),
    logging.CRITICAL: ("C", "\033[1;31m"),
}
_RESET = "\033[0m"


def _short_name(name: str) -> str:
    return name[len(_PREFIX) + 1 :] if name.startswith(f"{_PREFIX}.") else name


class TextFormatter(logging.Formatter):
    """One line per record: time, level letter, logger, bindings, message.

    ANSI colours are only used when *color* is true.
    """

    def __init__(self, *, color: bool = False) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        letter, ansi = _LEVEL_STYLE.get(record.levelno, ("?", ""))
        head = f"{letter} {_short_name(record.name)}"
        if self.color:
            head = f"{ansi}{head}{_RESET}"
        parts = [self.formatTime(record, "%H:%M:%S"), head]
        ctx = current_context()
        if ctx:
            parts.append("[" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]")
        parts.append(record.getMessage())
        line = " ".join(parts)
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            line = f"{line}\n{record.exc_text}"
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per record; bindings go under ``"context"``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        ctx = current_context()
        if ctx:
            entry["context"] = ctx
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# ---------------------------------------------------------------------------
# Handler setup
# ---------------------------------------------------------------------------


def _level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.upper())
    return resolved if isinstance(resolved, int) else logging.WARNING


def configure_logging(
    level: str | int = "WARNING",
    fmt: str = "text",
    *,
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Send ``ralphloop`` records at *level* and above to *stream*.

    Replaces the handler installed by an earlier call, so calling this again
    reconfigures rather than duplicates output. Handlers added by the
    application are left alone.

    Args:
        level: Level name or number; unknown names mean ``WARNING``.
        fmt: ``"text"`` or ``"json"``.
        stream: Destination, ``sys.stderr`` by default.
    """
    if fmt not in ("text", "json"):
        raise ValueError(f"fmt must be 'text' or 'json', got {fmt!r}")
    target = stream if stream is not None else sys.stderr
    handler = logging.StreamHandler(target)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(TextFormatter(color=target.isatty()))
    handler.set_name(_PREFIX)

    root = logging.getLogger(_PREFIX)
    for old in [h for h in root.handlers if h.get_name() == _PREFIX]:
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)
    root.setLevel(_level(level))
    return handler
