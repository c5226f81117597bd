"""Sandbox session interface: an explicit handle for a tool workspace."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ralphloop.log import get_logger
from ralphloop.types import RalphError

_log = get_logger(__name__)

MAX_FILE_CHARS = 30_000
MAX_FILE_LINES_PREVIEW = 400
SANDBOX_TIMEOUT = 30 * 60.0
MAX_COPY_BYTES = 1024 * 1024


class SandboxError(RalphError):
    """Raised for sandbox-level errors."""


class SandboxStatus(StrEnum):
    """``init`` -> ``running`` -> ``closed``; ``init`` may also close directly."""

    INIT = "init"
    RUNNING = "running"
    CLOSED = "closed"


_NEXT: dict[SandboxStatus, frozenset[SandboxStatus]] = {
    SandboxStatus.INIT: frozenset({SandboxStatus.RUNNING, SandboxStatus.CLOSED}),
    SandboxStatus.RUNNING: frozenset({SandboxStatus.CLOSED}),
    SandboxStatus.CLOSED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured output of a shell command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def render(self) -> str:
        """Plain-text rendering handed back to the model."""
        sections = [f"exit_code: {self.exit_code}"]
        sections += [f"{name}:\n{text}" for name, text in self._streams() if text]
        return "\n".join(sections)

    def _streams(self) -> tuple[tuple[str, str], ...]:
        return (("stdout", self.stdout), ("stderr", self.stderr))


class SandboxSession(ABC):
    """A provisioned workspace that tools run against.

    Sessions are plain objects: create one, pass it to whatever needs it
    (for example :func:`ralphloop.sandbox.tools.sandbox_tools`), and close
    it when done. Nothing is shared between sessions. File paths given to
    the operations below are relative to the workspace root.
    """

    __slots__ = ("_session_id", "_status", "_timeout")

    def __init__(self, *, session_id: str | None = None, timeout: float = SANDBOX_TIMEOUT) -> None:
        self._session_id = session_id or uuid.uuid4().hex[:12]
        self._timeout = timeout
        self._status = SandboxStatus.INIT

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def timeout(self) -> float:
        """Default command timeout in seconds."""
        return self._timeout

    @property
    def status(self) -> SandboxStatus:
        return self._status

    def _transition(self, target: SandboxStatus) -> None:
        if target not in _NEXT[self._status]:
            raise SandboxError(f"Cannot transition from {self._status!r} to {target!r}")
        _log.debug("Sandbox %s: %s -> %s", self._session_id, self._status, target)
        self._status = target

    def _require_running(self) -> None:
        if self._status is not SandboxStatus.RUNNING:
            raise SandboxError(f"Sandbox must be running (status={self._status.value!r})")

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def run_command(self, command: str, *, timeout: float | None = None) -> CommandResult:
        """Run *command* through the shell; *timeout* overrides :attr:`timeout`."""

    @abstractmethod
    async def read_file(self, path: str) -> str | None:
        """The file's text, or ``None`` if it does not exist."""

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Create or overwrite a file, creating parent directories."""

    @abstractmethod
    async def list_files(self, path: str = ".") -> list[str]: ...

    @abstractmethod
    async def close(self) -> None:
        """Release the workspace; the session cannot be reused."""

    def describe(self) -> dict[str, Any]:
        return {
            "session_id": self._session_id,
            "status": self._status.value,
            "timeout": self._timeout,
        }

    async def __aenter__(self) -> SandboxSession:
        if self._status is SandboxStatus.INIT:
            await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._session_id!r}, {self._status.value})"
