"""Local sandbox: a temporary copy of a project directory.

``LocalSandbox.create(local_dir)`` copies the project into a fresh
temporary directory, honouring ``.gitignore`` files and always skipping
secrets, OS metadata, dependency trees, and large files. ``close()``
copies non-ignored files back and removes the temporary directory.
"""

from __future__ import annotations

import asyncio
import os
import platform
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pathspec

from ralphloop.log import get_logger
from ralphloop.sandbox.base import (
    MAX_COPY_BYTES,
    SANDBOX_TIMEOUT,
    CommandResult,
    SandboxError,
    SandboxSession,
    SandboxStatus,
)

_log = get_logger(__name__)

DEFAULT_IGNORE: tuple[str, ...] = (".git", "node_modules")
_WALK_SKIP_DIRS = frozenset(DEFAULT_IGNORE)


def _always_skip(name: str, is_dir: bool) -> bool:
    if name == ".env" or name.startswith(".env."):
        return True
    if name == ".DS_Store":
        return True
    return is_dir and name in _WALK_SKIP_DIRS


# ---------------------------------------------------------------------------
# Ignore rules
# ---------------------------------------------------------------------------


class IgnoreRules:
    """``.gitignore`` matcher backed by :class:`pathspec.GitIgnoreSpec`.

    Rules read from a nested ``.gitignore`` are rewritten relative to the
    workspace root, so one matcher answers for the whole tree and the last
    matching rule wins across files.
    """

    __slots__ = ("_lines", "_spec")

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        self._lines: list[str] = []
        self._spec: pathspec.GitIgnoreSpec | None = None
        for pattern in patterns:
            self.add(pattern)

    def add(self, raw: str, prefix: str = "") -> None:
        line = raw.strip()
        if not line or line.startswith("#"):
            return
        negate = line.startswith("!")
        body = line[1:] if negate else line
        if not body.strip("/"):
            return
        if prefix:
            if "/" in body.rstrip("/"):
                body = f"{prefix}/{body.lstrip('/')}"
            else:
                body = f"{prefix}/**/{body}"
        self._lines.append(f"!{body}" if negate else body)
        self._spec = None

    @classmethod
    def load(cls, root: Path) -> IgnoreRules:
        """Collect every ``.gitignore`` under *root*, plus the default rules."""
        rules = cls(DEFAULT_IGNORE)
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in _WALK_SKIP_DIRS)
            if ".gitignore" not in filenames:
                continue
            rel = Path(dirpath).relative_to(root).as_posix()
            prefix = "" if rel == "." else rel
            try:
                text = (Path(dirpath) / ".gitignore").read_text(encoding="utf-8")
            except OSError as exc:
                _log.debug("Skipping unreadable .gitignore in %s: %s", dirpath, exc)
                continue
            for line in text.splitlines():
                rules.add(line, prefix)
        return rules

    def _matches(self, rel: str, is_dir: bool) -> bool:
        if self._spec is None:
            self._spec = pathspec.GitIgnoreSpec.from_lines(self._lines)
        return self._spec.match_file(f"{rel}/" if is_dir else rel)

    def ignores(self, rel: str, *, is_dir: bool = False) -> bool:
        """Whether the POSIX relative path *rel* (or any parent dir) is ignored."""
        parts = rel.split("/")
        for i in range(1, len(parts)):
            if self._matches("/".join(parts[:i]), True):
                return True
        return self._matches(rel, is_dir)

    def __len__(self) -> int:
        return len(self._lines)


# ---------------------------------------------------------------------------
# LocalSandbox
# ---------------------------------------------------------------------------


class LocalSandbox(SandboxSession):
    """Sandbox backed by a temporary directory on the local machine.

    Args:
        local_dir: The project directory to copy in and sync back to.
        timeout: Default timeout for ``run_command`` in seconds.
        max_copy_bytes: Files of this size or larger are never copied.
    """

    __slots__ = ("_local_dir", "_max_copy_bytes", "_workdir")

    def __init__(
        self,
        local_dir: str | Path,
        *,
        timeout: float = SANDBOX_TIMEOUT,
        max_copy_bytes: int = MAX_COPY_BYTES,
        session_id: str | None = None,
    ) -> None:
        super().__init__(session_id=session_id, timeout=timeout)
        self._local_dir = Path(local_dir).resolve()
        self._max_copy_bytes = max_copy_bytes
        self._workdir: Path | None = None

    @classmethod
    async def create(cls, local_dir: str | Path, **kwargs: Any) -> LocalSandbox:
        """Create and start a sandbox for *local_dir*."""
        session = cls(local_dir, **kwargs)
        await session.start()
        return session

    @property
    def local_dir(self) -> Path:
        return self._local_dir

    @property
    def workdir(self) -> Path:
        self._require_running()
        assert self._workdir is not None
        return self._workdir

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        workdir = Path(tempfile.mkdtemp(prefix=f"ralphloop-{self._session_id}-")).resolve()
        try:
            copied = await asyncio.to_thread(self._copy_in, workdir)
        except Exception:
            shutil.rmtree(workdir, ignore_errors=True)
            raise
        self._workdir = workdir
        self._transition(SandboxStatus.RUNNING)
        if copied:
            _log.info(
                "Sandbox %s: copied %d file(s) from %s", self._session_id, copied, self._local_dir
            )
        else:
            _log.info("Sandbox %s: starting with an empty workspace", self._session_id)

    async def close(self, *, sync: bool = True) -> None:
        """Sync changes back (unless ``sync=False``) and remove the workspace."""
        if self._status == SandboxStatus.CLOSED:
            return
        workdir = self._workdir
        try:
            if workdir is not None and sync:
                copied, skipped = await asyncio.to_thread(self._copy_out, workdir)
                _log.info(
                    "Sandbox %s: copied %d file(s) back (%d skipped)",
                    self._session_id,
                    copied,
                    skipped,
                )
        finally:
            if workdir is not None:
                await asyncio.to_thread(shutil.rmtree, workdir, True)
            self._workdir = None
            self._transition(SandboxStatus.CLOSED)

    def _copy_in(self, workdir: Path) -> int:
        if not self._local_dir.is_dir():
            return 0
        rules = IgnoreRules.load(self._local_dir)
        copied = 0
        for dirpath, dirnames, filenames in os.walk(self._local_dir):
            base = Path(dirpath)
            rel_dir = base.relative_to(self._local_dir).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not _always_skip(d, True) and not rules.ignores(prefix + d, is_dir=True)
            )
            for name in sorted(filenames):
                rel = prefix + name
                if _always_skip(name, False) or rules.ignores(rel):
                    continue
                src = base / name
                try:
                    if not src.is_file() or src.stat().st_size >= self._max_copy_bytes:
                        continue
                    dest = workdir / rel
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, dest)
                    copied += 1
                except OSError as exc:
                    _log.debug("Skipping unreadable file %s: %s", src, exc)
        return copied

    def _copy_out(self, workdir: Path) -> tuple[int, int]:
        rules = IgnoreRules.load(workdir)
        copied = skipped = 0
        for rel in self._walk(workdir, workdir):
            if rules.ignores(rel):
                skipped += 1
                continue
            dest = self._local_dir / rel
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(workdir / rel, dest)
            except OSError as exc:
                _log.warning("Sandbox %s: could not copy back %s: %s", self._session_id, rel, exc)
                skipped += 1
                continue
            copied += 1
        return copied, skipped

    # -- operations ---------------------------------------------------------

    def _resolve(self, path: str) -> Path:
        root = self.workdir
        resolved = (root / path).resolve()
        try:
            resolved.relative_to(root.resolve())
        except ValueError:
            msg = f"Path {path!r} is outside the sandbox workspace"
            raise SandboxError(msg) from None
        return resolved

    async def run_command(self, command: str, *, timeout: float | None = None) -> CommandResult:
        if not command.strip():
            raise SandboxError("Empty command")
        cwd = self.workdir
        limit = timeout if timeout is not None else self._timeout
        prog = None if platform.system() == "Windows" else "/bin/sh"
        _log.debug("Sandbox %s: running %r (timeout=%.1fs)", self._session_id, command, limit)

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            executable=prog,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            _log.warning(
                "Sandbox %s: command timed out after %.1fs: %r", self._session_id, limit, command
            )
            raise SandboxError(f"Command timed out after {limit}s") from exc
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        return CommandResult(
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    async def read_file(self, path: str) -> str | None:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        except IsADirectoryError as exc:
            raise SandboxError(f"Not a file: {path}") from exc

    async def write_file(self, path: str, content: str) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, content, encoding="utf-8")

    async def list_files(self, path: str = ".") -> list[str]:
        target = self._resolve(path)
        if not target.exists():
            raise SandboxError(f"Directory not found: {path}")
        return await asyncio.to_thread(self._walk, target, self.workdir)

    @staticmethod
    def _walk(start: Path, root: Path) -> list[str]:
        if start.is_file():
            return [start.relative_to(root).as_posix()]
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames[:] = sorted(d for d in dirnames if d not in _WALK_SKIP_DIRS)
            base = Path(dirpath)
            files.extend((base / name).relative_to(root).as_posix() for name in sorted(filenames))
        return files

    def describe(self) -> dict[str, Any]:
        info = super().describe()
        info["local_dir"] = str(self._local_dir)
        info["workdir"] = str(self._workdir) if self._workdir else None
        return info
