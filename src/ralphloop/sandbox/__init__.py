"""Explicit sandbox sessions supplying tools to the loop."""

from ralphloop.sandbox.base import (
    MAX_COPY_BYTES,
    MAX_FILE_CHARS,
    MAX_FILE_LINES_PREVIEW,
    SANDBOX_TIMEOUT,
    CommandResult,
    SandboxError,
    SandboxSession,
    SandboxStatus,
)
from ralphloop.sandbox.local import IgnoreRules, LocalSandbox
from ralphloop.sandbox.tools import sandbox_tools, truncate_file_content

__all__ = [
    "MAX_COPY_BYTES",
    "MAX_FILE_CHARS",
    "MAX_FILE_LINES_PREVIEW",
    "SANDBOX_TIMEOUT",
    "CommandResult",
    "IgnoreRules",
    "LocalSandbox",
    "SandboxError",
    "SandboxSession",
    "SandboxStatus",
    "sandbox_tools",
    "truncate_file_content",
]
