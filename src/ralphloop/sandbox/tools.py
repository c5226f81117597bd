"""Tools bound to a sandbox session: shell, file read/write, listing."""

from __future__ import annotations

from ralphloop.sandbox.base import MAX_FILE_CHARS, MAX_FILE_LINES_PREVIEW, SandboxSession
from ralphloop.tool import FunctionTool, ToolError


def truncate_file_content(path: str, content: str) -> str:
    """Cap *content* at ``MAX_FILE_CHARS``, keeping a line-based preview."""
    if len(content) <= MAX_FILE_CHARS:
        return content
    lines = content.splitlines()
    preview = "\n".join(lines[:MAX_FILE_LINES_PREVIEW])[:MAX_FILE_CHARS]
    shown = min(len(lines), MAX_FILE_LINES_PREVIEW)
    return (
        f"{preview}\n\n"
        f"[{path} truncated: showing the first {shown} of {len(lines)} lines "
        f"({len(content)} chars). Use run_command with sed, head or grep to read the rest.]"
    )


def sandbox_tools(session: SandboxSession) -> list[FunctionTool]:
    """Build the tool set for *session*.

    The returned tools close over *session*; build a new set per session.
    """

    async def run_command(command: str) -> str:
        """Run a shell command in the project workspace and return its output.

        Args:
            command: The shell command line to execute.
        """
        result = await session.run_command(command)
        return result.render()

    async def read_file(path: str) -> str:
        """Read a text file from the project workspace.

        Args:
            path: File path relative to the workspace root.
        """
        content = await session.read_file(path)
        if content is None:
            raise ToolError(f"File not found: {path}")
        return truncate_file_content(path, content)

    async def write_file(path: str, content: str) -> str:
        """Create or overwrite a file in the project workspace.

        Args:
            path: File path relative to the workspace root.
            content: The complete new file content.
        """
        await session.write_file(path, content)
        return f"Wrote {len(content)} chars to {path}"

    async def list_files(path: str = ".") -> str:
        """List files under a directory of the project workspace.

        Args:
            path: Directory relative to the workspace root.
        """
        files = await session.list_files(path)
        return "\n".join(files) if files else "(no files)"

    return [FunctionTool(fn) for fn in (run_command, read_file, write_file, list_files)]
