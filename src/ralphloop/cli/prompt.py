"""Task prompt resolution for the ``ralphloop`` command.

Sources, first match wins:
    1. The CLI argument. An argument ending in ``.md`` is read as a file;
       if that file does not exist the argument is used literally.
    2. ``PROMPT.md`` in the project directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ralphloop.types import RalphError

PROMPT_FILE = "PROMPT.md"


class CLIError(RalphError):
    """Raised for CLI-level errors (missing prompt, bad config)."""


@dataclass(frozen=True, slots=True)
class TaskPrompt:
    """A resolved task prompt and where it came from."""

    prompt: str
    source: str


def get_task_prompt(prompt_arg: str | None, local_dir: str | Path) -> TaskPrompt:
    """Resolve the task prompt for a run in *local_dir*.

    Raises:
        CLIError: If no argument is given and there is no usable ``PROMPT.md``.
    """
    if prompt_arg:
        if prompt_arg.endswith(".md"):
            path = Path(prompt_arg).expanduser().resolve()
            try:
                return TaskPrompt(path.read_text(encoding="utf-8").strip(), str(path))
            except OSError:
                return TaskPrompt(prompt_arg, "CLI argument")
        return TaskPrompt(prompt_arg, "CLI argument")

    prompt_path = Path(local_dir) / PROMPT_FILE
    try:
        content = prompt_path.read_text(encoding="utf-8").strip()
    except OSError:
        content = ""
    if content:
        return TaskPrompt(content, PROMPT_FILE)

    raise CLIError(
        f"No task given. Pass a prompt (or a path to a .md file), "
        f"or create {PROMPT_FILE} in {Path(local_dir).resolve()}"
    )
