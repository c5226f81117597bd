"""ralphloop CLI: run the Ralph loop against a local project directory.

The project is copied into a temporary sandbox, the loop works there with
shell and file tools, and changes are copied back when the run ends.

Config file search order (first found wins):
    1. ``--config`` / ``-c`` flag (explicit path)
    2. ``.ralphloop.yaml`` in the project directory
    3. ``ralph.yaml`` in the project directory

Exit codes: 0 when verified, 1 when the iteration budget ran out,
2 when the run aborted or could not start.

Usage::

    ralphloop run "Add a /health endpoint and make the tests pass"
    ralphloop run --dir ./api --max-iterations 5 TASK.md
    ralphloop run -m anthropic:claude-sonnet-4-5 --judge-model openai:gpt-4o-mini
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.panel import Panel

from ralphloop.cli.prompt import CLIError, TaskPrompt, get_task_prompt
from ralphloop.config import LoopSettings
from ralphloop.generation.step_loop import GenerationResult
from ralphloop.loader import LoaderError, load_settings
from ralphloop.log import configure_logging
from ralphloop.ralph import CompletionReason, ConfigurationError, LoopState, RalphLoop, RalphResult
from ralphloop.sandbox import LocalSandbox, SandboxError, sandbox_tools
from ralphloop.tool import Tool

_DEFAULT_CONFIG_NAMES = (".ralphloop.yaml", "ralph.yaml")

EXIT_CODES: dict[CompletionReason, int] = {
    CompletionReason.VERIFIED: 0,
    CompletionReason.MAX_ITERATIONS: 1,
    CompletionReason.ABORTED: 2,
}

DEFAULT_INSTRUCTIONS = (
    "You are an autonomous software engineer working inside a copy of the user's "
    "project. Use run_command, read_file, write_file and list_files to inspect and "
    "change the project until the task is done. Run the project's tests or build "
    "to check your work. When you are finished, summarise what you changed."
)


# ---------------------------------------------------------------------------
# Config discovery
# ---------------------------------------------------------------------------


def find_config(directory: str | Path | None = None) -> Path | None:
    """Search *directory* (default: cwd) for a config file."""
    base = Path(directory) if directory else Path.cwd()
    for name in _DEFAULT_CONFIG_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def resolve_settings(
    config_path: str | None,
    directory: str | Path,
    **overrides: Any,
) -> LoopSettings:
    """Build settings from a config file (explicit or discovered) plus CLI flags.

    Raises:
        CLIError: If the config file is missing or invalid.
    """
    path = Path(config_path) if config_path else find_config(directory)
    try:
        if path is not None:
            return load_settings(path, **overrides)
        return LoopSettings(**{k: v for k, v in overrides.items() if v is not None})
    except LoaderError as exc:
        raise CLIError(f"Invalid config: {exc}") from exc
    except ValueError as exc:
        raise CLIError(f"Invalid options: {exc}") from exc


# ---------------------------------------------------------------------------
# Typer CLI app
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="ralphloop",
    help="Run an agent in a loop until a judge verifies the task is done.",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output."),
    ] = False,
) -> None:
    """ralphloop: iterate until verified."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@app.command()
def run(
    ctx: typer.Context,
    prompt: Annotated[
        str | None,
        typer.Argument(help="Task text, or a path to a .md file (default: PROMPT.md)."),
    ] = None,
    directory: Annotated[
        Path,
        typer.Option("--dir", "-d", help="Project directory to work on."),
    ] = Path("."),
    model: Annotated[
        str | None,
        typer.Option("--model", "-m", help="Model string (e.g. openai:gpt-4o)."),
    ] = None,
    judge_model: Annotated[
        str | None,
        typer.Option("--judge-model", help="Separate model that verifies completion."),
    ] = None,
    max_iterations: Annotated[
        int | None,
        typer.Option("--max-iterations", "-n", help="Maximum outer iterations.", min=1),
    ] = None,
    max_steps: Annotated[
        int | None,
        typer.Option("--max-steps", help="Maximum model/tool steps per iteration.", min=1),
    ] = None,
    config: Annotated[
        str | None,
        typer.Option("--config", "-c", help="Path to YAML config file."),
    ] = None,
    stream: Annotated[
        bool,
        typer.Option("--stream", "-s", help="Stream the final iteration's text."),
    ] = False,
) -> None:
    """Work on a task until it is verified or the iteration budget runs out."""
    verbose: bool = (ctx.obj or {}).get("verbose", False)
    configure_logging("DEBUG" if verbose else "WARNING")

    try:
        task = get_task_prompt(prompt, directory)
        settings = resolve_settings(
            config,
            directory,
            model=model,
            judge_model=judge_model,
            max_iterations=max_iterations,
            max_steps=max_steps,
        )
    except CLIError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    console.print(f"[cyan]Task[/cyan] from {task.source}")
    if verbose:
        console.print(
            f"[dim]Model: {settings.model}  Judge: {settings.judge_model or 'self'}  "
            f"Max iterations: {settings.max_iterations}[/dim]"
        )

    try:
        result = asyncio.run(_run(task, settings, directory, stream=stream))
    except (ConfigurationError, SandboxError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=2) from exc

    _print_summary(result, verbose=verbose)
    raise typer.Exit(code=EXIT_CODES[result.completion_reason])


# ---------------------------------------------------------------------------
# Loop execution
# ---------------------------------------------------------------------------


def _on_iteration_start(iteration: int, state: LoopState) -> None:
    console.print(
        f"[cyan][-] Iteration {iteration}[/cyan] [dim]({state.elapsed():.0f}s elapsed)[/dim]"
    )


def _on_iteration_end(iteration: int, result: GenerationResult, duration: float) -> None:
    tools_used = sum(len(step.tool_calls) for step in result.steps)
    console.print(
        f"[dim]    {len(result.steps)} step(s), {tools_used} tool call(s), {duration:.1f}s[/dim]"
    )


def build_loop(settings: LoopSettings, tools: Sequence[Tool]) -> RalphLoop:
    """Construct the loop for a CLI run."""
    if not settings.instructions:
        settings = settings.model_copy(update={"instructions": DEFAULT_INSTRUCTIONS})
    return RalphLoop.from_settings(
        settings,
        tools=tools,
        on_iteration_start=_on_iteration_start,
        on_iteration_end=_on_iteration_end,
    )


async def _run(
    task: TaskPrompt,
    settings: LoopSettings,
    directory: Path,
    *,
    stream: bool,
) -> RalphResult:
    console.print("[cyan][-] Creating sandbox...[/cyan]")
    session = await LocalSandbox.create(directory)
    try:
        loop = build_loop(settings, sandbox_tools(session))
        if not stream:
            return await loop.loop(task.prompt)
        handle = loop.stream(task.prompt)
        async for chunk in handle.text_stream():
            console.print(chunk, end="", markup=False, highlight=False)
        console.print()
        return handle.result
    finally:
        console.print("[cyan][-] Copying changes back...[/cyan]")
        await session.close()


def _print_summary(result: RalphResult, *, verbose: bool) -> None:
    style = {
        CompletionReason.VERIFIED: "green",
        CompletionReason.MAX_ITERATIONS: "yellow",
        CompletionReason.ABORTED: "red",
    }[result.completion_reason]
    body = (
        f"Outcome: [{style}]{result.completion_reason}[/{style}]\n"
        f"Iterations: {result.iterations}\n"
        f"Tokens: {result.usage.total_tokens}"
    )
    if result.reason and (verbose or result.error is not None):
        body += f"\nReason: {result.reason}"
    console.print(Panel(body, title="ralphloop", border_style=style))
    if result.final_text and verbose:
        console.print(result.final_text, markup=False)
