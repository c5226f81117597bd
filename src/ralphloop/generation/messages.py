"""Message-list helpers shared by the inner step loop and the judges.

Builds the ordered message sequence for provider calls, decodes
JSON-encoded tool arguments, accumulates usage, and flattens a tool-using
transcript into plain text turns for tool-free judge requests.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from ralphloop.types import (
    AssistantMessage,
    Message,
    RalphError,
    SystemMessage,
    ToolCall,
    ToolInvocation,
    ToolResult,
    Usage,
    UserMessage,
)


class OutputParseError(RalphError):
    """Raised when LLM output cannot be parsed as expected."""


def build_messages(instructions: str, history: Sequence[Message]) -> list[Message]:
    """Build the message list for an LLM call.

    Args:
        instructions: The system prompt. If empty, no system message is added.
        history: Conversation messages, oldest first.

    Returns:
        A new list; *history* is never mutated.
    """
    messages: list[Message] = []
    if instructions:
        messages.append(SystemMessage(content=instructions))
    messages.extend(history)
    return messages


def parse_tool_arguments(tool_call: ToolCall) -> ToolInvocation:
    """Decode the JSON arguments of *tool_call* into a ``ToolInvocation``.

    Empty strings are treated as no arguments.

    Raises:
        OutputParseError: If the arguments are not a JSON object.
    """
    raw = tool_call.arguments
    args: dict[str, Any] = {}
    if raw and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise OutputParseError(
                f"Invalid JSON in arguments for tool '{tool_call.name}': {exc}"
            ) from exc
        if not isinstance(parsed, dict):
            raise OutputParseError(
                f"Tool '{tool_call.name}' arguments must be a JSON object, "
                f"got {type(parsed).__name__}"
            )
        args = parsed
    return ToolInvocation(tool_call_id=tool_call.id, tool_name=tool_call.name, arguments=args)


def merge_usage(current: Usage, new: Usage) -> Usage:
    """Accumulate token usage across multiple LLM calls."""
    return current + new


def flatten_transcript(messages: Sequence[Message]) -> list[Message]:
    """Render a transcript as plain user/assistant text turns.

    Tool calls and tool results are inlined as bracketed text so the
    transcript can be sent to any provider without declaring tools.
    System messages are dropped.
    """
    flat: list[Message] = []
    for msg in messages:
        if isinstance(msg, SystemMessage):
            continue
        if isinstance(msg, AssistantMessage):
            parts = [msg.content] if msg.content else []
            parts.extend(f"[called {tc.name}({tc.arguments})]" for tc in msg.tool_calls)
            flat.append(AssistantMessage(content="\n".join(parts)))
        elif isinstance(msg, ToolResult):
            body = msg.body if msg.ok else f"error: {msg.error}"
            flat.append(UserMessage(content=f"[{msg.tool_name} result]\n{body}"))
        else:
            flat.append(msg)
    return flat
