"""Conversation and stream-event types exchanged between the loops and providers.

Every type here is an immutable pydantic model. Records kept by the outer
loop hold references to them, so nothing may change after construction.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class RalphError(Exception):
    """Root of every error raised by ralphloop."""


class _Frozen(BaseModel):
    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Conversation turns
# ---------------------------------------------------------------------------


class SystemMessage(_Frozen):
    role: Literal["system"] = "system"
    content: str


class UserMessage(_Frozen):
    """A user turn: the original task, or judge feedback for the next round."""

    role: Literal["user"] = "user"
    content: str


class ToolCall(_Frozen):
    """A tool invocation requested by the model.

    ``arguments`` stays the raw JSON text the model produced; it is only
    decoded when the tool is about to run.
    """

    id: str
    name: str
    arguments: str = ""


class AssistantMessage(_Frozen):
    role: Literal["assistant"] = "assistant"
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class ToolResult(_Frozen):
    """Outcome of one tool call, fed back to the model on the next step.

    A failed call keeps ``content`` empty and carries the message in
    ``error``; the model sees that text instead of a result.
    """

    role: Literal["tool"] = "tool"
    tool_call_id: str
    tool_name: str
    content: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def body(self) -> str:
        """Text the model should see for this result."""
        return self.content if self.error is None else self.error


Message = SystemMessage | UserMessage | AssistantMessage | ToolResult


class Usage(_Frozen):
    """Token counts for one call, or a sum of several."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        input_tokens = self.input_tokens + other.input_tokens
        output_tokens = self.output_tokens + other.output_tokens
        # Some providers report no total; fall back to the component sum.
        total = self.total_tokens + other.total_tokens
        return Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total or input_tokens + output_tokens,
        )


class ToolInvocation(_Frozen):
    """A ``ToolCall`` whose JSON arguments have been decoded."""

    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


class TextEvent(_Frozen):
    type: Literal["text"] = "text"
    text: str


class ToolCallEvent(_Frozen):
    """A streamed tool call, emitted once all its argument fragments arrived."""

    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    tool_call_id: str
    arguments: str = ""


class ToolResultEvent(_Frozen):
    """A tool finished running during a streamed round.

    Args:
        result: Tool output on success.
        error: Failure message, or ``None``.
        duration_ms: Wall-clock time the tool took.
    """

    type: Literal["tool_result"] = "tool_result"
    tool_name: str
    tool_call_id: str
    result: str = ""
    error: str | None = None
    success: bool = True
    duration_ms: float = 0.0


class StepEvent(_Frozen):
    """Boundary of one model call inside a streamed round.

    ``completed_at`` and ``usage`` are only set on the ``"completed"`` event.
    """

    type: Literal["step"] = "step"
    step_number: int
    status: Literal["started", "completed"]
    started_at: float
    completed_at: float | None = None
    usage: Usage | None = None


StreamEvent = TextEvent | ToolCallEvent | ToolResultEvent | StepEvent
