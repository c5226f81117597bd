"""Wire-neutral request and response shapes shared by every provider."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from ralphloop.types import Message, RalphError, ToolCall, Usage

FinishReason = Literal["stop", "tool_calls", "length", "content_filter"]

# HTTP statuses worth another attempt: timeouts, conflicts, rate limits, server faults.
RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504, 529})


class ModelError(RalphError):
    """A provider call failed.

    ``retryable`` marks transient failures (rate limits, overload, dropped
    connections); the inner step loop only retries those.
    """

    def __init__(
        self,
        message: str,
        *,
        model: str = "",
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        self.model = model
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"[{model}] {message}" if model else message)

    @classmethod
    def from_status(cls, message: str, status_code: int | None, *, model: str) -> ModelError:
        retryable = status_code is None or status_code in RETRYABLE_STATUS
        return cls(message, model=model, retryable=retryable, status_code=status_code)


class ModelRequest(BaseModel):
    """One provider call: the conversation plus sampling knobs."""

    model_config = {"frozen": True}

    messages: list[Message]
    tools: list[dict[str, Any]] = Field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None

    def describe(self) -> str:
        return f"messages={len(self.messages)} tools={len(self.tools)}"


class ModelResponse(BaseModel):
    """A finished, non-streamed completion."""

    model_config = {"frozen": True}

    id: str = ""
    model: str = ""
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finish_reason: FinishReason = "stop"


class ToolCallDelta(BaseModel):
    """Fragment of a tool call that arrives across several stream chunks.

    ``id`` and ``name`` only appear on the fragment that opens the call;
    ``arguments`` pieces concatenate, in order, into the JSON argument string.
    """

    model_config = {"frozen": True}

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class StreamChunk(BaseModel):
    """Unit yielded by ``ModelProvider.stream()``."""

    model_config = {"frozen": True}

    delta: str = ""
    tool_call_deltas: list[ToolCallDelta] = Field(default_factory=list)
    finish_reason: FinishReason | None = None
    usage: Usage = Field(default_factory=Usage)
