"""Anthropic messages adapter (``anthropic`` SDK).

The Messages API differs from chat completions in three ways that matter
here: the system prompt is a separate parameter, turns must alternate
strictly between ``user`` and ``assistant``, and ``max_tokens`` is
mandatory. Tool results travel inside ``user`` turns, so feedback the outer
loop injects right after a tool result is folded into the same turn.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from ralphloop.config import ModelConfig
from ralphloop.types import (
    AssistantMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolResult,
    Usage,
    UserMessage,
)

from .provider import ModelProvider, register_provider
from .types import FinishReason, ModelError, ModelRequest, ModelResponse, StreamChunk, ToolCallDelta

DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS: dict[str, FinishReason] = {
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def finish_reason(stop_reason: str | None) -> FinishReason:
    """``end_turn``, ``stop_sequence`` and anything unrecognised map to ``stop``."""
    return _STOP_REASONS.get(stop_reason or "", "stop")


def tool_spec(schema: dict[str, Any]) -> dict[str, Any]:
    """OpenAI-style function schema -> Anthropic tool definition."""
    fn = schema.get("function", {})
    return {
        "name": fn.get("name", ""),
        "description": fn.get("description", ""),
        "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
    }


class _Transcript:
    """Accumulates Anthropic turns, merging adjacent user content."""

    def __init__(self) -> None:
        self.system: list[str] = []
        self.turns: list[dict[str, Any]] = []

    def user(self, block: dict[str, Any]) -> None:
        if self.turns and self.turns[-1]["role"] == "user":
            self.turns[-1]["content"].append(block)
        else:
            self.turns.append({"role": "user", "content": [block]})

    def assistant(self, msg: AssistantMessage) -> None:
        blocks: list[dict[str, Any]] = []
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        blocks.extend(
            {
                "type": "tool_use",
                "id": call.id,
                "name": call.name,
                "input": json.loads(call.arguments) if call.arguments else {},
            }
            for call in msg.tool_calls
        )
        # The API rejects assistant turns with no content blocks.
        if not blocks:
            blocks.append({"type": "text", "text": ""})
        self.turns.append({"role": "assistant", "content": blocks})

    def add(self, msg: Message) -> None:
        match msg:
            case SystemMessage(content=text):
                self.system.append(text)
            case UserMessage(content=text):
                self.user({"type": "text", "text": text})
            case AssistantMessage():
                self.assistant(msg)
            case ToolResult():
                block: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.body,
                }
                if not msg.ok:
                    block["is_error"] = True
                self.user(block)


def encode_transcript(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Split *messages* into the ``system`` string and alternating turns."""
    transcript = _Transcript()
    for msg in messages:
        transcript.add(msg)
    return "\n".join(transcript.system), transcript.turns


def decode_message(raw: Any, fallback_model: str) -> ModelResponse:
    """Anthropic ``Message`` -> :class:`ModelResponse`."""
    text: list[str] = []
    calls: list[ToolCall] = []
    for block in raw.content:
        kind = getattr(block, "type", None)
        if kind == "text":
            text.append(block.text)
        elif kind == "tool_use":
            arguments = json.dumps(block.input) if block.input else ""
            calls.append(ToolCall(id=block.id, name=block.name, arguments=arguments))
    usage = Usage()
    if raw.usage is not None:
        spent_in, spent_out = raw.usage.input_tokens, raw.usage.output_tokens
        usage = Usage(
            input_tokens=spent_in, output_tokens=spent_out, total_tokens=spent_in + spent_out
        )
    return ModelResponse(
        id=raw.id or "",
        model=raw.model or fallback_model,
        content="".join(text),
        tool_calls=calls,
        usage=usage,
        finish_reason=finish_reason(raw.stop_reason),
    )


def _decode_event(event: Any, input_tokens: int) -> StreamChunk | None:
    """One server-sent event -> chunk, or ``None`` for events we don't surface."""
    match event.type:
        case "content_block_start" if getattr(event.content_block, "type", None) == "tool_use":
            block = event.content_block
            return StreamChunk(
                tool_call_deltas=[ToolCallDelta(index=event.index, id=block.id, name=block.name)]
            )
        case "content_block_delta":
            delta = event.delta
            if delta.type == "text_delta":
                return StreamChunk(delta=delta.text)
            if delta.type == "input_json_delta":
                return StreamChunk(
                    tool_call_deltas=[
                        ToolCallDelta(index=event.index, arguments=delta.partial_json)
                    ]
                )
        case "message_delta":
            output_tokens = event.usage.output_tokens if event.usage else 0
            return StreamChunk(
                finish_reason=finish_reason(getattr(event.delta, "stop_reason", None)),
                usage=Usage(
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    total_tokens=input_tokens + output_tokens,
                ),
            )
    return None


@register_provider("anthropic")
class AnthropicProvider(ModelProvider):
    """``AsyncAnthropic`` messages; ``max_tokens`` defaults to ``DEFAULT_MAX_TOKENS``."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    def _payload(self, request: ModelRequest) -> dict[str, Any]:
        system, turns = encode_transcript(request.messages)
        payload: dict[str, Any] = {
            "model": self.config.model_name,
            "messages": turns,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            payload["system"] = system
        if request.tools:
            payload["tools"] = [tool_spec(t) for t in request.tools]
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    def _translate(self, op: str, exc: anthropic.APIError) -> ModelError:
        return self._fail(op, exc.message, getattr(exc, "status_code", None))

    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        request = self._request(messages, tools, temperature, max_tokens, op="complete")
        try:
            raw = await self._client.messages.create(**self._payload(request))
        except anthropic.APIError as exc:
            raise self._translate("complete", exc) from exc
        return decode_message(raw, self.config.model_name)

    async def stream(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        request = self._request(messages, tools, temperature, max_tokens, op="stream")
        input_tokens = 0
        try:
            events = await self._client.messages.create(**self._payload(request), stream=True)
            async for event in events:
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens
                    continue
                chunk = _decode_event(event, input_tokens)
                if chunk is not None:
                    yield chunk
        except anthropic.APIError as exc:
            raise self._translate("stream", exc) from exc
