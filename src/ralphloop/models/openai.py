"""OpenAI chat-completions adapter (``openai`` SDK)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

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

_KNOWN_FINISH: frozenset[str] = frozenset({"stop", "tool_calls", "length", "content_filter"})


def finish_reason(raw: str | None) -> FinishReason:
    """OpenAI already uses our vocabulary; anything unknown counts as ``stop``."""
    return raw if raw in _KNOWN_FINISH else "stop"  # type: ignore[return-value]


def encode_message(msg: Message) -> dict[str, Any]:
    match msg:
        case SystemMessage(content=text) | UserMessage(content=text):
            return {"role": msg.role, "content": text}
        case AssistantMessage(content=text, tool_calls=[]):
            return {"role": "assistant", "content": text}
        case AssistantMessage(content=text, tool_calls=calls):
            return {
                "role": "assistant",
                "content": text,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                    for call in calls
                ],
            }
        case ToolResult():
            return {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.body}
    raise TypeError(f"Cannot encode {type(msg).__name__} for OpenAI")


def decode_usage(raw: Any) -> Usage:
    if raw is None:
        return Usage()
    return Usage(
        input_tokens=raw.prompt_tokens or 0,
        output_tokens=raw.completion_tokens or 0,
        total_tokens=raw.total_tokens or 0,
    )


def decode_completion(raw: Any, fallback_model: str) -> ModelResponse:
    """``ChatCompletion`` -> :class:`ModelResponse` (first choice only)."""
    choice = raw.choices[0]
    calls = [
        ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments)
        for tc in choice.message.tool_calls or ()
    ]
    return ModelResponse(
        id=raw.id or "",
        model=raw.model or fallback_model,
        content=choice.message.content or "",
        tool_calls=calls,
        usage=decode_usage(raw.usage),
        finish_reason=finish_reason(choice.finish_reason),
    )


def decode_chunk(raw: Any) -> StreamChunk:
    """``ChatCompletionChunk`` -> :class:`StreamChunk`.

    With ``include_usage`` the last chunk has no choices and only carries usage.
    """
    if not raw.choices:
        return StreamChunk(usage=decode_usage(raw.usage))
    choice = raw.choices[0]
    deltas = []
    for part in choice.delta.tool_calls or ():
        fn = part.function
        deltas.append(
            ToolCallDelta(
                index=part.index,
                id=part.id,
                name=(fn.name or None) if fn else None,
                arguments=(fn.arguments or "") if fn else "",
            )
        )
    return StreamChunk(
        delta=choice.delta.content or "",
        tool_call_deltas=deltas,
        finish_reason=finish_reason(choice.finish_reason) if choice.finish_reason else None,
    )


@register_provider("openai")
class OpenAIProvider(ModelProvider):
    """``AsyncOpenAI`` chat completions.

    Works with any OpenAI-compatible server through ``ModelConfig.base_url``.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    def _payload(self, request: ModelRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model_name,
            "messages": [encode_message(m) for m in request.messages],
        }
        if request.tools:
            payload["tools"] = request.tools
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    def _translate(self, op: str, exc: openai.APIError) -> ModelError:
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
            raw = await self._client.chat.completions.create(**self._payload(request))
        except openai.APIError as exc:
            raise self._translate("complete", exc) from exc
        return decode_completion(raw, self.config.model_name)

    async def stream(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        request = self._request(messages, tools, temperature, max_tokens, op="stream")
        payload = self._payload(request)
        payload.update(stream=True, stream_options={"include_usage": True})
        try:
            chunks = await self._client.chat.completions.create(**payload)
            async for raw in chunks:
                yield decode_chunk(raw)
        except openai.APIError as exc:
            raise self._translate("stream", exc) from exc
