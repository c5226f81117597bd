"""Tests for the OpenAI provider with the SDK client mocked out."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import openai
import pytest

from ralphloop.config import ModelConfig
from ralphloop.models.openai import (
    OpenAIProvider,
    decode_chunk,
    decode_completion,
    encode_message,
    finish_reason,
)
from ralphloop.models.types import ModelError
from ralphloop.types import AssistantMessage, SystemMessage, ToolCall, ToolResult, UserMessage

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _provider() -> OpenAIProvider:
    return OpenAIProvider(ModelConfig(provider="openai", model_name="gpt-4o", api_key="k"))


def _usage(prompt: int = 10, completion: int = 5) -> SimpleNamespace:
    return SimpleNamespace(
        prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion
    )


def _completion(
    content: str | None = "hello",
    tool_calls: list[Any] | None = None,
    reason: str = "stop",
) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = SimpleNamespace(message=message, finish_reason=reason)
    return SimpleNamespace(id="chatcmpl-1", model="gpt-4o", choices=[choice], usage=_usage())


def _chunk(
    content: str | None = None,
    tool_calls: list[Any] | None = None,
    reason: str | None = None,
) -> SimpleNamespace:
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta, finish_reason=reason)], usage=None
    )


def _api_error(message: str) -> openai.APIError:
    return openai.APIError(message=message, request=MagicMock(), body=None)


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


class TestConversion:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("stop", "stop"), ("tool_calls", "tool_calls"), ("length", "length"), (None, "stop")],
    )
    def test_finish_reason(self, raw: str | None, expected: str) -> None:
        assert finish_reason(raw) == expected

    def test_unknown_finish_reason(self) -> None:
        assert finish_reason("function_call") == "stop"

    def test_messages(self) -> None:
        history = [
            SystemMessage(content="sys"),
            UserMessage(content="task"),
            AssistantMessage(
                content="",
                tool_calls=[ToolCall(id="c1", name="run_command", arguments='{"command":"ls"}')],
            ),
            ToolResult(tool_call_id="c1", tool_name="run_command", content="a.py"),
            ToolResult(tool_call_id="c2", tool_name="read_file", error="missing"),
        ]

        converted = [encode_message(m) for m in history]

        assert converted[0] == {"role": "system", "content": "sys"}
        assert converted[1] == {"role": "user", "content": "task"}
        assert converted[2]["tool_calls"][0]["function"] == {
            "name": "run_command",
            "arguments": '{"command":"ls"}',
        }
        assert converted[3] == {"role": "tool", "tool_call_id": "c1", "content": "a.py"}
        assert converted[4]["content"] == "missing"

    def test_assistant_without_tools_has_no_tool_calls_key(self) -> None:
        encoded = encode_message(AssistantMessage(content="hi"))
        assert encoded == {"role": "assistant", "content": "hi"}


class TestParsing:
    def test_text_response(self) -> None:
        resp = decode_completion(_completion("Done."), "gpt-4o")
        assert resp.content == "Done."
        assert resp.usage.total_tokens == 15
        assert resp.finish_reason == "stop"

    def test_tool_call_response(self) -> None:
        tc = SimpleNamespace(id="c1", function=SimpleNamespace(name="ls", arguments="{}"))
        resp = decode_completion(_completion(None, [tc], "tool_calls"), "gpt-4o")
        assert resp.content == ""
        assert resp.tool_calls == [ToolCall(id="c1", name="ls", arguments="{}")]
        assert resp.finish_reason == "tool_calls"

    def test_missing_usage(self) -> None:
        raw = _completion()
        raw.usage = None
        assert decode_completion(raw, "gpt-4o").usage.total_tokens == 0

    def test_stream_text_chunk(self) -> None:
        chunk = decode_chunk(_chunk("Hel"))
        assert chunk.delta == "Hel"
        assert chunk.finish_reason is None

    def test_stream_tool_delta(self) -> None:
        delta = SimpleNamespace(
            index=1, id="c9", function=SimpleNamespace(name="write_file", arguments='{"pa')
        )
        chunk = decode_chunk(_chunk(tool_calls=[delta]))
        assert chunk.tool_call_deltas[0].index == 1
        assert chunk.tool_call_deltas[0].name == "write_file"
        assert chunk.tool_call_deltas[0].arguments == '{"pa'

    def test_stream_usage_chunk(self) -> None:
        chunk = decode_chunk(SimpleNamespace(choices=[], usage=_usage(7, 3)))
        assert chunk.usage.total_tokens == 10
        assert chunk.delta == ""


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------


class TestComplete:
    async def test_basic(self) -> None:
        provider = _provider()
        provider._client.chat.completions.create = AsyncMock(return_value=_completion("world"))

        result = await provider.complete([UserMessage(content="hello")])

        assert result.content == "world"
        kwargs = provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert "tools" not in kwargs
        assert "temperature" not in kwargs

    async def test_passes_tools_and_sampling(self) -> None:
        provider = _provider()
        provider._client.chat.completions.create = AsyncMock(return_value=_completion())
        tools = [{"type": "function", "function": {"name": "ls", "parameters": {}}}]

        await provider.complete(
            [UserMessage(content="hi")], tools=tools, temperature=0.1, max_tokens=50
        )

        kwargs = provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["tools"] == tools
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 50

    async def test_api_error(self) -> None:
        provider = _provider()
        provider._client.chat.completions.create = AsyncMock(side_effect=_api_error("rate limit"))

        with pytest.raises(ModelError, match=r"\[openai:gpt-4o\] rate limit") as exc_info:
            await provider.complete([UserMessage(content="hi")])
        assert exc_info.value.retryable

    @pytest.mark.parametrize(("status", "retryable"), [(400, False), (429, True), (503, True)])
    async def test_status_errors_classified(self, status: int, retryable: bool) -> None:
        provider = _provider()
        error = openai.APIStatusError(
            "rejected", response=MagicMock(status_code=status), body=None
        )
        provider._client.chat.completions.create = AsyncMock(side_effect=error)

        with pytest.raises(ModelError) as exc_info:
            await provider.complete([UserMessage(content="hi")])

        assert exc_info.value.status_code == status
        assert exc_info.value.retryable is retryable
        assert exc_info.value.__cause__ is error


class TestStream:
    async def test_chunks(self) -> None:
        provider = _provider()
        raw = [
            _chunk("Hel"),
            _chunk("lo"),
            _chunk(reason="stop"),
            SimpleNamespace(choices=[], usage=_usage(4, 2)),
        ]

        async def fake_create(**kwargs: Any) -> Any:
            assert kwargs["stream"] is True
            assert kwargs["stream_options"] == {"include_usage": True}

            async def gen() -> Any:
                for item in raw:
                    yield item

            return gen()

        provider._client.chat.completions.create = AsyncMock(side_effect=fake_create)

        chunks = [c async for c in provider.stream([UserMessage(content="hi")])]

        assert "".join(c.delta for c in chunks) == "Hello"
        assert chunks[2].finish_reason == "stop"
        assert chunks[3].usage.total_tokens == 6

    async def test_api_error(self) -> None:
        provider = _provider()
        provider._client.chat.completions.create = AsyncMock(side_effect=_api_error("down"))

        with pytest.raises(ModelError, match="down"):
            async for _ in provider.stream([UserMessage(content="hi")]):
                pass
