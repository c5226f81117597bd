"""Tests for the Anthropic provider with the SDK client mocked out."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import anthropic
import pytest

from ralphloop.config import ModelConfig
from ralphloop.models.anthropic import (
    DEFAULT_MAX_TOKENS,
    AnthropicProvider,
    decode_message,
    encode_transcript,
    finish_reason,
    tool_spec,
)
from ralphloop.models.types import ModelError
from ralphloop.types import AssistantMessage, SystemMessage, ToolCall, ToolResult, UserMessage

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _provider() -> AnthropicProvider:
    return AnthropicProvider(
        ModelConfig(provider="anthropic", model_name="claude-sonnet-4-5", api_key="k")
    )


def _message(content: list[Any], stop_reason: str = "end_turn") -> SimpleNamespace:
    return SimpleNamespace(
        id="msg-1",
        model="claude-sonnet-4-5",
        content=content,
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=12, output_tokens=4),
    )


def _streaming(events: list[Any]) -> AsyncMock:
    async def fake_create(**kwargs: Any) -> Any:
        assert kwargs["stream"] is True

        async def gen() -> Any:
            for event in events:
                yield event

        return gen()

    return AsyncMock(side_effect=fake_create)


def _api_error(message: str) -> anthropic.APIError:
    return anthropic.APIError(message=message, request=MagicMock(), body=None)


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


class TestStopReason:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("end_turn", "stop"),
            ("tool_use", "tool_calls"),
            ("max_tokens", "length"),
            ("stop_sequence", "stop"),
            (None, "stop"),
            ("refusal", "stop"),
        ],
    )
    def test_mapping(self, raw: str | None, expected: str) -> None:
        assert finish_reason(raw) == expected


class TestBuildMessages:
    def test_system_messages_joined(self) -> None:
        system, messages = encode_transcript(
            [SystemMessage(content="a"), SystemMessage(content="b"), UserMessage(content="hi")]
        )
        assert system == "a\nb"
        assert messages == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]

    def test_tool_use_round_trip_shape(self) -> None:
        _, messages = encode_transcript(
            [
                UserMessage(content="fix it"),
                AssistantMessage(
                    content="Looking.",
                    tool_calls=[ToolCall(id="t1", name="read_file", arguments='{"path":"a"}')],
                ),
                ToolResult(tool_call_id="t1", tool_name="read_file", content="x = 1"),
            ]
        )

        assert messages[1]["content"][1] == {
            "type": "tool_use",
            "id": "t1",
            "name": "read_file",
            "input": {"path": "a"},
        }
        assert messages[2]["content"] == [
            {"type": "tool_result", "tool_use_id": "t1", "content": "x = 1"}
        ]

    def test_feedback_after_tool_result_merged(self) -> None:
        _, messages = encode_transcript(
            [
                UserMessage(content="task"),
                AssistantMessage(tool_calls=[ToolCall(id="t1", name="ls")]),
                ToolResult(tool_call_id="t1", tool_name="ls", error="boom"),
                UserMessage(content="Tests still fail."),
            ]
        )

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        blocks = messages[2]["content"]
        assert blocks[0]["is_error"] is True
        assert blocks[1] == {"type": "text", "text": "Tests still fail."}

    def test_empty_assistant_gets_placeholder_block(self) -> None:
        _, messages = encode_transcript([AssistantMessage()])
        assert messages == [{"role": "assistant", "content": [{"type": "text", "text": ""}]}]

    def test_tool_spec(self) -> None:
        schema = {
            "type": "function",
            "function": {
                "name": "ls",
                "description": "List files.",
                "parameters": {"type": "object", "properties": {"path": {"type": "string"}}},
            },
        }
        assert tool_spec(schema) == {
            "name": "ls",
            "description": "List files.",
            "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}},
        }

    def test_tool_spec_without_parameters(self) -> None:
        spec = tool_spec({"type": "function", "function": {"name": "noop"}})
        assert spec["input_schema"] == {"type": "object", "properties": {}}


class TestParseResponse:
    def test_text_and_tool_use(self) -> None:
        raw = _message(
            [
                SimpleNamespace(type="text", text="Running tests."),
                SimpleNamespace(
                    type="tool_use", id="t1", name="run_command", input={"command": "pytest"}
                ),
            ],
            stop_reason="tool_use",
        )

        resp = decode_message(raw, "claude-sonnet-4-5")

        assert resp.content == "Running tests."
        assert resp.tool_calls[0].arguments == '{"command": "pytest"}'
        assert resp.finish_reason == "tool_calls"
        assert resp.usage.total_tokens == 16

    def test_empty_tool_input(self) -> None:
        raw = _message([SimpleNamespace(type="tool_use", id="t1", name="ls", input={})])
        assert decode_message(raw, "m").tool_calls[0].arguments == ""


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------


class TestComplete:
    async def test_basic(self) -> None:
        provider = _provider()
        provider._client.messages.create = AsyncMock(
            return_value=_message([SimpleNamespace(type="text", text="YES")])
        )

        resp = await provider.complete(
            [SystemMessage(content="judge"), UserMessage(content="done?")], temperature=0.0
        )

        assert resp.content == "YES"
        kwargs = provider._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "judge"
        assert kwargs["max_tokens"] == DEFAULT_MAX_TOKENS
        assert kwargs["temperature"] == 0.0
        assert "tools" not in kwargs

    async def test_no_system_omitted(self) -> None:
        provider = _provider()
        provider._client.messages.create = AsyncMock(return_value=_message([]))

        await provider.complete([UserMessage(content="hi")], max_tokens=99)

        kwargs = provider._client.messages.create.call_args.kwargs
        assert "system" not in kwargs
        assert kwargs["max_tokens"] == 99

    async def test_api_error(self) -> None:
        provider = _provider()
        provider._client.messages.create = AsyncMock(side_effect=_api_error("overloaded"))

        with pytest.raises(ModelError, match="overloaded"):
            await provider.complete([UserMessage(content="hi")])

    async def test_overloaded_status_is_retryable(self) -> None:
        provider = _provider()
        error = anthropic.APIStatusError(
            "Overloaded", response=MagicMock(status_code=529), body=None
        )
        provider._client.messages.create = AsyncMock(side_effect=error)

        with pytest.raises(ModelError) as exc_info:
            await provider.complete([UserMessage(content="hi")])

        assert exc_info.value.retryable
        assert exc_info.value.status_code == 529


class TestStream:
    async def test_text_and_usage(self) -> None:
        provider = _provider()
        provider._client.messages.create = _streaming(
            [
                SimpleNamespace(
                    type="message_start",
                    message=SimpleNamespace(usage=SimpleNamespace(input_tokens=10)),
                ),
                SimpleNamespace(
                    type="content_block_start", index=0, content_block=SimpleNamespace(type="text")
                ),
                SimpleNamespace(
                    type="content_block_delta",
                    index=0,
                    delta=SimpleNamespace(type="text_delta", text="Al"),
                ),
                SimpleNamespace(
                    type="content_block_delta",
                    index=0,
                    delta=SimpleNamespace(type="text_delta", text="l done"),
                ),
                SimpleNamespace(
                    type="message_delta",
                    delta=SimpleNamespace(stop_reason="end_turn"),
                    usage=SimpleNamespace(output_tokens=3),
                ),
            ]
        )

        chunks = [c async for c in provider.stream([UserMessage(content="hi")])]

        assert [c.delta for c in chunks[:2]] == ["Al", "l done"]
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].usage.total_tokens == 13

    async def test_tool_use(self) -> None:
        provider = _provider()
        provider._client.messages.create = _streaming(
            [
                SimpleNamespace(
                    type="message_start",
                    message=SimpleNamespace(usage=SimpleNamespace(input_tokens=1)),
                ),
                SimpleNamespace(
                    type="content_block_start",
                    index=1,
                    content_block=SimpleNamespace(type="tool_use", id="t1", name="ls"),
                ),
                SimpleNamespace(
                    type="content_block_delta",
                    index=1,
                    delta=SimpleNamespace(type="input_json_delta", partial_json='{"path":'),
                ),
                SimpleNamespace(
                    type="content_block_delta",
                    index=1,
                    delta=SimpleNamespace(type="input_json_delta", partial_json='"."}'),
                ),
                SimpleNamespace(
                    type="message_delta",
                    delta=SimpleNamespace(stop_reason="tool_use"),
                    usage=SimpleNamespace(output_tokens=2),
                ),
            ]
        )

        chunks = [c async for c in provider.stream([UserMessage(content="hi")])]

        assert chunks[0].tool_call_deltas[0].id == "t1"
        assert chunks[0].tool_call_deltas[0].index == 1
        args = "".join(d.arguments for c in chunks for d in c.tool_call_deltas)
        assert args == '{"path":"."}'
        assert chunks[-1].finish_reason == "tool_calls"

    async def test_api_error(self) -> None:
        provider = _provider()
        provider._client.messages.create = AsyncMock(side_effect=_api_error("gone"))

        with pytest.raises(ModelError, match="gone"):
            async for _ in provider.stream([UserMessage(content="hi")]):
                pass
