"""Chat model providers backing the inner step loop.

Importing this package registers the built-in ``openai`` and ``anthropic``
providers with :func:`get_provider`.
"""

from .anthropic import AnthropicProvider
from .openai import OpenAIProvider
from .provider import ModelProvider, available_providers, get_provider, register_provider
from .types import (
    FinishReason,
    ModelError,
    ModelRequest,
    ModelResponse,
    StreamChunk,
    ToolCallDelta,
)

__all__ = [
    "AnthropicProvider",
    "FinishReason",
    "ModelError",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "OpenAIProvider",
    "StreamChunk",
    "ToolCallDelta",
    "available_providers",
    "get_provider",
    "register_provider",
]
