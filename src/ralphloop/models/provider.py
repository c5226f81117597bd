"""Provider contract and the name -> provider-class table.

Concrete providers register themselves with :func:`register_provider` when
their module is imported (``ralphloop.models`` imports the built-in ones).
:func:`get_provider` turns a ``"provider:model_name"`` string into a new
instance on every call; loops never share a client.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

from ralphloop.config import ModelConfig
from ralphloop.log import get_logger
from ralphloop.types import Message

from .types import ModelError, ModelRequest, ModelResponse, StreamChunk

_log = get_logger(__name__)

_P = TypeVar("_P", bound="ModelProvider")

_PROVIDERS: dict[str, type[ModelProvider]] = {}


def register_provider(name: str) -> Callable[[type[_P]], type[_P]]:
    """Class decorator adding a provider under *name*.

    Raises:
        ModelError: If *name* is taken by a different class.
    """

    def decorator(cls: type[_P]) -> type[_P]:
        existing = _PROVIDERS.get(name)
        if existing is not None and existing is not cls:
            raise ModelError(f"Provider '{name}' is already registered to {existing.__name__}")
        _PROVIDERS[name] = cls
        return cls

    return decorator


def provider_class(name: str) -> type[ModelProvider]:
    try:
        return _PROVIDERS[name]
    except KeyError:
        raise ModelError(
            f"Provider '{name}' not registered. Available: {available_providers()}"
        ) from None


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


class ModelProvider(ABC):
    """A chat model the loops can call.

    ``complete()`` returns a whole response; ``stream()`` yields chunks as
    they arrive. Both raise :class:`ModelError` on transport failures.
    """

    def __init__(self, config: ModelConfig) -> None:
        self.config = config

    @property
    def model_id(self) -> str:
        return self.config.model_id

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse: ...

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]: ...

    def _request(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        *,
        op: str,
    ) -> ModelRequest:
        request = ModelRequest(
            messages=messages, tools=tools or [], temperature=temperature, max_tokens=max_tokens
        )
        _log.debug("%s %s: %s", self.model_id, op, request.describe())
        return request

    def _fail(self, op: str, message: str, status_code: int | None) -> ModelError:
        error = ModelError.from_status(message, status_code, model=self.model_id)
        _log.warning(
            "%s %s failed (status=%s, retryable=%s): %s",
            self.model_id,
            op,
            status_code,
            error.retryable,
            message,
        )
        return error

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model_id!r})"


def get_provider(
    model: str, *, api_key: str | None = None, base_url: str | None = None, **kwargs: Any
) -> ModelProvider:
    """Build a provider for a ``"provider:model_name"`` string.

    Extra keyword arguments become :class:`ModelConfig` fields.

    Raises:
        ModelError: If the provider name is unknown.
    """
    config = ModelConfig.from_model_string(model, api_key=api_key, base_url=base_url, **kwargs)
    try:
        cls = provider_class(config.provider)
    except ModelError as exc:
        raise ModelError(str(exc), model=model) from None
    return cls(config)
