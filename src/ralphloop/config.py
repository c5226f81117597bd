"""Settings shared by the CLI, the YAML loader and ``RalphLoop.from_settings``."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

DEFAULT_MODEL = "openai:gpt-4o"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_STEPS = 10


def parse_model_string(model: str) -> tuple[str, str]:
    """``"anthropic:claude-sonnet-4-5"`` -> ``("anthropic", "claude-sonnet-4-5")``.

    A bare model name is assumed to be an OpenAI model.
    """
    provider, sep, name = model.partition(":")
    return (provider, name) if sep else ("openai", model)


class ModelConfig(BaseModel):
    """Connection details for one provider/model pair.

    ``api_key`` and ``base_url`` fall back to the SDK's own environment
    variables when left unset. ``max_retries`` is the SDK client's
    transport-level retry count, separate from the step loop's retries.
    """

    model_config = {"frozen": True}

    provider: str = "openai"
    model_name: str = "gpt-4o"
    api_key: str | None = None
    base_url: str | None = None
    max_retries: int = Field(default=2, ge=0)
    timeout: float = Field(default=120.0, gt=0)

    @classmethod
    def from_model_string(cls, model: str, **kwargs: Any) -> ModelConfig:
        provider, name = parse_model_string(model)
        return cls(provider=provider, model_name=name, **kwargs)

    @property
    def model_id(self) -> str:
        return f"{self.provider}:{self.model_name}"


class LoopSettings(BaseModel):
    """Declarative settings for a Ralph loop, as loaded from YAML or the CLI.

    Args:
        model: Primary model string in ``"provider:model_name"`` format.
        judge_model: Separate model used to verify completion. When ``None``
            the primary model judges its own work.
        instructions: System prompt for every generation round.
        max_iterations: Outer-loop iteration cap.
        max_steps: Inner-loop step cap (LLM/tool round-trips per iteration).
        temperature: Sampling temperature for generation rounds.
        max_tokens: Maximum output tokens per LLM call.
        completion_question: Override for the judge's completion question.
    """

    model_config = {"frozen": True}

    model: str = DEFAULT_MODEL
    judge_model: str | None = None
    instructions: str = ""
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    max_steps: int = Field(default=DEFAULT_MAX_STEPS, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    completion_question: str | None = None
