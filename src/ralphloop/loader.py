"""Read ``ralph.yaml`` into :class:`~ralphloop.config.LoopSettings`.

Strings may reference ``${NAME}`` (process environment) or
``${vars.NAME}`` (the file's own top-level ``vars:`` block, which is
removed before validation)::

    vars:
      provider: anthropic
    model: ${vars.provider}:claude-sonnet-4-5
    judge_model: openai:gpt-4o-mini
    max_iterations: 5
    instructions: |
      You are working inside ${PROJECT_NAME}.

A string that is exactly one reference takes the referenced value as is,
so ``max_iterations: ${vars.n}`` stays an integer. References that cannot
be resolved are kept verbatim.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ralphloop.config import LoopSettings
from ralphloop.log import get_logger
from ralphloop.types import RalphError

_log = get_logger(__name__)

_REF = re.compile(r"\$\{([^}]+)\}")


class LoaderError(RalphError):
    """The settings file is missing, unparsable, or fails validation."""


class _Interpolator:
    def __init__(self, env: Mapping[str, str], variables: Mapping[str, Any]) -> None:
        self._env = env
        self._vars = variables

    def lookup(self, ref: str) -> Any:
        scope, dot, name = ref.partition(".")
        if dot and scope == "vars":
            found = self._vars.get(name)
        else:
            found = self._env.get(ref)
        return f"${{{ref}}}" if found is None else found

    def __call__(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self(item) for item in node]
        if not isinstance(node, str):
            return node
        whole = _REF.fullmatch(node)
        if whole is not None:
            return self.lookup(whole.group(1))
        return _REF.sub(lambda m: str(self.lookup(m.group(1))), node)


def _substitute(node: Any, env: Mapping[str, str], variables: Mapping[str, Any]) -> Any:
    return _Interpolator(env, variables)(node)


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Parse *path* and resolve its references; an empty file gives ``{}``."""
    source = Path(path)
    if not source.is_file():
        raise LoaderError(f"YAML file not found: {source}")
    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise LoaderError(f"Invalid YAML in {source}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise LoaderError(f"Expected YAML dict, got {type(data).__name__}")
    variables = data.pop("vars", None) or {}
    return _substitute(data, os.environ, variables)  # type: ignore[no-any-return]


def load_settings(path: str | Path, **overrides: Any) -> LoopSettings:
    """Validated settings from *path*.

    Keyword *overrides* win over the file; ``None`` values are skipped so
    unset CLI options can be forwarded unchanged.
    """
    data = load_yaml(path)
    data.update((key, value) for key, value in overrides.items() if value is not None)
    try:
        settings = LoopSettings.model_validate(data)
    except ValidationError as exc:
        raise LoaderError(f"Invalid settings in {path}: {exc}") from exc
    _log.debug("Loaded settings from %s (model=%s)", path, settings.model)
    return settings
