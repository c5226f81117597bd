"""Tools the inner step loop can offer the model.

A tool has a name, a one-line description, a JSON Schema for its
arguments, and an async ``execute``. :func:`tool` wraps a plain function:
its signature becomes a pydantic model that produces the schema and also
validates whatever arguments the model sends back.

The outer loop hands the same tool set to every iteration; an empty set is
valid and yields pure text rounds.
"""

from __future__ import annotations

import asyncio
import inspect
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any, get_type_hints, overload

from pydantic import BaseModel, Field, ValidationError, create_model

from ralphloop.types import RalphError


class ToolError(RalphError):
    """A tool could not run, or ran and failed."""


# ---------------------------------------------------------------------------
# Signature -> arguments model
# ---------------------------------------------------------------------------

_ARG = re.compile(r"^(\s+)(\w+)(?:\s*\([^)]*\))?:\s*(.*)$")


def _summary(doc: str) -> str:
    return next((line.strip() for line in doc.splitlines() if line.strip()), "")


def _arg_docs(doc: str) -> dict[str, str]:
    """Google-style ``Args:`` entries, continuation lines joined."""
    docs: dict[str, list[str]] = {}
    lines = iter(doc.splitlines())
    for line in lines:
        if line.strip() == "Args:":
            break
    indent: str | None = None
    current: list[str] | None = None
    for line in lines:
        if line.strip() and not line[0].isspace():
            break  # next section
        m = _ARG.match(line)
        if m and (indent is None or m.group(1) == indent):
            indent = m.group(1)
            current = docs.setdefault(m.group(2), [])
            if m.group(3):
                current.append(m.group(3))
        elif current is not None and line.strip():
            current.append(line.strip())
    return {name: " ".join(parts) for name, parts in docs.items()}


def _drop_titles(schema: dict[str, Any]) -> dict[str, Any]:
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        _drop_titles(prop)
    for sub in schema.get("anyOf", ()):
        _drop_titles(sub)
    if isinstance(schema.get("items"), dict):
        _drop_titles(schema["items"])
    return schema


def arguments_model(fn: Callable[..., Any], name: str | None = None) -> type[BaseModel]:
    """Build a pydantic model mirroring *fn*'s keyword-callable parameters.

    Unannotated parameters are treated as strings; ``*args`` and
    ``**kwargs`` are ignored.
    """
    try:
        hints = get_type_hints(fn)
    except (NameError, TypeError):
        hints = {}
    docs = _arg_docs(inspect.getdoc(fn) or "")
    fields: dict[str, Any] = {}
    for pname, param in inspect.signature(fn).parameters.items():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        default = ... if param.default is param.empty else param.default
        fields[pname] = (hints.get(pname, str), Field(default, description=docs.get(pname)))
    return create_model(f"{name or fn.__name__}_arguments", **fields)


def arguments_schema(model: type[BaseModel]) -> dict[str, Any]:
    """JSON Schema for a tool's ``parameters``, without pydantic's titles."""
    schema = _drop_titles(model.model_json_schema())
    schema.setdefault("properties", {})
    return schema


# ---------------------------------------------------------------------------
# Tool ABC and FunctionTool
# ---------------------------------------------------------------------------


class Tool(ABC):
    """Something the model can call.

    Subclasses set ``name``, ``description`` and ``parameters`` (a JSON
    Schema object) and implement ``execute``.
    """

    name: str
    description: str
    parameters: dict[str, Any]

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any: ...

    def to_schema(self) -> dict[str, Any]:
        """Function-calling declaration in the chat-completions shape."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class FunctionTool(Tool):
    """Wraps a sync or async function.

    Arguments are validated against the function's signature before the
    call; sync functions run in a worker thread.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        self._fn = fn
        self._is_async = inspect.iscoroutinefunction(fn)
        self.name = name or fn.__name__
        self.description = description if description is not None else _summary(fn.__doc__ or "")
        self._arguments = arguments_model(fn, self.name)
        self.parameters = arguments_schema(self._arguments)

    async def execute(self, **kwargs: Any) -> Any:
        """Validate *kwargs* and call the wrapped function.

        Raises:
            ToolError: On invalid arguments, or wrapping whatever the
                function raised (a ``ToolError`` passes through unchanged).
        """
        try:
            validated = dict(self._arguments.model_validate(kwargs))
        except ValidationError as exc:
            raise ToolError(f"Invalid arguments for tool '{self.name}': {exc}") from exc
        try:
            if self._is_async:
                return await self._fn(**validated)
            return await asyncio.to_thread(self._fn, **validated)
        except ToolError:
            raise
        except Exception as exc:
            raise ToolError(f"Tool '{self.name}' failed: {exc}") from exc


@overload
def tool(fn: Callable[..., Any], /) -> FunctionTool: ...


@overload
def tool(
    fn: None = None,
    /,
    *,
    name: str | None = None,
    description: str | None = None,
) -> Callable[[Callable[..., Any]], FunctionTool]: ...


def tool(
    fn: Callable[..., Any] | None = None,
    /,
    *,
    name: str | None = None,
    description: str | None = None,
) -> FunctionTool | Callable[[Callable[..., Any]], FunctionTool]:
    """Turn a function into a :class:`FunctionTool`: ``@tool`` or ``@tool(name=...)``."""

    def wrap(func: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(func, name=name, description=description)

    return wrap(fn) if fn is not None else wrap


def normalize_tools(tools: Iterable[Tool | Callable[..., Any]] | None) -> dict[str, Tool]:
    """Map tool name -> tool, wrapping bare callables.

    Raises:
        ToolError: If two tools share a name.
    """
    by_name: dict[str, Tool] = {}
    for item in tools or ():
        t = item if isinstance(item, Tool) else FunctionTool(item)
        if t.name in by_name:
            raise ToolError(f"Duplicate tool name '{t.name}'")
        by_name[t.name] = t
    return by_name
