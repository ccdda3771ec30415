"""
Named pure functions for Transform nodes.

A Transform node names a function in a :class:`TransformRegistry` and passes
it one resolved input plus keyword arguments from the node configuration.

Example:
    >>> registry = TransformRegistry()
    >>> @registry.register("shout")
    ... def shout(value, suffix="!"):
    ...     return str(value).upper() + suffix
    >>> registry.apply("shout", "hi", {})
    'HI!'
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterator, Mapping
from typing import Any, TypeAlias, TypeVar

from flowstudio.core.errors import (
    TransformError,
    UnknownTransformError,
    UnresolvedReferenceError,
)
from flowstudio.core.templates import format_value, render

logger = logging.getLogger(__name__)

TransformFunction: TypeAlias = Callable[..., Any]
_F = TypeVar("_F", bound=TransformFunction)


class TransformRegistry:
    """Mapping of transform names to pure functions."""

    def __init__(self, functions: Mapping[str, TransformFunction] | None = None):
        self._functions: dict[str, TransformFunction] = dict(functions or {})

    def register(self, name: str | None = None) -> Callable[[_F], _F]:
        def decorator(func: _F) -> _F:
            self._functions[name or func.__name__] = func
            return func

        return decorator

    def get(self, name: str) -> TransformFunction:
        try:
            return self._functions[name]
        except KeyError:
            raise UnknownTransformError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._functions))

    def copy(self) -> "TransformRegistry":
        return TransformRegistry(self._functions)

    def apply(self, name: str, value: Any, args: Mapping[str, Any]) -> Any:
        """
        Run a transform.

        Raises:
            UnknownTransformError: If no function is registered under ``name``
            TransformError: If the function itself fails
        """
        func = self.get(name)
        try:
            return func(value, **args)
        except TransformError:
            raise
        except Exception as e:
            logger.debug(f"Transform {name} failed on {value!r}: {e}")
            raise TransformError(f"Transform {name!r} failed: {e}") from e


DEFAULT_TRANSFORMS = TransformRegistry()
_register = DEFAULT_TRANSFORMS.register


@_register("upper")
def _upper(value: Any) -> str:
    return format_value(value).upper()


@_register("lower")
def _lower(value: Any) -> str:
    return format_value(value).lower()


@_register("title")
def _title(value: Any) -> str:
    return format_value(value).title()


@_register("strip")
def _strip(value: Any, chars: str | None = None) -> str:
    return format_value(value).strip(chars)


@_register("replace")
def _replace(value: Any, old: str, new: str = "") -> str:
    return format_value(value).replace(old, new)


@_register("truncate")
def _truncate(value: Any, max_length: int, suffix: str = "") -> str:
    text = format_value(value)
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - len(suffix))] + suffix


@_register("parse_json")
def _parse_json(value: Any) -> Any:
    if not isinstance(value, (str, bytes, bytearray)):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise TransformError(f"Input is not valid JSON: {e}") from e


@_register("to_json")
def _to_json(value: Any, indent: int | None = None) -> str:
    return json.dumps(value, indent=indent, default=str, ensure_ascii=False)


@_register("json_extract")
def _json_extract(value: Any, path: str, default: Any = None, required: bool = True) -> Any:
    """Pull a dotted field path (``a.b.0.c``) out of a JSON string or object."""
    current = _parse_json(value)
    for segment in path.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.lstrip("-").isdigit() and -len(current) <= int(segment) < len(current):
            current = current[int(segment)]
        elif required:
            raise TransformError(f"Path {path!r} not found (stopped at {segment!r})")
        else:
            return default
    return current


@_register("split_lines")
def _split_lines(value: Any) -> list[str]:
    return [line.strip() for line in format_value(value).splitlines() if line.strip()]


@_register("join")
def _join(value: Any, separator: str = ", ") -> str:
    if isinstance(value, (list, tuple)):
        return separator.join(format_value(item) for item in value)
    return format_value(value)


@_register("length")
def _length(value: Any) -> int:
    if isinstance(value, (str, list, tuple, dict)):
        return len(value)
    raise TransformError(f"Cannot take the length of {type(value).__name__}")


@_register("to_number")
def _to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise TransformError("Booleans are not numbers")
    if isinstance(value, (int, float)):
        return value
    text = format_value(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        raise TransformError(f"{value!r} is not a number") from None


@_register("regex_extract")
def _regex_extract(value: Any, pattern: str, group: int | str = 0, default: Any = None) -> Any:
    match = re.search(pattern, format_value(value))
    if match is None:
        return default
    return match.group(group)


@_register("format")
def _format(value: Any, template: str, **extra: Any) -> str:
    """Render ``template`` with ``{{value}}`` bound to the input."""
    names = {"value": value, **extra}

    def lookup(name: str) -> Any:
        if name not in names:
            raise UnresolvedReferenceError(name)
        return names[name]

    return render(template, lookup)


__all__ = ["TransformFunction", "TransformRegistry", "DEFAULT_TRANSFORMS"]
