"""
Layered variable scope and reference resolution.

A VariableScope is created fresh for every run and has three layers, looked up
in this order:

    1. node-output bindings, written once when a node completes
       (``nodeId.field`` keys, plus the declared name of Variable nodes)
    2. batch-row input, read-only for the whole run
    3. defaults (Variable node defaults and caller-supplied defaults)

Bindings are single-assignment: writing a key twice in the same run raises
:class:`~flowstudio.core.errors.RebindError`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

from flowstudio.core.errors import RebindError, UnresolvedReferenceError

logger = logging.getLogger(__name__)


class ResolveMode(str, Enum):
    STRICT = "strict"
    LENIENT = "lenient"


class VariableScope:
    """
    Run-local variable scope.

    Attributes:
        inputs: The batch-row input layer (read-only)
        defaults: The defaults layer (read-only)
        node_ids: Ids of every node in the running graph; used to tell node
            references apart from bare input names
    """

    def __init__(
        self,
        inputs: Mapping[str, Any] | None = None,
        defaults: Mapping[str, Any] | None = None,
        node_ids: Iterable[str] = (),
    ):
        self.inputs: Mapping[str, Any] = MappingProxyType(dict(inputs or {}))
        self.defaults: Mapping[str, Any] = MappingProxyType(dict(defaults or {}))
        self.node_ids: frozenset[str] = frozenset(node_ids)
        self._bindings: dict[str, Any] = {}
        self._completed: set[str] = set()

    @property
    def bindings(self) -> Mapping[str, Any]:
        return MappingProxyType(self._bindings)

    def is_bound(self, key: str) -> bool:
        return key in self._bindings

    def has_completed(self, node_id: str) -> bool:
        return node_id in self._completed

    def bind(self, key: str, value: Any) -> None:
        if key in self._bindings:
            raise RebindError(key)
        self._bindings[key] = value

    def bind_node(self, node_id: str, outputs: Mapping[str, Any], names: Mapping[str, Any] | None = None) -> None:
        """
        Record a completed node's outputs.

        All keys are checked before any is written, so a rebind leaves the
        scope untouched.

        Args:
            node_id: The node that completed
            outputs: Field name to value; stored under ``nodeId.field``
            names: Extra bare names to bind (a Variable node's declared name)
        """
        pending = {f"{node_id}.{name}": value for name, value in outputs.items()}
        pending.update(names or {})
        for key in pending:
            if key in self._bindings:
                raise RebindError(key)
        self._bindings.update(pending)
        self._completed.add(node_id)
        logger.debug(f"Bound {sorted(pending)} for node {node_id}")

    def lookup(self, name: str) -> Any:
        """Look up a bare name through the three layers."""
        for layer in (self._bindings, self.inputs, self.defaults):
            if name in layer:
                return layer[name]
        raise UnresolvedReferenceError(name)

    def contains(self, name: str) -> bool:
        return name in self._bindings or name in self.inputs or name in self.defaults

    def snapshot(self, references: Iterable[str] = ()) -> dict[str, Any]:
        """
        Values a node is about to read, for the NodeExecution input snapshot.

        References that do not resolve are omitted.
        """
        values: dict[str, Any] = {}
        for reference in references:
            try:
                values[reference] = resolve(reference, self)
            except UnresolvedReferenceError:
                continue
        return values

    def __repr__(self) -> str:
        return f"<VariableScope bindings={len(self._bindings)} inputs={len(self.inputs)} defaults={len(self.defaults)}>"


def _walk(value: Any, path: list[str], reference: str) -> Any:
    for segment in path:
        if isinstance(value, Mapping):
            if segment not in value:
                raise UnresolvedReferenceError(reference, f"no key {segment!r}")
            value = value[segment]
        elif isinstance(value, (list, tuple)):
            try:
                value = value[int(segment)]
            except (ValueError, IndexError):
                raise UnresolvedReferenceError(reference, f"no index {segment!r}") from None
        else:
            raise UnresolvedReferenceError(reference, f"cannot index {type(value).__name__} with {segment!r}")
    return value


def _resolve_strict(reference: str, scope: VariableScope) -> Any:
    reference = reference.strip()
    if not reference:
        raise UnresolvedReferenceError(reference, "empty reference")

    head, *rest = reference.split(".")
    if head in scope.node_ids:
        if not scope.has_completed(head):
            # The planner orders producers first, so this only happens on a
            # malformed graph or an untaken branch.
            raise UnresolvedReferenceError(reference, f"node {head!r} has not completed in this run")
        field_name = rest[0] if rest else "output"
        key = f"{head}.{field_name}"
        if not scope.is_bound(key):
            raise UnresolvedReferenceError(reference, f"node {head!r} has no output field {field_name!r}")
        return _walk(scope.bindings[key], rest[1:], reference)

    if scope.contains(reference):
        return scope.lookup(reference)
    if rest and scope.contains(head):
        return _walk(scope.lookup(head), rest, reference)
    raise UnresolvedReferenceError(reference)


def resolve(
    reference: str,
    scope: VariableScope,
    mode: ResolveMode = ResolveMode.STRICT,
    fallback: Any = None,
) -> Any:
    """
    Resolve a reference against a scope.

    References take two forms:
        - ``nodeId.field[.key...]``: a completed node's output field, optionally
          indexing further into dict/list values; a bare ``nodeId`` means
          ``nodeId.output``
        - a bare name, looked up bindings -> input -> defaults; a dotted bare
          name that is not found whole is split and indexed

    A reference whose first segment is a node id of the graph is always read
    as a node reference, so an input or variable named like a node cannot be
    reached by its bare name. :func:`~flowstudio.core.validation.validate`
    warns about Variable nodes named like another node (``shadowed_variable``).

    Args:
        reference: The reference text
        scope: The run's scope
        mode: STRICT raises on failure, LENIENT returns ``fallback``
        fallback: Value returned in LENIENT mode when resolution fails

    Raises:
        UnresolvedReferenceError: In STRICT mode when the reference cannot be
            resolved, including references to nodes that have not completed.
    """
    try:
        return _resolve_strict(reference, scope)
    except UnresolvedReferenceError:
        if mode is ResolveMode.LENIENT:
            logger.debug(f"Lenient resolution of {reference!r} fell back to {fallback!r}")
            return fallback
        raise


def as_number(value: Any) -> float | None:
    """Numeric view of a value, or None when it is not numeric.

    Booleans are not numbers; numeric strings are.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


__all__ = ["ResolveMode", "VariableScope", "resolve", "as_number"]
