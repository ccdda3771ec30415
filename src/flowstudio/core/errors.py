"""
Error taxonomy for flowstudio.

Two families exist:

    - StructuralError (and CycleError): the graph itself is malformed. Raised
      to the caller from validation/planning before any node runs.
    - NodeExecutionFailure subclasses: something went wrong while running one
      node. The Node Executor converts these into a Failed NodeExecution; they
      never propagate out of a run.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from flowstudio.core.types import ErrorKind

if TYPE_CHECKING:
    from flowstudio.core.validation import ValidationReport


class FlowStudioError(Exception):
    """Base class for all flowstudio errors."""


class ConfigError(FlowStudioError):
    """Raised when engine configuration is invalid."""


class StructuralError(FlowStudioError):
    """Raised when a graph fails validation before a run starts."""

    report: "ValidationReport | None"

    def __init__(self, message: str, report: "ValidationReport | None" = None):
        super().__init__(message)
        self.report = report


class CycleError(StructuralError):
    """Raised by the planner when the graph contains a cycle."""

    node_id: str
    members: tuple[str, ...]

    def __init__(self, node_id: str, members: Sequence[str] = ()):
        self.node_id = node_id
        self.members = tuple(members) or (node_id,)
        super().__init__(f"Cycle detected at node {node_id!r} (members: {', '.join(self.members)})")


class RebindError(FlowStudioError):
    """Raised when a scope name is written twice in the same run."""

    name: str

    def __init__(self, name: str):
        super().__init__(f"Variable {name!r} is already bound in this run")
        self.name = name


class NodeExecutionFailure(FlowStudioError):
    """Base class for errors that fail exactly one node."""

    kind: ErrorKind = ErrorKind.INTERNAL


class UnresolvedReferenceError(NodeExecutionFailure):
    kind = ErrorKind.UNRESOLVED_REFERENCE

    reference: str

    def __init__(self, reference: str, reason: str = "not found in scope"):
        super().__init__(f"Unresolved reference {reference!r}: {reason}")
        self.reference = reference
        self.reason = reason


class UnresolvedPlaceholderError(UnresolvedReferenceError):
    kind = ErrorKind.UNRESOLVED_PLACEHOLDER

    names: tuple[str, ...]

    def __init__(self, names: Sequence[str]):
        self.names = tuple(names)
        joined = ", ".join(repr(n) for n in self.names)
        NodeExecutionFailure.__init__(self, f"Unresolved placeholder(s) in template: {joined}")
        self.reference = self.names[0] if self.names else ""
        self.reason = "unresolved placeholder"


class EvaluationError(NodeExecutionFailure):
    kind = ErrorKind.EVALUATION


class ProviderError(NodeExecutionFailure):
    """Raised by a ModelInvoker when the provider call fails."""

    kind = ErrorKind.PROVIDER

    provider: str | None

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ProviderTimeout(ProviderError):
    kind = ErrorKind.TIMEOUT

    timeout: float | None

    def __init__(self, message: str = "Model invocation timed out", timeout: float | None = None, provider: str | None = None):
        super().__init__(message, provider=provider)
        self.timeout = timeout


class UnknownTransformError(NodeExecutionFailure):
    kind = ErrorKind.UNKNOWN_TRANSFORM

    function: str

    def __init__(self, function: str):
        super().__init__(f"Unknown transform function {function!r}")
        self.function = function


class TransformError(NodeExecutionFailure):
    kind = ErrorKind.TRANSFORM


class MissingVariableError(NodeExecutionFailure):
    kind = ErrorKind.MISSING_VARIABLE

    name: str

    def __init__(self, name: str):
        super().__init__(f"Required variable {name!r} has no value and no default")
        self.name = name


class VariableTypeError(NodeExecutionFailure):
    kind = ErrorKind.VARIABLE_TYPE


__all__ = [
    "FlowStudioError",
    "ConfigError",
    "StructuralError",
    "CycleError",
    "RebindError",
    "NodeExecutionFailure",
    "UnresolvedReferenceError",
    "UnresolvedPlaceholderError",
    "EvaluationError",
    "ProviderError",
    "ProviderTimeout",
    "UnknownTransformError",
    "TransformError",
    "MissingVariableError",
    "VariableTypeError",
]
