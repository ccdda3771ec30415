from enum import Enum
from typing import NewType, TypeAlias

NodeId = NewType("NodeId", str)
Reference: TypeAlias = str


class NodeKind(str, Enum):
    PROMPT = "prompt"
    VARIABLE = "variable"
    CONDITIONAL = "conditional"
    TRANSFORM = "transform"
    OUTPUT = "output"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class RunState(str, Enum):
    """Lifecycle of a single run inside the engine."""

    INITIALIZED = "initialized"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Final status reported on a FlowExecutionResult."""

    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELLED = "cancelled"


class BranchLabel(str, Enum):
    TRUE = "true"
    FALSE = "false"
    DEFAULT = "default"


class SkipReason(str, Enum):
    UNTAKEN_BRANCH = "untaken branch"
    UPSTREAM_FAILURE = "upstream failure"
    CANCELLED = "cancelled"
    RUN_TIMEOUT = "run timeout"

    @property
    def is_intentional(self) -> bool:
        """Whether the skip is a legitimate outcome rather than a casualty of an error."""
        return self is SkipReason.UNTAKEN_BRANCH


class ErrorKind(str, Enum):
    UNRESOLVED_REFERENCE = "unresolved_reference"
    UNRESOLVED_PLACEHOLDER = "unresolved_placeholder"
    EVALUATION = "evaluation"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    UNKNOWN_TRANSFORM = "unknown_transform"
    TRANSFORM = "transform"
    MISSING_VARIABLE = "missing_variable"
    VARIABLE_TYPE = "variable_type"
    REBIND = "rebind"
    INTERNAL = "internal"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"


class _MissingType:
    """Sentinel type for "no value supplied".

    Distinguishes an absent default from an explicit ``None`` default on
    Variable nodes and from a resolved ``None`` value in the scope.
    """

    _instance: "_MissingType | None" = None

    def __new__(cls) -> "_MissingType":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


# Singleton instance for the missing-value sentinel
MISSING = _MissingType()


__all__ = [
    "NodeId",
    "Reference",
    "NodeKind",
    "NodeStatus",
    "RunState",
    "RunStatus",
    "BranchLabel",
    "SkipReason",
    "ErrorKind",
    "VariableType",
    "OutputFormat",
    "Operator",
    "MISSING",
]
