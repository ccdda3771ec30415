"""
Immutable result records produced by runs and batches.

A NodeExecution is never mutated: each status transition creates a new record
with :func:`dataclasses.replace`. FlowExecutionResult and BatchExecutionResult
are assembled once a run or batch finishes.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any

from typing_extensions import Self

from flowstudio.core.errors import NodeExecutionFailure
from flowstudio.core.types import ErrorKind, NodeKind, NodeStatus, RunStatus, SkipReason


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


def _duration_ms(started_at: datetime | None, finished_at: datetime | None) -> float | None:
    if started_at is None or finished_at is None:
        return None
    return (finished_at - started_at).total_seconds() * 1000.0


@dataclass(frozen=True)
class Usage:
    """Raw metrics reported by the model invoker. Costs are never computed here."""

    tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    calls: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            tokens=self.tokens + other.tokens,
            cost=self.cost + other.cost,
            latency_ms=self.latency_ms + other.latency_ms,
            calls=self.calls + other.calls,
        )

    @classmethod
    def total(cls, usages: Iterable[Usage | None]) -> Usage:
        result = cls()
        for usage in usages:
            if usage is not None:
                result = result + usage
        return result


@dataclass(frozen=True)
class NodeError:
    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, error: BaseException) -> "NodeError":
        if isinstance(error, NodeExecutionFailure):
            return cls(error.kind, str(error))
        if isinstance(error, TimeoutError):
            return cls(ErrorKind.TIMEOUT, str(error) or "Operation timed out")
        return cls(ErrorKind.INTERNAL, f"{type(error).__name__}: {error}")


@dataclass(frozen=True)
class NodeExecution:
    """
    Record of one node in one run.

    Attributes:
        inputs: Snapshot of the scope values the node read
        output: The node's primary output (``nodeId.output``)
        outputs: Every field the node bound, by field name
    """

    node_id: str
    kind: NodeKind
    status: NodeStatus = NodeStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    inputs: Mapping[str, Any] = field(default_factory=dict)
    output: Any = None
    outputs: Mapping[str, Any] = field(default_factory=dict)
    error: NodeError | None = None
    skip_reason: SkipReason | None = None
    usage: Usage | None = None

    def __post_init__(self):
        object.__setattr__(self, "inputs", _freeze(self.inputs))
        object.__setattr__(self, "outputs", _freeze(self.outputs))

    @property
    def duration_ms(self) -> float | None:
        return _duration_ms(self.started_at, self.finished_at)

    def running(self, started_at: datetime, inputs: Mapping[str, Any] | None = None) -> Self:
        return replace(self, status=NodeStatus.RUNNING, started_at=started_at, inputs=inputs or {})

    def completed(
        self,
        finished_at: datetime,
        outputs: Mapping[str, Any],
        usage: Usage | None = None,
    ) -> Self:
        return replace(
            self,
            status=NodeStatus.COMPLETED,
            finished_at=finished_at,
            output=outputs.get("output"),
            outputs=outputs,
            usage=usage,
        )

    def failed(self, finished_at: datetime, error: NodeError, usage: Usage | None = None) -> Self:
        return replace(self, status=NodeStatus.FAILED, finished_at=finished_at, error=error, usage=usage)

    def skipped(self, at: datetime, reason: SkipReason) -> Self:
        return replace(
            self,
            status=NodeStatus.SKIPPED,
            started_at=self.started_at or at,
            finished_at=at,
            skip_reason=reason,
        )


@dataclass(frozen=True)
class FlowExecutionResult:
    run_id: str
    flow_id: str
    status: RunStatus
    executions: tuple[NodeExecution, ...]
    output: Any = None
    outputs: Mapping[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    usage: Usage = field(default_factory=Usage)

    def __post_init__(self):
        object.__setattr__(self, "executions", tuple(self.executions))
        object.__setattr__(self, "outputs", _freeze(self.outputs))

    @property
    def duration_ms(self) -> float | None:
        return _duration_ms(self.started_at, self.finished_at)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def execution(self, node_id: str) -> NodeExecution:
        for execution in self.executions:
            if execution.node_id == node_id:
                return execution
        raise KeyError(f"Node {node_id!r} did not take part in run {self.run_id}")

    def statuses(self) -> dict[str, NodeStatus]:
        return {e.node_id: e.status for e in self.executions}

    def failed_nodes(self) -> tuple[NodeExecution, ...]:
        return tuple(e for e in self.executions if e.status is NodeStatus.FAILED)


@dataclass(frozen=True)
class RowOutcome:
    """
    One batch row.

    Exactly one of ``result`` and ``error`` is set: ``error`` holds the
    message of an exception that escaped the engine for this row.
    """

    index: int
    inputs: Mapping[str, Any]
    result: FlowExecutionResult | None = None
    error: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "inputs", _freeze(self.inputs))

    @property
    def status(self) -> RunStatus:
        if self.result is None:
            return RunStatus.FAILED
        return self.result.status

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.succeeded


@dataclass(frozen=True)
class BatchExecutionResult:
    batch_id: str
    flow_id: str
    rows: tuple[RowOutcome, ...]
    collection_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def __post_init__(self):
        object.__setattr__(self, "rows", tuple(self.rows))

    @property
    def total_count(self) -> int:
        return len(self.rows)

    @property
    def success_count(self) -> int:
        return sum(1 for row in self.rows if row.succeeded)

    @property
    def failure_count(self) -> int:
        return self.total_count - self.success_count

    @property
    def success_rate(self) -> float:
        """Percentage of rows that completed, 0 for an empty batch."""
        if not self.rows:
            return 0.0
        return self.success_count / self.total_count * 100.0

    @property
    def usage(self) -> Usage:
        return Usage.total(row.result.usage for row in self.rows if row.result is not None)

    @property
    def duration_ms(self) -> float | None:
        return _duration_ms(self.started_at, self.finished_at)

    def results(self) -> list[FlowExecutionResult | None]:
        return [row.result for row in self.rows]


__all__ = [
    "Usage",
    "NodeError",
    "NodeExecution",
    "FlowExecutionResult",
    "RowOutcome",
    "BatchExecutionResult",
]
