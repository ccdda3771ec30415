"""
Flow Instrumentation System.

Hooks for observing runs and batches: run state transitions, node status
transitions, finished nodes and batch progress. Instruments are installed with
a context manager and stored in a ContextVar, so the active instrument follows
the code that runs inside the ``with`` block (including batch worker threads,
which are started with a copy of the caller's context).

Example:
    >>> from flowstudio import FlowEngine, GraphBuilder
    >>> from flowstudio.core.instrumentation import PrintInstrument
    >>> with GraphBuilder("hello") as b:
    ...     name = b.variable("name", default="world")
    ...     b.output(name, node_id="out")
    >>> with PrintInstrument():
    ...     result = FlowEngine(invoker=None).run(b.graph)
    ...
    [RUN] hello/... initialized -> planning
    ...
"""

from __future__ import annotations

import logging
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import TracebackType
from typing import TYPE_CHECKING, Final

from typing_extensions import Self, override

from flowstudio.core.types import NodeKind, NodeStatus, RunState, SkipReason

if TYPE_CHECKING:
    from flowstudio.core.results import BatchExecutionResult, FlowExecutionResult, NodeExecution

logger = logging.getLogger(__name__)

_current_flow_instrument: ContextVar["FlowInstrument | None"] = ContextVar(
    "_current_flow_instrument", default=None
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunStartMetadata:
    run_id: str
    flow_id: str
    node_count: int
    timestamp: datetime = field(default_factory=_now)


@dataclass
class RunStateChangeMetadata:
    run_id: str
    flow_id: str
    old_state: RunState
    new_state: RunState
    timestamp: datetime = field(default_factory=_now)


@dataclass
class NodeStatusChangeMetadata:
    run_id: str
    node_id: str
    kind: NodeKind
    old_status: NodeStatus
    new_status: NodeStatus
    skip_reason: SkipReason | None = None
    timestamp: datetime = field(default_factory=_now)


@dataclass
class BatchStartMetadata:
    batch_id: str
    flow_id: str
    total: int
    workers: int
    collection_id: str | None = None
    timestamp: datetime = field(default_factory=_now)


@dataclass
class BatchProgressMetadata:
    """Progress after one more row has finished."""

    batch_id: str
    row_index: int
    completed: int
    total: int
    succeeded: int
    failed: int
    timestamp: datetime = field(default_factory=_now)

    @property
    def percent(self) -> float:
        if not self.total:
            return 100.0
        return self.completed / self.total * 100.0


class FlowInstrument:
    """
    Base class for flow instrumentation.

    This class provides no-op hooks for run and batch events. Subclasses
    override the ones they care about.
    """

    _token: Token["FlowInstrument | None"] | None = None

    def on_run_start(self, metadata: RunStartMetadata) -> None:
        """Called once per run, before planning."""
        pass

    def on_run_state_change(self, metadata: RunStateChangeMetadata) -> None:
        """
        Called on every run state transition.

        Args:
            metadata: The run and the old/new states
        """
        pass

    def on_node_status_change(self, metadata: NodeStatusChangeMetadata) -> None:
        """
        Called every time a node record moves to a new status.

        Pending -> Running -> {Completed, Failed}, or Pending -> Skipped.
        """
        pass

    def on_node_finished(self, run_id: str, execution: "NodeExecution") -> None:
        """Called with the terminal record of every node."""
        pass

    def on_run_end(self, result: "FlowExecutionResult") -> None:
        """Called with the final result of a run."""
        pass

    def on_batch_start(self, metadata: BatchStartMetadata) -> None:
        pass

    def on_batch_progress(self, metadata: BatchProgressMetadata) -> None:
        """
        Called from worker threads as each row finishes.

        Calls are serialized by the batch runner, but come from different
        threads.
        """
        pass

    def on_batch_end(self, result: "BatchExecutionResult") -> None:
        pass

    def __enter__(self: Self) -> Self:
        # token to restore old value of instrument
        self._token = _current_flow_instrument.set(self)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        if self._token is not None:
            _current_flow_instrument.reset(self._token)
            self._token = None
        return False


class PrintInstrument(FlowInstrument):
    """
    Flow instrument that prints events to stdout.
    """

    print = print

    @override
    def on_run_start(self, metadata: RunStartMetadata) -> None:
        self.print(f"[RUN] {metadata.flow_id}/{metadata.run_id} starting with {metadata.node_count} nodes")

    @override
    def on_run_state_change(self, metadata: RunStateChangeMetadata) -> None:
        self.print(
            f"[RUN] {metadata.flow_id}/{metadata.run_id} {metadata.old_state.value} -> {metadata.new_state.value}"
        )

    @override
    def on_node_status_change(self, metadata: NodeStatusChangeMetadata) -> None:
        reason = f" ({metadata.skip_reason.value})" if metadata.skip_reason else ""
        self.print(
            f"[NODE] {metadata.node_id} [{metadata.kind.value}] "
            f"{metadata.old_status.value} -> {metadata.new_status.value}{reason}"
        )

    @override
    def on_node_finished(self, run_id: str, execution: "NodeExecution") -> None:
        if execution.error is not None:
            self.print(f"[NODE-ERROR] {execution.node_id}: {execution.error.kind.value}: {execution.error.message}")

    @override
    def on_run_end(self, result: "FlowExecutionResult") -> None:
        duration = result.duration_ms or 0.0
        self.print(f"[RUN] {result.flow_id}/{result.run_id} finished {result.status.value} in {duration:.1f}ms")

    @override
    def on_batch_start(self, metadata: BatchStartMetadata) -> None:
        self.print(
            f"[BATCH] {metadata.batch_id} running {metadata.total} rows of {metadata.flow_id} "
            f"on {metadata.workers} workers"
        )

    @override
    def on_batch_progress(self, metadata: BatchProgressMetadata) -> None:
        self.print(
            f"[BATCH-PROGRESS] row {metadata.row_index} done: {metadata.completed}/{metadata.total} "
            f"({metadata.percent:.0f}%), {metadata.failed} failed"
        )

    @override
    def on_batch_end(self, result: "BatchExecutionResult") -> None:
        self.print(
            f"[BATCH] {result.batch_id} finished: {result.success_count}/{result.total_count} "
            f"succeeded ({result.success_rate:.1f}%)"
        )


class LogInstrument(PrintInstrument):
    """
    Flow instrument that logs events using the logging module.

    This instrument uses the debug log level for all messages.
    """

    print = logger.debug


EMPTY_FLOW_INSTRUMENT: Final[FlowInstrument] = FlowInstrument()


def get_current_flow_instrument() -> FlowInstrument:
    """
    Get the current instrumentation context.

    Returns:
        The currently active instrument or an empty instrument if none is active.
    """
    instrument = _current_flow_instrument.get()
    if instrument:
        return instrument
    else:
        return EMPTY_FLOW_INSTRUMENT


__all__ = [
    "FlowInstrument",
    "PrintInstrument",
    "LogInstrument",
    "RunStartMetadata",
    "RunStateChangeMetadata",
    "NodeStatusChangeMetadata",
    "BatchStartMetadata",
    "BatchProgressMetadata",
    "EMPTY_FLOW_INSTRUMENT",
    "get_current_flow_instrument",
]
