"""
Flow Execution Engine.

The engine runs one graph against one set of inputs:

    initialized -> planning -> executing -> {completed, failed, cancelled}

Planning validates the graph snapshot and computes the plan, raising
:class:`~flowstudio.core.errors.StructuralError` (or ``CycleError``) before any
node runs. Once planning succeeds, :meth:`FlowEngine.run` always returns a
:class:`~flowstudio.core.results.FlowExecutionResult`; node failures are
recorded on the result, never raised.

Execution walks the plan sequentially. Before each node the engine checks, in
order:

    1. the cancellation token: remaining nodes are skipped as ``cancelled``
    2. the run deadline: remaining nodes are skipped as ``run timeout``
    3. the node's inbound edges:
        - a predecessor that failed (or was skipped because of a failure)
          skips the node as ``upstream failure``
        - a non-entry node with no active inbound edge, or with a completed
          Conditional predecessor none of whose edges to it were taken, is
          skipped as ``untaken branch``

An inbound edge is active when its source completed and the edge was taken.
Edges leaving a Conditional are taken when their label matches the boolean
result, or when they carry the ``default`` label or none; every other edge is
always taken. A node after both branches of an if/else therefore runs once
either branch completes.

All run state lives on a :class:`RunContext` owned by the calling thread.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from flowstudio.config import EngineConfig
from flowstudio.core.errors import StructuralError
from flowstudio.core.executor import ModelInvoker, NodeExecutor, NodeResult
from flowstudio.core.graph import Edge, FlowGraph, NodeConfig, references
from flowstudio.core.instrumentation import (
    FlowInstrument,
    NodeStatusChangeMetadata,
    RunStartMetadata,
    RunStateChangeMetadata,
    get_current_flow_instrument,
)
from flowstudio.core.planner import ExecutionPlan, plan
from flowstudio.core.results import FlowExecutionResult, NodeExecution, Usage
from flowstudio.core.scope import VariableScope
from flowstudio.core.transforms import DEFAULT_TRANSFORMS, TransformRegistry
from flowstudio.core.types import (
    BranchLabel,
    NodeKind,
    NodeStatus,
    RunState,
    RunStatus,
    SkipReason,
)
from flowstudio.core.validation import validate

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    """
    Thread-safe, one-way cancellation flag.

    The engine checks the token before every node; the batch runner checks it
    before every row. A node that is already running is allowed to finish.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.debug(f"Cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses; return whether cancelled."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.cancelled}>"


@dataclass
class RunContext:
    """
    Mutable state of one run.

    Attributes:
        records: Latest NodeExecution per node id, in plan order
        deadline: ``time.monotonic()`` value after which no node may start
    """

    run_id: str
    graph: FlowGraph
    plan: ExecutionPlan
    scope: VariableScope
    cancel_token: CancellationToken
    instrument: FlowInstrument
    deadline: float | None = None
    state: RunState = RunState.INITIALIZED
    started_at: datetime = field(default_factory=_now)
    records: dict[str, NodeExecution] = field(default_factory=dict)
    timed_out: bool = False

    def __post_init__(self):
        for node_id in self.plan:
            self.records[node_id] = NodeExecution(node_id=node_id, kind=self.graph.node(node_id).kind)

    @property
    def flow_id(self) -> str:
        return self.graph.flow_id

    def set_state(self, new_state: RunState) -> None:
        old_state, self.state = self.state, new_state
        self.instrument.on_run_state_change(
            RunStateChangeMetadata(self.run_id, self.flow_id, old_state, new_state)
        )

    def update(self, record: NodeExecution) -> None:
        old = self.records[record.node_id]
        self.records[record.node_id] = record
        self.instrument.on_node_status_change(
            NodeStatusChangeMetadata(
                run_id=self.run_id,
                node_id=record.node_id,
                kind=record.kind,
                old_status=old.status,
                new_status=record.status,
                skip_reason=record.skip_reason,
            )
        )
        if record.status.is_terminal:
            self.instrument.on_node_finished(self.run_id, record)

    def skip(self, node_id: str, reason: SkipReason) -> None:
        self.update(self.records[node_id].skipped(_now(), reason))

    def skip_remaining(self, reason: SkipReason) -> None:
        for node_id, record in self.records.items():
            if record.status is NodeStatus.PENDING:
                self.skip(node_id, reason)

    def deadline_passed(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


class FlowEngine:
    """
    Runs flow graphs.

    An engine holds configuration and collaborators only, so one instance can
    serve many concurrent runs (the batch runner shares one across its
    workers).
    """

    def __init__(
        self,
        invoker: ModelInvoker | None,
        config: EngineConfig | None = None,
        transforms: TransformRegistry | None = None,
    ):
        self.config = config or EngineConfig()
        self.transforms = transforms if transforms is not None else DEFAULT_TRANSFORMS
        self.executor = NodeExecutor(invoker, self.config, self.transforms)

    @property
    def invoker(self) -> ModelInvoker | None:
        return self.executor.invoker

    def prepare(self, graph: FlowGraph) -> ExecutionPlan:
        """
        Validate and plan a graph.

        Raises:
            StructuralError: If validation reports errors
            CycleError: If the graph contains a cycle
        """
        validate(graph, self.transforms).raise_for_errors()
        return plan(graph)

    def run(
        self,
        graph: FlowGraph,
        inputs: Mapping[str, Any] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
        defaults: Mapping[str, Any] | None = None,
        execution_plan: ExecutionPlan | None = None,
    ) -> FlowExecutionResult:
        """
        Run a graph once.

        Args:
            graph: The snapshot to run; it is re-validated unless
                ``execution_plan`` is given
            inputs: The batch-row input layer of the scope
            cancel_token: Checked before every node
            run_id: Identifier for the run; generated when omitted
            defaults: Extra defaults layered under Variable node defaults
            execution_plan: A plan returned by :meth:`prepare` for this same
                graph, to skip re-validation

        Returns:
            The run's result, whatever happened to individual nodes.

        Raises:
            StructuralError: If the graph is malformed; no node has run
        """
        run_id = run_id or uuid.uuid4().hex
        instrument = get_current_flow_instrument()
        instrument.on_run_start(RunStartMetadata(run_id, graph.flow_id, len(graph)))
        self._announce(instrument, run_id, graph.flow_id, RunState.INITIALIZED, RunState.PLANNING)

        if execution_plan is None:
            try:
                execution_plan = self.prepare(graph)
            except StructuralError as e:
                logger.info(f"Run {run_id} of {graph.flow_id} rejected: {e}", extra={"tag": "flow"})
                self._announce(instrument, run_id, graph.flow_id, RunState.PLANNING, RunState.FAILED)
                raise

        context = RunContext(
            run_id=run_id,
            graph=graph,
            plan=execution_plan,
            scope=VariableScope(inputs, self._defaults(graph, defaults), graph.node_ids),
            cancel_token=cancel_token or CancellationToken(),
            instrument=instrument,
            deadline=time.monotonic() + self.config.run_timeout if self.config.run_timeout else None,
            state=RunState.PLANNING,
        )
        return self._execute(context)

    def _announce(
        self,
        instrument: FlowInstrument,
        run_id: str,
        flow_id: str,
        old_state: RunState,
        new_state: RunState,
    ) -> None:
        instrument.on_run_state_change(RunStateChangeMetadata(run_id, flow_id, old_state, new_state))

    def _defaults(self, graph: FlowGraph, defaults: Mapping[str, Any] | None) -> dict[str, Any]:
        seeded: dict[str, Any] = {}
        for node in graph.nodes_of_kind(NodeKind.VARIABLE):
            assert isinstance(node.config, NodeConfig.Variable)
            if node.config.has_default:
                seeded[node.config.name] = node.config.default
        seeded.update(defaults or {})
        return seeded

    def _execute(self, context: RunContext) -> FlowExecutionResult:
        logger.info(f"Run {context.run_id} of {context.flow_id} started", extra={"tag": "flow"})
        context.set_state(RunState.EXECUTING)

        for node_id in context.plan:
            if context.cancel_token.cancelled:
                logger.debug(f"Run {context.run_id} cancelled before {node_id}")
                context.skip_remaining(SkipReason.CANCELLED)
                break
            if context.deadline_passed():
                logger.warning(f"Run {context.run_id} exceeded its deadline before {node_id}")
                context.timed_out = True
                context.skip_remaining(SkipReason.RUN_TIMEOUT)
                break

            reason = self._skip_reason(context, node_id)
            if reason is not None:
                logger.debug(f"Skipping {node_id}: {reason.value}")
                context.skip(node_id, reason)
                continue

            self._run_node(context, node_id)

        status = self._final_status(context)
        context.set_state(
            {
                RunStatus.COMPLETED: RunState.COMPLETED,
                RunStatus.CANCELLED: RunState.CANCELLED,
            }.get(status, RunState.FAILED)
        )

        result = self._build_result(context, status)
        logger.info(
            f"Run {context.run_id} of {context.flow_id} finished {status.value}",
            extra={"tag": "flow"},
        )
        context.instrument.on_run_end(result)
        return result

    def _run_node(self, context: RunContext, node_id: str) -> None:
        node = context.graph.node(node_id)
        inputs: dict[str, Any] = {}
        if self.config.capture_inputs:
            inputs = context.scope.snapshot(references(node.config))
            if isinstance(node.config, NodeConfig.Variable) and context.scope.contains(node.config.name):
                inputs[node.config.name] = context.scope.lookup(node.config.name)

        context.update(context.records[node_id].running(_now(), inputs))
        match self.executor.execute(node, context.scope):
            case NodeResult.Completed(outputs=outputs, usage=usage):
                context.update(context.records[node_id].completed(_now(), outputs, usage))
            case NodeResult.Failed(error=error, usage=usage):
                context.update(context.records[node_id].failed(_now(), error, usage))

    def _is_taken(self, context: RunContext, edge: Edge) -> bool:
        source = context.records[edge.source]
        if source.kind is not NodeKind.CONDITIONAL:
            return True
        if edge.branch is None or edge.branch is BranchLabel.DEFAULT:
            return True
        taken = BranchLabel.TRUE if source.outputs.get("result") else BranchLabel.FALSE
        return edge.branch is taken

    def _skip_reason(self, context: RunContext, node_id: str) -> SkipReason | None:
        inbound = context.graph.inbound(node_id)
        if not inbound:
            return None

        active = False
        gates: dict[str, bool] = {}
        for edge in inbound:
            source = context.records[edge.source]
            if source.status is NodeStatus.FAILED:
                return SkipReason.UPSTREAM_FAILURE
            if source.status is NodeStatus.SKIPPED and source.skip_reason is not SkipReason.UNTAKEN_BRANCH:
                return SkipReason.UPSTREAM_FAILURE
            if source.status is not NodeStatus.COMPLETED:
                continue
            taken = self._is_taken(context, edge)
            active = active or taken
            if source.kind is NodeKind.CONDITIONAL:
                gates[edge.source] = gates.get(edge.source, False) or taken

        if not active or not all(gates.values()):
            return SkipReason.UNTAKEN_BRANCH
        return None

    def _final_status(self, context: RunContext) -> RunStatus:
        records = context.records.values()
        if context.cancel_token.cancelled and any(
            r.skip_reason is SkipReason.CANCELLED for r in records
        ):
            return RunStatus.CANCELLED
        if context.timed_out:
            return RunStatus.FAILED
        if all(
            r.status is NodeStatus.COMPLETED
            or (r.status is NodeStatus.SKIPPED and r.skip_reason is SkipReason.UNTAKEN_BRANCH)
            for r in records
        ):
            return RunStatus.COMPLETED
        if self.config.continue_on_error and any(
            r.kind is NodeKind.OUTPUT and r.status is NodeStatus.COMPLETED for r in records
        ):
            return RunStatus.PARTIALLY_FAILED
        return RunStatus.FAILED

    def _build_result(self, context: RunContext, status: RunStatus) -> FlowExecutionResult:
        executions = tuple(context.records[node_id] for node_id in context.plan)
        completed = [e for e in executions if e.status is NodeStatus.COMPLETED]
        outputs = {e.node_id: e.output for e in completed if e.kind is NodeKind.OUTPUT}

        if context.graph.nodes_of_kind(NodeKind.OUTPUT):
            final = list(outputs.values())[-1] if outputs else None
        else:
            final = completed[-1].output if completed else None

        return FlowExecutionResult(
            run_id=context.run_id,
            flow_id=context.flow_id,
            status=status,
            executions=executions,
            output=final,
            outputs=outputs,
            started_at=context.started_at,
            finished_at=_now(),
            usage=Usage.total(e.usage for e in executions),
        )


__all__ = ["CancellationToken", "RunContext", "FlowEngine"]
