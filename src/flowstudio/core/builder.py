"""
GraphBuilder: a context manager for drafting flow graphs.

The builder is the mutable side of the graph model. Nodes and edges are
collected in a draft while the ``with`` block runs; leaving the block takes an
immutable :class:`~flowstudio.core.graph.FlowGraph` snapshot. Later edits to
the builder never affect a snapshot that was already taken.

Passing a node handle where a node reads a value (an Output source, a
Transform input, a condition operand) both builds the reference and adds the
edge. Prompt placeholders are plain text, so prompts name their predecessors
with ``after=``.

Example:
    >>> with GraphBuilder("greeting") as b:
    ...     name = b.variable("name", default="world")
    ...     greet = b.prompt("Say hello to {{name}}", after=name)
    ...     b.output(greet, node_id="out")
    >>> [node.id for node in b.graph.nodes]
    ['variable_1', 'prompt_1', 'out']
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import TracebackType
from typing import Any, TypeAlias

from typing_extensions import Self

from flowstudio.core.graph import (
    Condition,
    Edge,
    FlowGraph,
    Literal,
    ModelConfig,
    Node,
    NodeConfig,
    Operand,
    Ref,
)
from flowstudio.core.types import MISSING, BranchLabel, Operator, OutputFormat, VariableType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeHandle:
    """Reference to a node added to a builder."""

    id: str

    def ref(self, field: str = "output") -> str:
        return f"{self.id}.{field}"

    @property
    def true(self) -> "BranchRef":
        return BranchRef(self, BranchLabel.TRUE)

    @property
    def false(self) -> "BranchRef":
        return BranchRef(self, BranchLabel.FALSE)

    @property
    def default(self) -> "BranchRef":
        return BranchRef(self, BranchLabel.DEFAULT)

    def __str__(self) -> str:
        return self.ref()


@dataclass(frozen=True)
class BranchRef:
    """A labelled way out of a node, used with ``after=``."""

    handle: NodeHandle
    branch: BranchLabel


Predecessor: TypeAlias = NodeHandle | BranchRef
After: TypeAlias = Predecessor | Iterable[Predecessor]


class GraphBuilder:
    """
    Draft of a flow graph.

    Node ids default to ``<kind>_<n>``; pass ``node_id`` to choose one.

    Attributes:
        flow_id: Id given to every snapshot
    """

    def __init__(self, flow_id: str) -> None:
        self.flow_id = flow_id
        self._nodes: list[Node] = []
        self._edges: list[Edge] = []
        self._counts: Counter[str] = Counter()
        self._graph: FlowGraph | None = None

    def __enter__(self: Self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        """Snapshot the draft when the block exits cleanly."""
        if exc_type is None:
            logger.info(f"Finalizing GraphBuilder for {self.flow_id}")
            self._graph = self.build()
        return False

    @property
    def graph(self) -> FlowGraph:
        """The snapshot taken when the ``with`` block exited."""
        if self._graph is None:
            raise RuntimeError("GraphBuilder has not been finalized; use it as a context manager or call build()")
        return self._graph

    def build(self) -> FlowGraph:
        return FlowGraph.snapshot(self.flow_id, self._nodes, self._edges)

    def _next_id(self, kind: str) -> str:
        self._counts[kind] += 1
        return f"{kind}_{self._counts[kind]}"

    def add_node(self, node: Node) -> NodeHandle:
        self._nodes.append(node)
        return NodeHandle(node.id)

    def connect(
        self,
        source: NodeHandle | str,
        target: NodeHandle | str,
        branch: BranchLabel | str | None = None,
    ) -> None:
        source_id = source.id if isinstance(source, NodeHandle) else source
        target_id = target.id if isinstance(target, NodeHandle) else target
        edge = Edge(source_id, target_id, BranchLabel(branch) if branch is not None else None)
        if edge not in self._edges:
            self._edges.append(edge)

    def _add(self, kind: str, config: NodeConfig.Type, node_id: str | None, label: str, after: After | None) -> NodeHandle:
        handle = self.add_node(Node(node_id or self._next_id(kind), config, label))
        if after is None:
            return handle
        for predecessor in [after] if isinstance(after, (NodeHandle, BranchRef)) else after:
            if isinstance(predecessor, BranchRef):
                self.connect(predecessor.handle, handle, predecessor.branch)
            else:
                self.connect(predecessor, handle)
        return handle

    def _reference(self, value: NodeHandle | str, target_edges: list[NodeHandle]) -> str:
        if isinstance(value, NodeHandle):
            target_edges.append(value)
            return value.ref()
        return value

    def _operand(self, value: Any, target_edges: list[NodeHandle]) -> Operand:
        match value:
            case NodeHandle():
                target_edges.append(value)
                return Ref(value.ref())
            case Ref() | Literal():
                return value
        return Literal(value)

    def variable(
        self,
        name: str,
        declared_type: VariableType | str = VariableType.STRING,
        *,
        default: Any = MISSING,
        required: bool = False,
        node_id: str | None = None,
        label: str = "",
        after: After | None = None,
    ) -> NodeHandle:
        config = NodeConfig.Variable(name, VariableType(declared_type), default, required)
        return self._add("variable", config, node_id, label or name, after)

    def prompt(
        self,
        template: str,
        *,
        model: ModelConfig | str | None = None,
        system_template: str | None = None,
        timeout: float | None = None,
        node_id: str | None = None,
        label: str = "",
        after: After | None = None,
    ) -> NodeHandle:
        if isinstance(model, str):
            model = ModelConfig(model=model)
        config = NodeConfig.Prompt(template, model or ModelConfig(), system_template, timeout)
        return self._add("prompt", config, node_id, label, after)

    def conditional(
        self,
        left: Any,
        operator: Operator | str,
        right: Any = None,
        *,
        node_id: str | None = None,
        label: str = "",
        after: After | None = None,
    ) -> NodeHandle:
        """
        Add a Conditional node.

        Node handles and :class:`Ref` values are looked up in the scope;
        anything else is a literal. Connect the branches with ``cond.true``
        and ``cond.false`` in ``after=``.
        """
        sources: list[NodeHandle] = []
        operator = Operator(operator)
        left_operand = self._operand(left, sources)
        right_operand = None if operator is Operator.EXISTS and right is None else self._operand(right, sources)
        config = NodeConfig.Conditional(Condition(left_operand, operator, right_operand))
        handle = self._add("conditional", config, node_id, label, after)
        for source in sources:
            self.connect(source, handle)
        return handle

    def transform(
        self,
        function: str,
        input: NodeHandle | str,
        *,
        args: Mapping[str, Any] | None = None,
        output_field: str = "output",
        node_id: str | None = None,
        label: str = "",
        after: After | None = None,
    ) -> NodeHandle:
        sources: list[NodeHandle] = []
        config = NodeConfig.Transform(function, self._reference(input, sources), args or {}, output_field)
        handle = self._add("transform", config, node_id, label or function, after)
        for source in sources:
            self.connect(source, handle)
        return handle

    def output(
        self,
        source: NodeHandle | str,
        *,
        format: OutputFormat | str = OutputFormat.TEXT,
        template: str | None = None,
        node_id: str | None = None,
        label: str = "",
        after: After | None = None,
    ) -> NodeHandle:
        sources: list[NodeHandle] = []
        config = NodeConfig.Output(self._reference(source, sources), OutputFormat(format), template)
        handle = self._add("output", config, node_id, label, after)
        for source_handle in sources:
            self.connect(source_handle, handle)
        return handle


__all__ = ["GraphBuilder", "NodeHandle", "BranchRef"]
