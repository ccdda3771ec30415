"""
Graph model for prompt flows.

A FlowGraph is an immutable snapshot: an arena of nodes addressed by id plus
edges expressed as id pairs. Node behaviour is a closed tagged variant: every
node carries exactly one of the payloads declared on :class:`NodeConfig`, and
the Node Executor dispatches on it with a single ``match`` statement.

Key components:
    - NodeConfig: namespace of the per-kind payload dataclasses
    - Node / Edge: graph elements
    - FlowGraph: validated-on-demand, read-only graph with precomputed indexes
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, TypeAlias

from flowstudio.core.templates import placeholders
from flowstudio.core.types import (
    MISSING,
    BranchLabel,
    NodeKind,
    Operator,
    OutputFormat,
    VariableType,
)

logger = logging.getLogger(__name__)


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Ref:
    """An operand that is looked up in the variable scope."""

    reference: str


@dataclass(frozen=True)
class Literal:
    """An operand that is used as-is."""

    value: Any


Operand: TypeAlias = Ref | Literal


def ref(reference: str) -> Ref:
    return Ref(reference)


def literal(value: Any) -> Literal:
    return Literal(value)


@dataclass(frozen=True)
class Condition:
    left: Operand
    operator: Operator
    right: Operand | None = None

    def __post_init__(self):
        object.__setattr__(self, "operator", Operator(self.operator))


@dataclass(frozen=True)
class ModelConfig:
    """Model selection and sampling parameters handed to the invoker."""

    model: str = "gpt-3.5-turbo"
    provider: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    system_message: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "extra", _freeze(self.extra))


class NodeConfig:
    """
    Per-kind node payloads.

    Kinds:
        - Prompt: render a template and call the model
        - Variable: bind a named input (or its default)
        - Conditional: evaluate a condition and pick a branch
        - Transform: apply a named pure function to one input
        - Output: surface an upstream value as the flow's result
    """

    @dataclass(frozen=True)
    class Prompt:
        template: str
        model: ModelConfig = field(default_factory=ModelConfig)
        system_template: str | None = None
        timeout: float | None = None

    @dataclass(frozen=True)
    class Variable:
        name: str
        declared_type: VariableType = VariableType.STRING
        default: Any = MISSING
        required: bool = False

        def __post_init__(self):
            object.__setattr__(self, "declared_type", VariableType(self.declared_type))

        @property
        def has_default(self) -> bool:
            return self.default is not MISSING

    @dataclass(frozen=True)
    class Conditional:
        condition: Condition

    @dataclass(frozen=True)
    class Transform:
        function: str
        input: str
        args: Mapping[str, Any] = field(default_factory=dict)
        output_field: str = "output"

        def __post_init__(self):
            object.__setattr__(self, "args", _freeze(self.args))

    @dataclass(frozen=True)
    class Output:
        source: str
        format: OutputFormat = OutputFormat.TEXT
        template: str | None = None

        def __post_init__(self):
            object.__setattr__(self, "format", OutputFormat(self.format))

    Type: TypeAlias = Prompt | Variable | Conditional | Transform | Output


def kind_of(config: NodeConfig.Type) -> NodeKind:
    match config:
        case NodeConfig.Prompt():
            return NodeKind.PROMPT
        case NodeConfig.Variable():
            return NodeKind.VARIABLE
        case NodeConfig.Conditional():
            return NodeKind.CONDITIONAL
        case NodeConfig.Transform():
            return NodeKind.TRANSFORM
        case NodeConfig.Output():
            return NodeKind.OUTPUT
    raise TypeError(f"Unsupported node config: {config!r}")


def references(config: NodeConfig.Type) -> tuple[str, ...]:
    """Every scope reference a node reads, in the order it reads them."""
    match config:
        case NodeConfig.Prompt(template=template, system_template=system_template):
            names = placeholders(template)
            if system_template:
                names += tuple(n for n in placeholders(system_template) if n not in names)
            return names
        case NodeConfig.Variable():
            return ()
        case NodeConfig.Conditional(condition=condition):
            return tuple(
                operand.reference
                for operand in (condition.left, condition.right)
                if isinstance(operand, Ref)
            )
        case NodeConfig.Transform(input=input_ref):
            return (input_ref,)
        case NodeConfig.Output(source=source, template=template):
            names = (source,)
            if template:
                names += tuple(n for n in placeholders(template) if n != source)
            return names
    raise TypeError(f"Unsupported node config: {config!r}")


@dataclass(frozen=True)
class Node:
    id: str
    config: NodeConfig.Type
    label: str = ""

    @property
    def kind(self) -> NodeKind:
        return kind_of(self.config)

    def __repr__(self) -> str:
        return f"<Node {self.id} {self.kind.value}>"


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    branch: BranchLabel | None = None

    def __post_init__(self):
        if self.branch is not None:
            object.__setattr__(self, "branch", BranchLabel(self.branch))


@dataclass(frozen=True)
class FlowGraph:
    """
    Immutable graph snapshot.

    Construction never fails on structural problems (duplicate ids, dangling
    edges, cycles); those are reported by :func:`flowstudio.core.validation.validate`
    so that every problem can be shown at once.
    """

    flow_id: str
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()

    _by_id: Mapping[str, Node] = field(init=False, repr=False, compare=False)
    _inbound: Mapping[str, tuple[Edge, ...]] = field(init=False, repr=False, compare=False)
    _outbound: Mapping[str, tuple[Edge, ...]] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))

        by_id: dict[str, Node] = {}
        for node in self.nodes:
            # First definition wins; duplicates are a validation error.
            by_id.setdefault(node.id, node)

        inbound: dict[str, list[Edge]] = {node_id: [] for node_id in by_id}
        outbound: dict[str, list[Edge]] = {node_id: [] for node_id in by_id}
        for edge in self.edges:
            if edge.target in inbound:
                inbound[edge.target].append(edge)
            if edge.source in outbound:
                outbound[edge.source].append(edge)

        object.__setattr__(self, "_by_id", MappingProxyType(by_id))
        object.__setattr__(
            self, "_inbound", MappingProxyType({k: tuple(v) for k, v in inbound.items()})
        )
        object.__setattr__(
            self, "_outbound", MappingProxyType({k: tuple(v) for k, v in outbound.items()})
        )

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(self._by_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def node(self, node_id: str) -> Node:
        try:
            return self._by_id[node_id]
        except KeyError:
            raise KeyError(f"Node {node_id!r} is not part of flow {self.flow_id!r}") from None

    def inbound(self, node_id: str) -> tuple[Edge, ...]:
        return self._inbound.get(node_id, ())

    def outbound(self, node_id: str) -> tuple[Edge, ...]:
        return self._outbound.get(node_id, ())

    def predecessors(self, node_id: str) -> tuple[str, ...]:
        return tuple(dict.fromkeys(edge.source for edge in self.inbound(node_id)))

    def successors(self, node_id: str) -> tuple[str, ...]:
        return tuple(dict.fromkeys(edge.target for edge in self.outbound(node_id)))

    def entry_nodes(self) -> tuple[str, ...]:
        """Nodes with no inbound edges, in lexical id order."""
        return tuple(sorted(node_id for node_id in self._by_id if not self._inbound[node_id]))

    def ancestors(self, node_id: str) -> frozenset[str]:
        seen: set[str] = set()
        stack = list(self.predecessors(node_id))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.predecessors(current))
        return frozenset(seen)

    def descendants(self, node_id: str) -> frozenset[str]:
        seen: set[str] = set()
        stack = list(self.successors(node_id))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.successors(current))
        return frozenset(seen)

    def nodes_of_kind(self, kind: NodeKind) -> tuple[Node, ...]:
        return tuple(node for node in self._by_id.values() if node.kind is kind)

    @classmethod
    def snapshot(cls, flow_id: str, nodes: Iterable[Node], edges: Iterable[Edge]) -> "FlowGraph":
        """Copy-on-read snapshot of a (possibly still mutable) node/edge collection."""
        graph = cls(flow_id=flow_id, nodes=tuple(nodes), edges=tuple(edges))
        logger.debug(f"Snapshot of flow {flow_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
        return graph


__all__ = [
    "Ref",
    "Literal",
    "Operand",
    "ref",
    "literal",
    "Condition",
    "ModelConfig",
    "NodeConfig",
    "Node",
    "Edge",
    "FlowGraph",
    "kind_of",
    "references",
]
