"""
Structural validation of flow graphs.

:func:`validate` never raises on a malformed graph. It collects every
violation into a :class:`ValidationReport` so that all problems can be shown
at once; callers that want an exception use
:meth:`ValidationReport.raise_for_errors`.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from flowstudio.core.errors import StructuralError
from flowstudio.core.graph import FlowGraph, NodeConfig, references
from flowstudio.core.planner import find_cycles
from flowstudio.core.templates import lint_template
from flowstudio.core.transforms import TransformRegistry
from flowstudio.core.types import BranchLabel, NodeKind

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class Violation:
    code: str
    message: str
    node_id: str | None = None
    severity: Severity = Severity.ERROR

    def __str__(self) -> str:
        where = f" [{self.node_id}]" if self.node_id is not None else ""
        return f"{self.severity.value}: {self.code}{where}: {self.message}"


@dataclass(frozen=True)
class ValidationReport:
    flow_id: str
    violations: tuple[Violation, ...] = field(default_factory=tuple)

    @property
    def errors(self) -> tuple[Violation, ...]:
        return tuple(v for v in self.violations if v.severity is Severity.ERROR)

    @property
    def warnings(self) -> tuple[Violation, ...]:
        return tuple(v for v in self.violations if v.severity is Severity.WARNING)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> set[str]:
        return {v.code for v in self.violations}

    def for_node(self, node_id: str) -> tuple[Violation, ...]:
        return tuple(v for v in self.violations if v.node_id == node_id)

    def raise_for_errors(self) -> None:
        """
        Raise if the report contains errors.

        Raises:
            StructuralError: Carrying this report; its message lists every error.
        """
        if self.is_valid:
            return
        details = "; ".join(str(v) for v in self.errors)
        raise StructuralError(f"Flow {self.flow_id!r} is not valid: {details}", report=self)


def _check_ids(graph: FlowGraph) -> Iterable[Violation]:
    counts = Counter(node.id for node in graph.nodes)
    for node_id, count in sorted(counts.items()):
        if count > 1:
            yield Violation("duplicate_node_id", f"Node id {node_id!r} is used {count} times", node_id)


def _check_edges(graph: FlowGraph) -> Iterable[Violation]:
    for edge in graph.edges:
        for end, node_id in (("source", edge.source), ("target", edge.target)):
            if node_id not in graph:
                yield Violation(
                    "dangling_edge",
                    f"Edge {edge.source} -> {edge.target} has unknown {end} {node_id!r}",
                    edge.source if end == "target" else edge.target,
                )


def _check_branches(graph: FlowGraph) -> Iterable[Violation]:
    for node in graph.nodes:
        outbound = graph.outbound(node.id)
        labels = Counter(edge.branch for edge in outbound)

        if node.kind is not NodeKind.CONDITIONAL:
            for label in (BranchLabel.TRUE, BranchLabel.FALSE):
                if labels[label]:
                    yield Violation(
                        "invalid_branch",
                        f"Only Conditional nodes may have {label.value!r} edges",
                        node.id,
                    )
            continue

        for label in (BranchLabel.TRUE, BranchLabel.FALSE):
            if labels[label] == 0:
                yield Violation("missing_branch", f"Conditional has no {label.value!r} edge", node.id)
            elif labels[label] > 1:
                yield Violation(
                    "duplicate_branch",
                    f"Conditional has {labels[label]} {label.value!r} edges",
                    node.id,
                )


def _check_reachability(graph: FlowGraph) -> Iterable[Violation]:
    if not graph.nodes:
        return
    entries = graph.entry_nodes()
    if not entries:
        yield Violation("no_entry_node", "Every node has an inbound edge; nothing can start the run")
        return

    reachable = set(entries)
    for entry in entries:
        reachable |= graph.descendants(entry)
    for node_id in graph.node_ids:
        if node_id not in reachable:
            yield Violation("unreachable_node", "No path leads here from an entry node", node_id)

    if len(graph) > 1:
        for node_id in entries:
            if not graph.outbound(node_id):
                yield Violation(
                    "isolated_node",
                    "Node has no edges and does not take part in the flow",
                    node_id,
                    Severity.WARNING,
                )


def _check_cycles(graph: FlowGraph) -> Iterable[Violation]:
    for members in find_cycles(graph):
        yield Violation("cycle", f"Cycle through {', '.join(members)}", members[0])


def _check_variables(graph: FlowGraph) -> Iterable[Violation]:
    declared: dict[str, list[str]] = {}
    for node in graph.nodes_of_kind(NodeKind.VARIABLE):
        assert isinstance(node.config, NodeConfig.Variable)
        declared.setdefault(node.config.name, []).append(node.id)
    for name, node_ids in sorted(declared.items()):
        if len(node_ids) > 1:
            for node_id in node_ids[1:]:
                yield Violation(
                    "duplicate_variable",
                    f"Variable {name!r} is already declared by {node_ids[0]!r}",
                    node_id,
                )
        for node_id in node_ids:
            if name in graph and name != node_id:
                yield Violation(
                    "shadowed_variable",
                    f"Variable {name!r} has the same name as node {name!r}; bare references to it read that node",
                    node_id,
                    Severity.WARNING,
                )


def _check_references(graph: FlowGraph) -> Iterable[Violation]:
    for node in graph.nodes:
        ancestors = graph.ancestors(node.id)
        for reference in references(node.config):
            head = reference.strip().split(".", 1)[0]
            if head not in graph or head in ancestors:
                continue
            yield Violation(
                "forward_reference",
                f"Reference {reference!r} reads node {head!r}, which does not run before this node",
                node.id,
            )


def _templates_of(config: NodeConfig.Type) -> tuple[str, ...]:
    match config:
        case NodeConfig.Prompt(template=template, system_template=system_template):
            return tuple(t for t in (template, system_template) if t)
        case NodeConfig.Output(template=template):
            return (template,) if template else ()
    return ()


def _check_templates(graph: FlowGraph) -> Iterable[Violation]:
    for node in graph.nodes:
        for template in _templates_of(node.config):
            for issue in lint_template(template):
                yield Violation(
                    "template_syntax",
                    issue.message,
                    node.id,
                    Severity.ERROR if issue.is_error else Severity.WARNING,
                )


def _check_transforms(graph: FlowGraph, transforms: TransformRegistry) -> Iterable[Violation]:
    for node in graph.nodes_of_kind(NodeKind.TRANSFORM):
        assert isinstance(node.config, NodeConfig.Transform)
        if node.config.function not in transforms:
            yield Violation(
                "unknown_transform",
                f"No transform named {node.config.function!r} is registered",
                node.id,
                Severity.WARNING,
            )


def validate(graph: FlowGraph, transforms: TransformRegistry | None = None) -> ValidationReport:
    """
    Check a graph's structural invariants.

    Args:
        graph: The graph snapshot to check
        transforms: When given, Transform nodes naming unregistered functions
            are reported as warnings

    Returns:
        A report listing every violation found; empty when the graph is valid.
    """
    violations: list[Violation] = []
    violations.extend(_check_ids(graph))
    violations.extend(_check_edges(graph))
    violations.extend(_check_branches(graph))
    violations.extend(_check_reachability(graph))
    violations.extend(_check_cycles(graph))
    violations.extend(_check_variables(graph))
    violations.extend(_check_references(graph))
    violations.extend(_check_templates(graph))
    if transforms is not None:
        violations.extend(_check_transforms(graph, transforms))
    if graph.nodes and not graph.nodes_of_kind(NodeKind.OUTPUT):
        violations.append(
            Violation("no_output_node", "Flow has no Output node", severity=Severity.WARNING)
        )

    report = ValidationReport(flow_id=graph.flow_id, violations=tuple(violations))
    if not report.is_valid:
        logger.debug(f"Flow {graph.flow_id} has {len(report.errors)} validation error(s)")
    return report


__all__ = ["Severity", "Violation", "ValidationReport", "validate"]
