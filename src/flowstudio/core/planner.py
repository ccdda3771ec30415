"""
Execution planning for flow graphs.

The planner turns a FlowGraph into a deterministic topological order using
Kahn's algorithm. Nodes whose in-degree reaches zero are released through a
min-heap, so ties are always broken by lexical node id and the same graph
always produces the same plan.

Both branches of every Conditional are planned; choosing a branch is the
engine's job at run time.

When the ready queue drains before every node is placed, the graph has a
cycle. Tarjan's algorithm then locates the strongly connected components so
that :class:`~flowstudio.core.errors.CycleError` can name a concrete node.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterator
from dataclasses import dataclass

from flowstudio.core.errors import CycleError
from flowstudio.core.graph import FlowGraph

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Topologically ordered node ids for one graph.

    Attributes:
        flow_id: The flow this plan was computed for
        order: Node ids; every edge's source appears before its target
    """

    flow_id: str
    order: tuple[str, ...]

    def __iter__(self) -> Iterator[str]:
        return iter(self.order)

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.order

    def position(self, node_id: str) -> int:
        return self.order.index(node_id)


def find_cycles(graph: FlowGraph) -> list[tuple[str, ...]]:
    """
    Find every cycle in the graph.

    Returns the non-trivial strongly connected components (two or more
    members, or a single node with an edge to itself), each sorted by node id,
    in the order Tarjan's algorithm completes them.
    """
    visited: set[str] = set()
    current_scc_stack: list[str] = []
    on_stack: set[str] = set()
    id_counter = 0
    ids: dict[str, int] = {}
    low_links: dict[str, int] = {}
    all_sccs: list[tuple[str, ...]] = []

    def tarjan_dfs(v: str):
        nonlocal id_counter

        ids[v] = low_links[v] = id_counter
        id_counter += 1
        current_scc_stack.append(v)
        on_stack.add(v)
        visited.add(v)

        for successor in sorted(graph.successors(v)):
            if successor not in graph:
                continue
            if successor not in visited:
                tarjan_dfs(successor)
                low_links[v] = min(low_links[v], low_links[successor])
            elif successor in on_stack:
                low_links[v] = min(low_links[v], ids[successor])

        if low_links[v] == ids[v]:
            scc_nodes: list[str] = []
            while True:
                w = current_scc_stack.pop()
                on_stack.remove(w)
                scc_nodes.append(w)
                if w == v:
                    break

            if len(scc_nodes) > 1 or v in graph.successors(v):
                all_sccs.append(tuple(sorted(scc_nodes)))

    for node_id in sorted(graph.node_ids):
        if node_id not in visited:
            tarjan_dfs(node_id)

    return all_sccs


def plan(graph: FlowGraph) -> ExecutionPlan:
    """
    Compute the execution order of a graph.

    Args:
        graph: The graph snapshot to plan. Edges whose endpoints are not nodes
            of the graph are ignored here; validation reports them.

    Returns:
        An ExecutionPlan covering every node exactly once.

    Raises:
        CycleError: If the graph contains a cycle. ``node_id`` is the
            lexically smallest member of the first cycle found.
    """
    in_degree: dict[str, int] = {node_id: 0 for node_id in graph.node_ids}
    for edge in graph.edges:
        if edge.source in in_degree and edge.target in in_degree:
            in_degree[edge.target] += 1

    ready = [node_id for node_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        node_id = heapq.heappop(ready)
        order.append(node_id)
        for edge in graph.outbound(node_id):
            if edge.target not in in_degree:
                continue
            in_degree[edge.target] -= 1
            if in_degree[edge.target] == 0:
                heapq.heappush(ready, edge.target)

    if len(order) < len(in_degree):
        cycles = find_cycles(graph)
        if cycles:
            members = cycles[0]
        else:
            members = tuple(sorted(node_id for node_id in in_degree if node_id not in order))
        logger.debug(f"Planning {graph.flow_id} stalled after {len(order)} nodes; cycle {members}")
        raise CycleError(members[0], members)

    logger.debug(f"Plan for {graph.flow_id}: {order}")
    return ExecutionPlan(flow_id=graph.flow_id, order=tuple(order))


__all__ = ["ExecutionPlan", "plan", "find_cycles"]
