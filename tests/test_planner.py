"""Tests for the execution planner."""

import pytest
from flowstudio import (
    BranchLabel,
    Condition,
    CycleError,
    Edge,
    FlowGraph,
    Literal,
    Node,
    NodeConfig,
    Ref,
    find_cycles,
    plan,
    validate,
)


def _node(node_id: str) -> Node:
    return Node(node_id, NodeConfig.Variable(node_id))


def _graph(edges: list[tuple[str, str]], extra_nodes: tuple[str, ...] = ()) -> FlowGraph:
    ids = dict.fromkeys([*extra_nodes, *(n for edge in edges for n in edge)])
    return FlowGraph("g", nodes=tuple(_node(i) for i in ids), edges=tuple(Edge(s, t) for s, t in edges))


def test_linear_chain():
    execution_plan = plan(_graph([("c", "b"), ("b", "a")]))
    assert execution_plan.order == ("c", "b", "a")
    assert execution_plan.position("a") == 2


def test_ties_broken_by_node_id():
    graph = _graph([], extra_nodes=("zeta", "alpha", "mid"))
    assert plan(graph).order == ("alpha", "mid", "zeta")


def test_every_edge_points_forward():
    graph = _graph([("a", "d"), ("b", "d"), ("d", "e"), ("c", "e"), ("a", "c"), ("e", "f")])
    execution_plan = plan(graph)
    assert sorted(execution_plan.order) == sorted(graph.node_ids)
    for edge in graph.edges:
        assert execution_plan.position(edge.source) < execution_plan.position(edge.target)


def test_plan_is_deterministic():
    graph = _graph([("root", "x"), ("root", "y"), ("x", "z"), ("y", "z"), ("root", "w")])
    plans = {plan(graph).order for _ in range(10)}
    assert plans == {("root", "w", "x", "y", "z")}


def test_both_branches_are_planned():
    graph = FlowGraph(
        "branches",
        nodes=(
            _node("x"),
            Node("check", NodeConfig.Conditional(Condition(Ref("x"), "equals", Literal(1)))),
            _node("yes"),
            _node("no"),
        ),
        edges=(
            Edge("x", "check"),
            Edge("check", "yes", BranchLabel.TRUE),
            Edge("check", "no", BranchLabel.FALSE),
        ),
    )
    assert plan(graph).order == ("x", "check", "no", "yes")


def test_cycle_raises_with_smallest_member_of_first_cycle():
    graph = _graph([("a", "b"), ("b", "c"), ("c", "b"), ("d", "e"), ("e", "d")])
    with pytest.raises(CycleError) as exc_info:
        plan(graph)
    assert exc_info.value.node_id == "b"
    assert exc_info.value.members == ("b", "c")


def test_self_loop_is_a_cycle():
    graph = _graph([("a", "a")])
    assert find_cycles(graph) == [("a",)]
    with pytest.raises(CycleError) as exc_info:
        plan(graph)
    assert exc_info.value.node_id == "a"


def test_validate_reports_the_cycle_plan_raises():
    graph = _graph([("start", "q"), ("q", "p"), ("p", "q")])
    with pytest.raises(CycleError) as exc_info:
        plan(graph)
    cycles = [v for v in validate(graph).errors if v.code == "cycle"]
    assert [v.node_id for v in cycles] == [exc_info.value.node_id]


def test_find_cycles_lists_every_cycle():
    graph = _graph([("a", "b"), ("b", "a"), ("c", "d"), ("d", "e"), ("e", "c"), ("x", "y")])
    assert find_cycles(graph) == [("a", "b"), ("c", "d", "e")]


def test_empty_graph():
    execution_plan = plan(FlowGraph("empty"))
    assert execution_plan.order == ()
    assert len(execution_plan) == 0
