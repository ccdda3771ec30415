"""
Exploratory type-checking of the GraphBuilder context.
The goal is to verify that node helpers return NodeHandles, branch accessors
return BranchRefs, and the finished builder yields a FlowGraph.
"""

from typing_extensions import assert_type

from flowstudio import ExecutionPlan, FlowGraph, GraphBuilder, NodeHandle, plan
from flowstudio.core.builder import BranchRef

with GraphBuilder("typed") as b:
    topic = b.variable("topic", required=True)
    check = b.conditional(topic, "exists")
    summary = b.prompt("Summarize {{topic}}", after=check.true)
    _ = assert_type(topic, NodeHandle)
    _ = assert_type(check.true, BranchRef)
    _ = assert_type(summary.ref(), str)
    _ = assert_type(b.output(summary), NodeHandle)

_ = assert_type(b, GraphBuilder)
_ = assert_type(b.graph, FlowGraph)
_ = assert_type(plan(b.graph), ExecutionPlan)
