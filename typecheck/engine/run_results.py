"""
Type-checking of engine and batch runner results.
"""

from typing import Any

from typing_extensions import assert_type

from flowstudio import (
    BatchExecutionResult,
    BatchRunner,
    FlowEngine,
    FlowExecutionResult,
    GraphBuilder,
    NodeExecution,
    NodeResult,
    RowOutcome,
    RunStatus,
    Usage,
)

with GraphBuilder("typed") as b:
    b.output(b.variable("x"))

engine = FlowEngine(None)
result = engine.run(b.graph, {"x": 1})
_ = assert_type(result, FlowExecutionResult)
_ = assert_type(result.status, RunStatus)
_ = assert_type(result.output, Any)
_ = assert_type(result.execution("x"), NodeExecution)
_ = assert_type(result.usage, Usage)

batch = BatchRunner(engine).run_batch(b.graph, [{"x": 1}, {"x": 2}])
_ = assert_type(batch, BatchExecutionResult)
_ = assert_type(batch.rows[0], RowOutcome)
_ = assert_type(batch.success_rate, float)

completed = NodeResult.Completed({"output": 1})
_ = assert_type(completed.output, Any)
