"""
flowstudio: an execution engine for prompt flows.

A prompt flow is a directed graph of Prompt, Variable, Conditional, Transform
and Output nodes. flowstudio validates the graph, plans a deterministic order,
runs it against a model invoker, and can repeat the run over a batch of input
rows.

Example:
    >>> from flowstudio import BatchRunner, FlowEngine, GraphBuilder
    >>> with GraphBuilder("summaries") as b:
    ...     topic = b.variable("topic", required=True)
    ...     summary = b.prompt("Summarize {{topic}} in one line.", after=topic)
    ...     b.output(summary)
    >>> engine = FlowEngine(invoker=my_invoker)
    >>> batch = BatchRunner(engine).run_batch(b.graph, [{"topic": "owls"}, {"topic": "bats"}])
"""

from .batch import BatchRunner
from .config import EngineConfig
from .core.builder import GraphBuilder, NodeHandle
from .core.errors import (
    ConfigError,
    CycleError,
    EvaluationError,
    FlowStudioError,
    MissingVariableError,
    NodeExecutionFailure,
    ProviderError,
    ProviderTimeout,
    RebindError,
    StructuralError,
    TransformError,
    UnknownTransformError,
    UnresolvedPlaceholderError,
    UnresolvedReferenceError,
    VariableTypeError,
)
from .core.executor import ModelInvoker, ModelResponse, NodeExecutor, NodeResult
from .core.flow.engine import CancellationToken, FlowEngine, RunContext
from .core.graph import (
    Condition,
    Edge,
    FlowGraph,
    Literal,
    ModelConfig,
    Node,
    NodeConfig,
    Ref,
    literal,
    ref,
)
from .core.instrumentation import FlowInstrument, LogInstrument, PrintInstrument
from .core.planner import ExecutionPlan, find_cycles, plan
from .core.results import (
    BatchExecutionResult,
    FlowExecutionResult,
    NodeError,
    NodeExecution,
    RowOutcome,
    Usage,
)
from .core.scope import ResolveMode, VariableScope, resolve
from .core.conditions import evaluate
from .core.transforms import DEFAULT_TRANSFORMS, TransformRegistry
from .core.types import (
    MISSING,
    BranchLabel,
    ErrorKind,
    NodeKind,
    NodeStatus,
    Operator,
    OutputFormat,
    RunState,
    RunStatus,
    SkipReason,
    VariableType,
)
from .core.validation import Severity, ValidationReport, Violation, validate

__all__ = [
    "BatchRunner",
    "EngineConfig",
    "GraphBuilder",
    "NodeHandle",
    "ConfigError",
    "CycleError",
    "EvaluationError",
    "FlowStudioError",
    "MissingVariableError",
    "NodeExecutionFailure",
    "ProviderError",
    "ProviderTimeout",
    "RebindError",
    "StructuralError",
    "TransformError",
    "UnknownTransformError",
    "UnresolvedPlaceholderError",
    "UnresolvedReferenceError",
    "VariableTypeError",
    "ModelInvoker",
    "ModelResponse",
    "NodeExecutor",
    "NodeResult",
    "CancellationToken",
    "FlowEngine",
    "RunContext",
    "Condition",
    "Edge",
    "FlowGraph",
    "Literal",
    "ModelConfig",
    "Node",
    "NodeConfig",
    "Ref",
    "literal",
    "ref",
    "FlowInstrument",
    "LogInstrument",
    "PrintInstrument",
    "ExecutionPlan",
    "find_cycles",
    "plan",
    "BatchExecutionResult",
    "FlowExecutionResult",
    "NodeError",
    "NodeExecution",
    "RowOutcome",
    "Usage",
    "ResolveMode",
    "VariableScope",
    "resolve",
    "evaluate",
    "DEFAULT_TRANSFORMS",
    "TransformRegistry",
    "MISSING",
    "BranchLabel",
    "ErrorKind",
    "NodeKind",
    "NodeStatus",
    "Operator",
    "OutputFormat",
    "RunState",
    "RunStatus",
    "SkipReason",
    "VariableType",
    "Severity",
    "ValidationReport",
    "Violation",
    "validate",
]
