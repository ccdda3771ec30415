from .engine import CancellationToken, FlowEngine, RunContext

__all__ = [
    "CancellationToken",
    "FlowEngine",
    "RunContext",
]
