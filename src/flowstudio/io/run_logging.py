"""
Run logging for auditing flow executions.

Provides RunLoggingInstrument, which plugs into flowstudio's instrumentation
system and writes one ``key=value`` line per run, node and batch event. It is
meant for tracing unattended batch jobs after the fact:

- which rows failed, and at which node
- which nodes were skipped and why
- how many tokens each run used, and how long it took

Usage:
    Set FLOWSTUDIO_RUN_LOG environment variable to a file path to enable logging:

        export FLOWSTUDIO_RUN_LOG=/tmp/flowstudio-runs.log

    Then use the instrument:

        from flowstudio.io.run_logging import get_run_logging_instrument

        instrument = get_run_logging_instrument()
        if instrument:
            with instrument:
                # runs and batches will be logged
                ...
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from time import monotonic
from typing import TYPE_CHECKING

from typing_extensions import override

from flowstudio.core.instrumentation import (
    BatchProgressMetadata,
    BatchStartMetadata,
    FlowInstrument,
    RunStartMetadata,
    RunStateChangeMetadata,
)
from flowstudio.core.types import NodeStatus

if TYPE_CHECKING:
    from flowstudio.core.results import BatchExecutionResult, FlowExecutionResult, NodeExecution

RUN_LOG_ENV = "FLOWSTUDIO_RUN_LOG"
RUN_LOGGER_NAME = "flowstudio.run_log"


@dataclass
class RunStats:
    """Counters for a single run."""

    run_id: str
    flow_id: str
    start_time: float = field(default_factory=monotonic)
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    tokens: int = 0


class RunLoggingInstrument(FlowInstrument):
    """
    Instrument that logs run, node and batch events.

    Log format:
        [timestamp] [run_id] EVENT key=value ...

    Example:
        [2026-01-08T10:58:26.548] [b41f-0] RUN_START flow=summarize nodes=4
        [2026-01-08T10:58:26.549] [b41f-0] NODE id=prompt_1 status=failed error=provider
        [2026-01-08T10:58:26.550] [b41f-0] NODE id=out status=skipped reason="upstream failure"
        [2026-01-08T10:58:26.551] [b41f-0] RUN_END status=failed completed=2 failed=1 skipped=1 tokens=0
    """

    def __init__(self, logger: logging.Logger | None = None):
        """
        Initialize the run logging instrument.

        Args:
            logger: Logger to use. If None, creates one named "flowstudio.run_log"
                with propagate=False to avoid duplicating logs to parent handlers.
        """
        if logger is None:
            logger = logging.getLogger(RUN_LOGGER_NAME)
            logger.propagate = False
        self._logger = logger
        self._runs: dict[str, RunStats] = {}
        self._lock = threading.Lock()

    def _log(self, scope_id: str, event: str, **kwargs: object) -> None:
        """Log an event with structured key=value pairs."""
        parts = [f"{k}={v}" if " " not in str(v) else f'{k}="{v}"' for k, v in kwargs.items()]
        self._logger.info(f"[{scope_id}] {event} {' '.join(parts)}".rstrip())

    def get_run_stats(self, run_id: str) -> RunStats | None:
        with self._lock:
            return self._runs.get(run_id)

    @override
    def on_run_start(self, metadata: RunStartMetadata) -> None:
        with self._lock:
            self._runs[metadata.run_id] = RunStats(metadata.run_id, metadata.flow_id)
        self._log(metadata.run_id, "RUN_START", flow=metadata.flow_id, nodes=metadata.node_count)

    @override
    def on_run_state_change(self, metadata: RunStateChangeMetadata) -> None:
        self._log(
            metadata.run_id,
            "STATE",
            old=metadata.old_state.value,
            new=metadata.new_state.value,
        )

    @override
    def on_node_finished(self, run_id: str, execution: "NodeExecution") -> None:
        with self._lock:
            stats = self._runs.get(run_id)
            if stats is not None:
                match execution.status:
                    case NodeStatus.COMPLETED:
                        stats.completed += 1
                    case NodeStatus.FAILED:
                        stats.failed += 1
                    case NodeStatus.SKIPPED:
                        stats.skipped += 1
                if execution.usage is not None:
                    stats.tokens += execution.usage.tokens

        details: dict[str, object] = {"id": execution.node_id, "kind": execution.kind.value, "status": execution.status.value}
        if execution.error is not None:
            details["error"] = execution.error.kind.value
            details["message"] = execution.error.message
        if execution.skip_reason is not None:
            details["reason"] = execution.skip_reason.value
        if execution.duration_ms is not None and execution.status is not NodeStatus.SKIPPED:
            details["duration_ms"] = f"{execution.duration_ms:.1f}"
        self._log(run_id, "NODE", **details)

    @override
    def on_run_end(self, result: "FlowExecutionResult") -> None:
        with self._lock:
            stats = self._runs.pop(result.run_id, None)
        if stats is None:
            return
        elapsed_ms = (monotonic() - stats.start_time) * 1000
        self._log(
            result.run_id,
            "RUN_END",
            status=result.status.value,
            completed=stats.completed,
            failed=stats.failed,
            skipped=stats.skipped,
            tokens=stats.tokens,
            elapsed_ms=f"{elapsed_ms:.1f}",
        )

    @override
    def on_batch_start(self, metadata: BatchStartMetadata) -> None:
        self._log(
            metadata.batch_id,
            "BATCH_START",
            flow=metadata.flow_id,
            rows=metadata.total,
            workers=metadata.workers,
            collection=metadata.collection_id or "none",
        )

    @override
    def on_batch_progress(self, metadata: BatchProgressMetadata) -> None:
        self._log(
            metadata.batch_id,
            "BATCH_PROGRESS",
            row=metadata.row_index,
            done=f"{metadata.completed}/{metadata.total}",
            failed=metadata.failed,
        )

    @override
    def on_batch_end(self, result: "BatchExecutionResult") -> None:
        self._log(
            result.batch_id,
            "BATCH_END",
            succeeded=result.success_count,
            failed=result.failure_count,
            success_rate=f"{result.success_rate:.1f}",
            tokens=result.usage.tokens,
        )


def configure_file_logger(log_path: str) -> logging.Logger:
    """
    Configure a file logger for run events.

    Args:
        log_path: Path to the log file.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(RUN_LOGGER_NAME)
    logger.setLevel(logging.INFO)

    # Avoid adding duplicate handlers
    if not logger.handlers:
        handler = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        formatter = logging.Formatter(
            "[%(asctime)s.%(msecs)03d] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_run_logging_instrument(environ: Mapping[str, str] | None = None) -> RunLoggingInstrument | None:
    """
    Get a run logging instrument if enabled via environment variable.

    Set FLOWSTUDIO_RUN_LOG to a file path to enable run logging.

    Returns:
        RunLoggingInstrument if FLOWSTUDIO_RUN_LOG is set, None otherwise.
    """
    log_path = (os.environ if environ is None else environ).get(RUN_LOG_ENV)
    if log_path:
        logger = configure_file_logger(log_path)
        logger.propagate = False
        return RunLoggingInstrument(logger)
    return None


__all__ = [
    "RunStats",
    "RunLoggingInstrument",
    "configure_file_logger",
    "get_run_logging_instrument",
]
