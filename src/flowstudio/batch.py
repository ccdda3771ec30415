"""
Batch Runner: one graph, many input rows.

The graph is validated and planned once, before any row starts; structural
errors are raised to the caller. Rows then run on a fixed-size thread pool,
each with its own :class:`~flowstudio.core.flow.engine.RunContext` and scope.
Results are written into a pre-sized list by row index, so the returned
:class:`~flowstudio.core.results.BatchExecutionResult` lists rows in input
order whatever order they finished in.

A failing row never stops the others. Cancellation is checked between rows:
rows that start after the token is cancelled come back fully skipped with
reason ``cancelled``.

Example:
    >>> runner = BatchRunner(FlowEngine(invoker=my_invoker))
    >>> result = runner.run_batch(graph, [{"topic": "owls"}, {"topic": "bats"}])
    >>> result.success_rate
    100.0
"""

from __future__ import annotations

import contextvars
import logging
import threading
import time
import uuid
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from flowstudio.core.flow.engine import CancellationToken, FlowEngine
from flowstudio.core.graph import FlowGraph
from flowstudio.core.instrumentation import (
    BatchProgressMetadata,
    BatchStartMetadata,
    FlowInstrument,
    get_current_flow_instrument,
)
from flowstudio.core.planner import ExecutionPlan
from flowstudio.core.results import BatchExecutionResult, RowOutcome

logger = logging.getLogger(__name__)


class RowRateLimiter:
    """
    Spaces out row starts by at least ``delay`` seconds.

    Waiting is interrupted as soon as the cancellation token fires.
    """

    def __init__(self, delay: float, cancel_token: CancellationToken):
        self.delay = delay
        self.cancel_token = cancel_token
        self._lock = threading.Lock()
        self._next_start = 0.0

    def wait(self) -> None:
        if self.delay <= 0:
            return
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next_start)
            self._next_start = start + self.delay
        if start > now:
            self.cancel_token.wait(start - now)


class _Progress:
    def __init__(self, batch_id: str, total: int, instrument: FlowInstrument):
        self.batch_id = batch_id
        self.total = total
        self.instrument = instrument
        self.completed = 0
        self.succeeded = 0
        self.failed = 0
        self._lock = threading.Lock()

    def row_finished(self, outcome: RowOutcome) -> None:
        with self._lock:
            self.completed += 1
            if outcome.succeeded:
                self.succeeded += 1
            else:
                self.failed += 1
            self.instrument.on_batch_progress(
                BatchProgressMetadata(
                    batch_id=self.batch_id,
                    row_index=outcome.index,
                    completed=self.completed,
                    total=self.total,
                    succeeded=self.succeeded,
                    failed=self.failed,
                )
            )


class BatchRunner:
    """
    Runs a graph across rows with bounded concurrency.

    Worker count and row spacing come from the engine's
    :class:`~flowstudio.config.EngineConfig` (``batch_workers``, ``row_delay``).
    """

    def __init__(self, engine: FlowEngine):
        self.engine = engine

    @property
    def workers(self) -> int:
        return self.engine.config.batch_workers

    def run_batch(
        self,
        graph: FlowGraph,
        rows: Iterable[Mapping[str, Any]],
        *,
        collection_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        batch_id: str | None = None,
        defaults: Mapping[str, Any] | None = None,
    ) -> BatchExecutionResult:
        """
        Run ``graph`` once per row.

        Args:
            graph: The snapshot to run
            rows: Ordered input rows; each becomes the input layer of one run
            collection_id: Id of the variable collection the rows came from
            cancel_token: Stops rows that have not started yet
            batch_id: Identifier for the batch; generated when omitted
            defaults: Extra defaults shared by every row

        Returns:
            One RowOutcome per row, in input order.

        Raises:
            StructuralError: If the graph is malformed; no row has run
        """
        rows = list(rows)
        batch_id = batch_id or uuid.uuid4().hex
        cancel_token = cancel_token or CancellationToken()
        execution_plan = self.engine.prepare(graph)

        instrument = get_current_flow_instrument()
        workers = max(1, min(self.workers, len(rows)))
        instrument.on_batch_start(
            BatchStartMetadata(batch_id, graph.flow_id, len(rows), workers, collection_id)
        )
        logger.info(
            f"Batch {batch_id} of {graph.flow_id}: {len(rows)} rows on {workers} workers",
            extra={"tag": "batch"},
        )

        started_at = datetime.now(timezone.utc)
        outcomes: list[RowOutcome | None] = [None] * len(rows)
        progress = _Progress(batch_id, len(rows), instrument)
        limiter = RowRateLimiter(self.engine.config.row_delay, cancel_token)

        def run_row(index: int, row: Mapping[str, Any]) -> None:
            if not cancel_token.cancelled:
                limiter.wait()
            outcome = self._run_row(graph, execution_plan, batch_id, index, row, cancel_token, defaults)
            outcomes[index] = outcome
            progress.row_finished(outcome)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"flowstudio-{batch_id[:8]}") as pool:
            futures = [
                pool.submit(contextvars.copy_context().run, run_row, index, row)
                for index, row in enumerate(rows)
            ]
            for future in futures:
                future.result()

        result = BatchExecutionResult(
            batch_id=batch_id,
            flow_id=graph.flow_id,
            rows=tuple(outcome for outcome in outcomes if outcome is not None),
            collection_id=collection_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        logger.info(
            f"Batch {batch_id} finished: {result.success_count}/{result.total_count} rows succeeded",
            extra={"tag": "batch"},
        )
        instrument.on_batch_end(result)
        return result

    def _run_row(
        self,
        graph: FlowGraph,
        execution_plan: ExecutionPlan,
        batch_id: str,
        index: int,
        row: Mapping[str, Any],
        cancel_token: CancellationToken,
        defaults: Mapping[str, Any] | None,
    ) -> RowOutcome:
        try:
            result = self.engine.run(
                graph,
                row,
                cancel_token=cancel_token,
                run_id=f"{batch_id}-{index}",
                defaults=defaults,
                execution_plan=execution_plan,
            )
        except Exception as e:
            logger.exception(f"Row {index} of batch {batch_id} raised")
            return RowOutcome(index=index, inputs=row, error=f"{type(e).__name__}: {e}")
        return RowOutcome(index=index, inputs=row, result=result)


__all__ = ["BatchRunner", "RowRateLimiter"]
