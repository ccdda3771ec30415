#!/usr/bin/env python
"""
Batch demo for flowstudio.

Runs a small summarizing flow over every row of a CSV file and prints the
outcome of each row. The model call is simulated by an echo invoker, so the
demo runs without any API key.

Usage:
  batch_demo.py <rows.csv> [--workers=<n>] [--delay=<seconds>] [--fail=<text>] [--verbose]
  batch_demo.py (-h | --help)

Options:
  -h --help          Show this screen.
  --workers=<n>      Number of rows run at the same time [default: 3].
  --delay=<seconds>  Minimum seconds between row starts [default: 0].
  --fail=<text>      Simulate a provider error for prompts containing <text>.
  --verbose          Print every run and node event.
"""

import csv
import logging
import random
import time

import docopt
from dotenv import load_dotenv
from flowstudio import (
    BatchRunner,
    EngineConfig,
    FlowEngine,
    GraphBuilder,
    ModelConfig,
    ModelResponse,
    PrintInstrument,
    ProviderError,
)
from flowstudio.core.instrumentation import FlowInstrument
from flowstudio.io.run_logging import get_run_logging_instrument

# Load FLOWSTUDIO_* settings from a .env file if there is one.
load_dotenv()

logger = logging.getLogger(__name__)


class EchoInvoker:
    """Pretends to be a model: waits a little and echoes the prompt back."""

    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on

    def invoke(self, prompt_text: str, model_config: ModelConfig, timeout: float | None) -> ModelResponse:
        started = time.perf_counter()
        time.sleep(random.uniform(0.05, 0.2))
        if self.fail_on and self.fail_on in prompt_text:
            raise ProviderError(f"simulated outage for {self.fail_on!r}", provider="echo")
        return ModelResponse(
            text=f"[{model_config.model}] {prompt_text[:60]}",
            tokens_used=len(prompt_text.split()),
            cost_estimate=0.0,
            latency_ms=(time.perf_counter() - started) * 1000,
        )


def build_graph():
    with GraphBuilder("csv-summaries") as b:
        topic = b.variable("topic", required=True)
        audience = b.variable("audience", default="a general reader")
        summary = b.prompt(
            "Summarize {{topic}} for {{audience}} in one sentence.",
            model="echo-1",
            system_template="You write short, plain summaries.",
            after=[topic, audience],
        )
        short = b.transform("truncate", summary, args={"max_length": 80, "suffix": "..."})
        b.output(short, template="{{topic}}: {{value}}")
    return b.graph


def main():
    args = docopt.docopt(__doc__)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    with open(args["<rows.csv>"], newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))

    config = EngineConfig.from_env().with_overrides(
        batch_workers=int(args["--workers"]),
        row_delay=float(args["--delay"]),
    )
    runner = BatchRunner(FlowEngine(EchoInvoker(args["--fail"]), config))

    instrument: FlowInstrument = PrintInstrument() if args["--verbose"] else FlowInstrument()
    run_log = get_run_logging_instrument()

    with instrument:
        if run_log:
            with run_log:
                result = runner.run_batch(build_graph(), rows, collection_id=args["<rows.csv>"])
        else:
            result = runner.run_batch(build_graph(), rows, collection_id=args["<rows.csv>"])

    for row in result.rows:
        if row.result is None:
            print(f"row {row.index}: error {row.error}")
        elif row.succeeded:
            print(f"row {row.index}: {row.result.output}")
        else:
            failed = ", ".join(f"{e.node_id} ({e.error.message})" for e in row.result.failed_nodes())
            print(f"row {row.index}: {row.status.value} at {failed}")

    print(
        f"{result.success_count}/{result.total_count} rows succeeded "
        f"({result.success_rate:.1f}%), {result.usage.tokens} tokens, {result.duration_ms:.0f}ms"
    )


if __name__ == "__main__":
    main()
