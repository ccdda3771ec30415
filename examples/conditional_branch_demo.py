#!/usr/bin/env python
"""
Conditional branching with flowstudio.

A score is checked against a threshold; only the matching branch runs and the
other one is reported as skipped, along with its Output node.

Usage:
  conditional_branch_demo.py [--score=<n>] [--threshold=<n>]

Options:
  --score=<n>      Score to classify [default: 72].
  --threshold=<n>  Passing threshold [default: 60].
"""

import logging

import docopt
from dotenv import load_dotenv
from flowstudio import FlowEngine, GraphBuilder, ModelResponse, PrintInstrument, VariableType

load_dotenv()

logging.basicConfig(level=logging.INFO)


class EchoInvoker:
    def invoke(self, prompt_text, model_config, timeout):
        return ModelResponse(prompt_text.upper(), tokens_used=len(prompt_text.split()))


def build_graph():
    with GraphBuilder("grading") as b:
        score = b.variable("score", VariableType.NUMBER, required=True)
        threshold = b.variable("threshold", VariableType.NUMBER, default=60)
        passed = b.conditional(score, "greater_than", threshold, node_id="passed")
        praise = b.prompt("Congratulate a student who scored {{score}}.", after=passed.true, node_id="praise")
        advice = b.prompt("Encourage a student who scored {{score}} to retry.", after=passed.false, node_id="advice")
        b.output(praise, node_id="praise_message")
        b.output(advice, node_id="advice_message")
    return b.graph


def main():
    args = docopt.docopt(__doc__)
    engine = FlowEngine(EchoInvoker())

    with PrintInstrument():
        result = engine.run(build_graph(), {"score": args["--score"], "threshold": args["--threshold"]})

    for execution in result.executions:
        reason = f" ({execution.skip_reason.value})" if execution.skip_reason else ""
        print(f"{execution.node_id:12} {execution.status.value}{reason}")
    print(f"status: {result.status.value}")
    print(f"output: {result.output}")


if __name__ == "__main__":
    main()
