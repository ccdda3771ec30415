"""Tests for run cancellation."""

from flowstudio import (
    CancellationToken,
    FlowEngine,
    GraphBuilder,
    ModelResponse,
    NodeStatus,
    RunStatus,
    SkipReason,
)


class CancellingInvoker:
    """Cancels the token while the first prompt is running."""

    def __init__(self, token: CancellationToken):
        self.token = token
        self.prompts: list[str] = []

    def invoke(self, prompt_text, model_config, timeout):
        self.prompts.append(prompt_text)
        self.token.cancel("user pressed stop")
        return ModelResponse(f"done: {prompt_text}")


def chain():
    with GraphBuilder("chain") as b:
        first = b.prompt("first", node_id="first")
        second = b.prompt("second", node_id="second", after=first)
        b.output(second, node_id="out")
    return b.graph


def test_cancellation_keeps_finished_nodes():
    token = CancellationToken()
    invoker = CancellingInvoker(token)

    result = FlowEngine(invoker).run(chain(), cancel_token=token)

    assert result.status is RunStatus.CANCELLED
    first = result.execution("first")
    assert first.status is NodeStatus.COMPLETED
    assert first.output == "done: first"
    for node_id in ("second", "out"):
        record = result.execution(node_id)
        assert record.status is NodeStatus.SKIPPED
        assert record.skip_reason is SkipReason.CANCELLED
    assert invoker.prompts == ["first"]


def test_cancelled_before_start_skips_everything():
    token = CancellationToken()
    token.cancel()
    invoker = CancellingInvoker(token)

    result = FlowEngine(invoker).run(chain(), cancel_token=token)

    assert result.status is RunStatus.CANCELLED
    assert {e.skip_reason for e in result.executions} == {SkipReason.CANCELLED}
    assert invoker.prompts == []


def test_cancel_after_last_node_does_not_change_status():
    token = CancellationToken()
    with GraphBuilder("single") as b:
        b.prompt("only", node_id="only")

    result = FlowEngine(CancellingInvoker(token)).run(b.graph, cancel_token=token)
    assert result.status is RunStatus.COMPLETED


def test_token_basics():
    token = CancellationToken()
    assert not token.cancelled
    assert token.wait(0.01) is False
    token.cancel("first")
    token.cancel("second")
    assert token.cancelled
    assert token.reason == "first"
    assert token.wait() is True
