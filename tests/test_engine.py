"""Tests for the flow execution engine."""

import pytest
from flowstudio import (
    EngineConfig,
    ErrorKind,
    FlowEngine,
    FlowInstrument,
    GraphBuilder,
    NodeStatus,
    ProviderError,
    Ref,
    RunState,
    RunStatus,
    SkipReason,
    StructuralError,
)
from flowstudio.core.instrumentation import RunStateChangeMetadata
from typing_extensions import override


def branching_graph(operator: str = "equals"):
    with GraphBuilder("branching") as b:
        x = b.variable("x", node_id="x_var")
        check = b.conditional(Ref("x"), operator, 5, node_id="check", after=x)
        b.transform("format", "x", args={"template": "five"}, node_id="yes", after=check.true)
        b.transform("format", "x", args={"template": "other"}, node_id="no", after=check.false)
    return b.graph


class TestConditionalBranching:
    """Only the taken branch of a Conditional runs."""

    def test_true_branch(self):
        result = FlowEngine(None).run(branching_graph(), {"x": "5"})
        assert result.status is RunStatus.COMPLETED
        assert result.execution("yes").status is NodeStatus.COMPLETED
        assert result.execution("yes").output == "five"
        no = result.execution("no")
        assert no.status is NodeStatus.SKIPPED
        assert no.skip_reason is SkipReason.UNTAKEN_BRANCH

    def test_false_branch(self):
        result = FlowEngine(None).run(branching_graph(), {"x": "7"})
        assert result.status is RunStatus.COMPLETED
        assert result.execution("no").output == "other"
        assert result.execution("yes").skip_reason is SkipReason.UNTAKEN_BRANCH

    def test_evaluation_error_skips_both_branches(self):
        result = FlowEngine(None).run(branching_graph("greater_than"), {"x": "abc"})
        assert result.status is RunStatus.FAILED
        check = result.execution("check")
        assert check.status is NodeStatus.FAILED
        assert check.error.kind is ErrorKind.EVALUATION
        for node_id in ("yes", "no"):
            assert result.execution(node_id).skip_reason is SkipReason.UPSTREAM_FAILURE

    def test_missing_input_fails_the_condition(self):
        result = FlowEngine(None).run(branching_graph(), {})
        assert result.status is RunStatus.FAILED
        assert result.execution("x_var").status is NodeStatus.COMPLETED
        check = result.execution("check")
        assert check.status is NodeStatus.FAILED
        assert check.error.kind is ErrorKind.EVALUATION
        for node_id in ("yes", "no"):
            record = result.execution(node_id)
            assert record.status is NodeStatus.SKIPPED
            assert record.skip_reason is SkipReason.UPSTREAM_FAILURE

    def test_exists_is_false_for_an_absent_optional_variable(self):
        with GraphBuilder("presence") as b:
            nickname = b.variable("nickname", node_id="nickname_var")
            check = b.conditional(Ref("nickname"), "exists", node_id="check", after=nickname)
            b.output("nickname", node_id="greeting", after=check.true)
            b.output("nickname_var.output", node_id="anonymous", after=check.false)

        absent = FlowEngine(None).run(b.graph, {})
        assert absent.status is RunStatus.COMPLETED
        assert absent.execution("check").output is False
        assert absent.outputs == {"anonymous": None}
        assert absent.execution("greeting").skip_reason is SkipReason.UNTAKEN_BRANCH

        present = FlowEngine(None).run(b.graph, {"nickname": "Ada"})
        assert present.execution("check").output is True
        assert present.outputs == {"greeting": "Ada"}

    def test_branches_can_merge(self):
        with GraphBuilder("merge") as b:
            x = b.variable("x")
            check = b.conditional(x, "greater_than", 10, node_id="check")
            big = b.transform("format", x, args={"template": "big {{value}}"}, after=check.true, node_id="big")
            small = b.transform("format", x, args={"template": "small {{value}}"}, after=check.false, node_id="small")
            b.transform("upper", "x", after=[big, small], node_id="merged")
            b.output("merged", node_id="out")
            b.connect("merged", "out")

        result = FlowEngine(None).run(b.graph, {"x": "3"})
        assert result.status is RunStatus.COMPLETED
        assert result.execution("small").output == "small 3"
        assert result.execution("merged").status is NodeStatus.COMPLETED
        assert result.output == "3"


class TestPrompts:
    """Prompt rendering, failures and usage."""

    def test_placeholder_rendering(self, invoker):
        with GraphBuilder("hello") as b:
            name = b.variable("name", required=True)
            greet = b.prompt("Hello {{name}}", after=name, node_id="greet")
            b.output(greet, node_id="out")

        result = FlowEngine(invoker).run(b.graph, {"name": "Ada"})
        assert invoker.prompts == ["Hello Ada"]
        assert result.status is RunStatus.COMPLETED
        assert result.output == "echo: Hello Ada"
        assert result.outputs == {"out": "echo: Hello Ada"}
        assert result.execution("greet").inputs == {"name": "Ada"}

    def test_unresolved_placeholder_fails_node_and_skips_dependents(self, invoker):
        with GraphBuilder("broken") as b:
            greet = b.prompt("Hello {{who}} from {{where}}", node_id="greet")
            b.output(greet, node_id="out")

        result = FlowEngine(invoker).run(b.graph, {})
        assert result.status is RunStatus.FAILED
        greet_record = result.execution("greet")
        assert greet_record.error.kind is ErrorKind.UNRESOLVED_PLACEHOLDER
        assert "'who'" in greet_record.error.message and "'where'" in greet_record.error.message
        assert result.execution("out").skip_reason is SkipReason.UPSTREAM_FAILURE
        assert result.outputs == {}
        assert invoker.calls == []

    def test_usage_is_aggregated(self, make_invoker):
        invoker = make_invoker(tokens=7, cost=0.5)
        with GraphBuilder("two") as b:
            first = b.prompt("one")
            second = b.prompt("two after {{prompt_1.output}}", after=first)
            b.output(second)

        result = FlowEngine(invoker).run(b.graph)
        assert result.usage.tokens == 14
        assert result.usage.cost == pytest.approx(1.0)
        assert result.usage.calls == 2
        assert invoker.prompts[1] == "two after echo: one"

    def test_continue_on_error_reports_partial_failure(self, make_invoker):
        invoker = make_invoker(failures={"fail": ProviderError("down")})
        with GraphBuilder("partial") as b:
            topic = b.variable("topic", default="owls")
            bad = b.prompt("fail on {{topic}}", after=topic)
            good = b.prompt("describe {{topic}}", after=topic)
            b.output(bad, node_id="bad_out")
            b.output(good, node_id="good_out")

        strict = FlowEngine(invoker).run(b.graph)
        assert strict.status is RunStatus.FAILED

        lenient = FlowEngine(invoker, EngineConfig(continue_on_error=True)).run(b.graph)
        assert lenient.status is RunStatus.PARTIALLY_FAILED
        assert lenient.outputs == {"good_out": "echo: describe owls"}
        assert lenient.execution("bad_out").skip_reason is SkipReason.UPSTREAM_FAILURE


    def test_unbalanced_braces_in_prompt_text_still_run(self, invoker):
        with GraphBuilder("code-review") as b:
            snippet = b.variable("snippet", required=True)
            review = b.prompt("Fix this code: if (x) { {{snippet}}", after=snippet, node_id="review")
            b.output(review, node_id="out")

        execution_plan = FlowEngine(invoker).prepare(b.graph)
        assert list(execution_plan) == ["variable_1", "review", "out"]
        result = FlowEngine(invoker).run(b.graph, {"snippet": "return 1;"})
        assert result.status is RunStatus.COMPLETED
        assert invoker.prompts == ["Fix this code: if (x) { return 1;"]


class TestRunBehaviour:
    """Run-level guarantees."""

    def test_structural_error_is_raised_before_any_node(self, invoker):
        with GraphBuilder("cyclic") as b:
            a = b.prompt("a", node_id="a")
            c = b.prompt("c", node_id="c", after=a)
            b.connect(c, a)

        with pytest.raises(StructuralError):
            FlowEngine(invoker).run(b.graph)
        assert invoker.calls == []

    def test_repeated_runs_are_independent(self, invoker):
        graph = branching_graph()
        engine = FlowEngine(invoker)
        first = engine.run(graph, {"x": "5"})
        second = engine.run(graph, {"x": "5"})
        assert first.run_id != second.run_id
        assert first.statuses() == second.statuses()
        assert first.execution("yes").output == second.execution("yes").output

    def test_defaults_layers(self):
        with GraphBuilder("defaults") as b:
            lang = b.variable("lang", default="en", node_id="lang")
            region = b.variable("region", node_id="region")
            b.output(lang, node_id="out_lang")
            b.output(region, node_id="out_region")

        engine = FlowEngine(None)
        assert engine.run(b.graph).outputs == {"out_lang": "en", "out_region": None}
        result = engine.run(b.graph, {"lang": "fr"}, defaults={"region": "EU"})
        assert result.outputs == {"out_lang": "fr", "out_region": "EU"}

    def test_run_timeout_skips_remaining_nodes(self, make_invoker):
        invoker = make_invoker(delay=0.2)
        with GraphBuilder("slow") as b:
            first = b.prompt("first", node_id="first")
            second = b.prompt("second", node_id="second", after=first)
            b.output(second, node_id="out")

        result = FlowEngine(invoker, EngineConfig(run_timeout=0.05)).run(b.graph)
        assert result.status is RunStatus.FAILED
        assert result.execution("first").status is NodeStatus.COMPLETED
        assert result.execution("second").skip_reason is SkipReason.RUN_TIMEOUT
        assert result.execution("out").skip_reason is SkipReason.RUN_TIMEOUT
        assert invoker.prompts == ["first"]

    def test_output_node_keeps_structured_values(self):
        with GraphBuilder("extract") as b:
            payload = b.variable("payload", required=True)
            data = b.transform("json_extract", payload, args={"path": "data"})
            b.output(data, node_id="out")
            b.output(data, format="json", node_id="pretty")

        result = FlowEngine(None).run(b.graph, {"payload": '{"data": {"n": 42}}'})
        assert result.outputs["out"] == {"n": 42}
        assert result.outputs["pretty"] == '{\n  "n": 42\n}'
        assert result.execution("out").outputs["text"] == '{"n": 42}'

    def test_result_without_output_node_uses_last_completed(self):
        with GraphBuilder("no-output") as b:
            text = b.variable("text")
            b.transform("upper", text)

        result = FlowEngine(None).run(b.graph, {"text": "owls"})
        assert result.output == "OWLS"
        assert result.outputs == {}

    def test_executions_follow_plan_order(self):
        result = FlowEngine(None).run(branching_graph(), {"x": "5"})
        assert [e.node_id for e in result.executions] == ["x_var", "check", "no", "yes"]
        assert all(e.status.is_terminal for e in result.executions)
        assert result.duration_ms is not None

    def test_state_transitions(self):
        class StateRecorder(FlowInstrument):
            def __init__(self):
                self.transitions: list[tuple[RunState, RunState]] = []

            @override
            def on_run_state_change(self, metadata: RunStateChangeMetadata) -> None:
                self.transitions.append((metadata.old_state, metadata.new_state))

        with StateRecorder() as recorder:
            FlowEngine(None).run(branching_graph(), {"x": "5"})
        assert recorder.transitions == [
            (RunState.INITIALIZED, RunState.PLANNING),
            (RunState.PLANNING, RunState.EXECUTING),
            (RunState.EXECUTING, RunState.COMPLETED),
        ]

    def test_rejected_run_ends_in_failed_state(self):
        class StateRecorder(FlowInstrument):
            def __init__(self):
                self.states: list[RunState] = []

            @override
            def on_run_state_change(self, metadata: RunStateChangeMetadata) -> None:
                self.states.append(metadata.new_state)

        with GraphBuilder("half") as b:
            x = b.variable("x")
            check = b.conditional(x, "exists")
            b.output(x, after=check.true)

        with StateRecorder() as recorder:
            with pytest.raises(StructuralError):
                FlowEngine(None).run(b.graph)
        assert recorder.states == [RunState.PLANNING, RunState.FAILED]
