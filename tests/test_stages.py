import json
from dataclasses import replace

import pytest

from text2rule.adapters.mock_adapter import MockAdapter
from text2rule.observability.event_queue import ObservabilityQueue
from text2rule.pipeline.builder import STAGE_ORDER, build_engine
from text2rule.pipeline.state import PipelineState, Transition
from text2rule.tree.model import NodeKind
from text2rule.tree.traversal import ConditionActionGrouper, find_leftmost_leaf, find_nodes

from conftest import STATEMENT

SEGMENT = "If a subscriber recharges more than 100 then give 1GB bonus"


def _score(value):
    return {"similarity_score": value}


def _good_scripts(**overrides):
    scripts = {
        "validation": [{"is_valid": True, "issues_detected": []}],
        "decomposition": [{"normal_statements": [SEGMENT], "schedule": "Every Monday"}],
        "schedule_extraction": [{"schedule_type": "Weekly", "days": ["Mon"], "description": "Every Monday"}],
        "condition_extraction": [[{"rule": SEGMENT}]],
        "rule_conversion": [{"conditions": ["recharge > 100"], "action": "give 1GB bonus"}],
        "condition_synthesis": ["RECHARGE_AMOUNT > 100"],
        "action_extraction": [{"action_name": "Give Bonus", "parameters": {"amount": "1GB"}}],
        "consistency_check": [_score(0.95)],
    }
    scripts.update(overrides)
    return scripts


def _run(settings, adapter, text=STATEMENT, observability=None):
    engine = build_engine(settings, adapter, observability=observability)
    return engine.run(PipelineState(input_text=text))


def test_stage_order(settings, scripted):
    engine = build_engine(settings, scripted(_good_scripts()))
    assert tuple(stage.name for stage in engine.stages) == STAGE_ORDER


class TestMockPipeline:
    def test_full_run_builds_tree(self, settings):
        state = _run(settings, MockAdapter())
        assert state.completed, state.failure_reason
        root = state.tree.root
        assert [child.kind for child in root.children] == [NodeKind.NORMAL_STATEMENTS, NodeKind.SCHEDULE]
        assert root.similarity_score == pytest.approx(0.95)

        schedule_details = json.loads(root.children[1].children[0].text)
        assert schedule_details["schedule_type"] == "Weekly"
        assert schedule_details["days"] == ["Mon"]

        segment = root.children[0].children[0]
        assert [child.kind for child in segment.children] == [NodeKind.CONDITIONS, NodeKind.ACTION]
        leaf = find_leftmost_leaf(root)
        assert leaf.kind is NodeKind.IF_CONDITION
        assert leaf.text == "(a subscriber recharges more than 100 in a week)"

        action_details = json.loads(segment.children[1].children[0].text)
        assert action_details["channel"] == "SMS"
        assert action_details["parameters"] == {"amount": "1GB"}

        (group,) = ConditionActionGrouper().group_conditions_by_action(root)
        assert group.action is segment.children[1]
        assert all(node.model_name == "mock" for node in find_nodes(root, NodeKind.SEGMENT))

    def test_invalid_statement_is_rejected(self, settings):
        state = _run(settings, MockAdapter(valid=False))
        assert state.terminal_failure
        assert "rejected" in state.failure_reason
        assert state.tree is None
        assert state.validation_issues == ["Statement is not a business rule"]


class TestScriptedPipeline:
    def test_happy_path(self, settings, scripted):
        adapter = scripted(_good_scripts())
        state = _run(settings, adapter)
        assert state.completed
        assert all(h.transition is Transition.ADVANCE for h in state.history)
        assert adapter.calls.get("prompt_refinement") is None
        conditions = find_nodes(state.tree.root, NodeKind.CONDITIONS)[0]
        assert conditions.children[0].text == "RECHARGE_AMOUNT > 100"

    def test_empty_statement_rejected_without_oracle(self, settings, scripted):
        adapter = scripted(_good_scripts())
        state = _run(settings, adapter, text="   ")
        assert state.terminal_failure
        assert "Statement is empty" in state.failure_reason
        assert adapter.prompts == []

    def test_invalid_statement_stops_before_decomposition(self, settings, scripted):
        adapter = scripted(
            _good_scripts(validation=[{"is_valid": False, "issues_detected": ["Statement is a question"]}])
        )
        state = _run(settings, adapter)
        assert state.failure_reason == "validation: Statement rejected by validation: Statement is a question"
        assert "decomposition" not in adapter.calls

    def test_unreadable_validation_rejects(self, settings, scripted):
        state = _run(settings, scripted(_good_scripts(validation=["I think it is fine"])))
        assert state.terminal_failure
        assert "unreadable" in state.failure_reason

    def test_decomposition_parse_failure_aborts(self, settings, scripted):
        adapter = scripted(_good_scripts(decomposition=["no structure here"]))
        state = _run(settings, adapter)
        assert state.terminal_failure
        assert state.failure_reason.startswith("decomposition:")
        assert "schedule_extraction" not in adapter.calls

    def test_decomposition_retries_then_aborts(self, settings, scripted):
        adapter = scripted(
            _good_scripts(
                consistency_check=[_score(0.1)],
                prompt_refinement=["# task: decomposition\nKeep every clause."],
            )
        )
        state = _run(settings, adapter)
        assert adapter.calls["decomposition"] == 4
        assert adapter.calls["prompt_refinement"] == 3
        assert state.progress("decomposition").retry_count == 3
        assert state.failure_reason == (
            "decomposition consistency 0.10 stayed below threshold 0.8 after 4 attempt(s)"
        )
        refined = adapter.prompts_for("decomposition")[-1]
        assert "Keep every clause." in refined

    def test_retry_rebuilds_only_owned_subtree(self, settings, scripted):
        adapter = scripted(
            _good_scripts(
                condition_extraction=[
                    [{"rule": SEGMENT}, {"rule": "If roaming then send SMS"}],
                    [{"rule": SEGMENT}],
                ],
                consistency_check=[_score(0.95), _score(0.95), _score(0.3), _score(0.95)],
                prompt_refinement=["# task: condition_extraction\nDo not invent segments."],
            )
        )
        state = _run(settings, adapter)
        assert state.completed
        assert state.progress("condition").retry_count == 1
        statements = state.tree.root.children_of_kind(NodeKind.NORMAL_STATEMENTS)
        assert [len(s.children) for s in statements] == [1]
        assert len(state.tree.root.children_of_kind(NodeKind.SCHEDULE)) == 1
        assert len(state.tree.root.children_of_kind(NodeKind.SCHEDULE)[0].children) == 1

    def test_extraction_parse_failure_is_best_effort(self, settings, scripted):
        adapter = scripted(
            _good_scripts(
                action_extraction=["not json"],
                prompt_refinement=["# task: action_extraction\nReturn JSON."],
            )
        )
        state = _run(settings, adapter)
        assert state.completed
        assert adapter.calls["action_extraction"] == 4
        assert state.history[-1].transition is Transition.GIVE_UP_AND_ADVANCE
        action = find_nodes(state.tree.root, NodeKind.ACTION)[0]
        assert action.children == []

    def test_extraction_transport_failure_is_degraded(self, settings, scripted):
        adapter = scripted(
            _good_scripts(
                schedule_extraction=[ConnectionError("reset"), {"schedule_type": "Daily"}],
                prompt_refinement=["# task: schedule_extraction\nRetry."],
            )
        )
        state = _run(settings, adapter)
        assert state.completed
        assert state.progress("schedule").retry_count == 1
        retry = next(h for h in state.history if h.stage == "schedule")
        assert retry.transition is Transition.RETRY
        assert "oracle call failed" in retry.detail
        assert state.progress("schedule").consistency_score == pytest.approx(0.95)

    def test_gating_transport_failure_is_fatal(self, settings, scripted):
        adapter = scripted(_good_scripts(decomposition=[TimeoutError("slow")]))
        state = _run(settings, adapter)
        assert state.terminal_failure
        assert "oracle call failed" in state.failure_reason

    def test_statement_without_schedule(self, settings, scripted):
        adapter = scripted(_good_scripts(decomposition=[{"normal_statements": [SEGMENT], "schedule": None}]))
        state = _run(settings, adapter)
        assert state.completed
        assert "schedule_extraction" not in adapter.calls

    def test_reference_context_reaches_synthesis(self, settings, scripted):
        adapter = scripted(_good_scripts())
        engine_settings = replace(settings, reference_context="KPI: RECHARGE_AMOUNT")
        _run(engine_settings, adapter)
        (prompt,) = adapter.prompts_for("condition_synthesis")
        payload = json.loads(prompt.rpartition("INPUT:\n")[2])
        assert payload["context"] == "KPI: RECHARGE_AMOUNT"
        assert payload["conditions"] == ["recharge > 100"]
        assert payload["statement"] == SEGMENT

    def test_events_carry_trace_id(self, settings, scripted):
        queue = ObservabilityQueue()
        state = _run(settings, scripted(_good_scripts()), observability=queue)
        events = []
        while not queue.empty():
            events.append(queue.take(timeout=0.1))
        assert {event.trace_id for event in events} == {state.trace_id}
        names = [event.agent_name for event in events]
        assert names[0] == "ValidationAgent"
        assert names[-1] == "PipelineEngine"
        assert "ConditionSynthesisAgent" in names
