import pytest

from text2rule.errors import OracleCommunicationError
from text2rule.gates.consistency import ConsistencyAuditor
from text2rule.tree.model import NodeKind, RuleNode, RuleTree


def _score(value):
    return {"similarity_score": value, "missing": [], "added": []}


@pytest.fixture
def auditor_for(prompts, oracle_for):
    def factory(adapter):
        return ConsistencyAuditor(oracle_for(adapter), prompts)

    return factory


class TestScore:
    @pytest.mark.parametrize(
        "answer, expected",
        [
            (_score(0.85), 0.85),
            (_score(1.7), 1.0),
            (_score(-0.2), 0.0),
            (_score(1), 1.0),
            ("not json at all", 0.0),
            ({"missing": []}, 0.0),
            (_score("high"), 0.0),
            (_score(True), 0.0),
        ],
    )
    def test_score_values(self, scripted, auditor_for, answer, expected):
        auditor = auditor_for(scripted({"consistency_check": [answer]}))
        assert auditor.score("original", "derived") == pytest.approx(expected)

    def test_prompt_embeds_both_texts(self, scripted, auditor_for):
        adapter = scripted({"consistency_check": [_score(0.9)]})
        auditor_for(adapter).score("recharge > 100", "give bonus")
        (prompt,) = adapter.prompts_for("consistency_check")
        assert '"original": "recharge > 100"' in prompt
        assert '"derived": "give bonus"' in prompt

    def test_transport_error_propagates(self, scripted, auditor_for):
        auditor = auditor_for(scripted({"consistency_check": [ConnectionError("down")]}))
        with pytest.raises(OracleCommunicationError):
            auditor.score("a", "b")


class TestTreeAudits:
    def test_root_audit_annotates_root(self, scripted, auditor_for):
        adapter = scripted({"consistency_check": [_score(0.9)]})
        tree = RuleTree.from_statement("A then B. Every Monday.")
        tree.root.add_child(RuleNode(kind=NodeKind.NORMAL_STATEMENTS, text="A then B."))
        tree.root.add_child(RuleNode(kind=NodeKind.SCHEDULE, text="Every Monday."))

        assert auditor_for(adapter).audit_root(tree) == pytest.approx(0.9)
        assert tree.root.similarity_score == pytest.approx(0.9)
        (prompt,) = adapter.prompts_for("consistency_check")
        assert '"derived": "A then B.\\nEvery Monday."' in prompt

    def test_failing_root_audit_still_annotates(self, scripted, auditor_for):
        tree = RuleTree.from_statement("x")
        auditor = auditor_for(scripted({"consistency_check": [_score(0.2)]}))
        assert auditor.audit_root(tree) == pytest.approx(0.2)
        assert tree.root.similarity_score == pytest.approx(0.2)

    def test_nested_audit_takes_minimum(self, scripted, auditor_for):
        adapter = scripted({"consistency_check": [_score(0.95), _score(0.4)]})
        tree = RuleTree.from_statement("s")
        first = tree.root.add_child(RuleNode(kind=NodeKind.NORMAL_STATEMENTS, text="one"))
        second = tree.root.add_child(RuleNode(kind=NodeKind.NORMAL_STATEMENTS, text="two"))
        first.add_child(RuleNode(kind=NodeKind.SEGMENT, text="one"))

        assert auditor_for(adapter).audit_conditions(tree) == pytest.approx(0.4)
        assert first.similarity_score == pytest.approx(0.95)
        assert second.similarity_score == pytest.approx(0.4)

    def test_zero_pairs_pass(self, scripted, auditor_for):
        adapter = scripted()
        tree = RuleTree.from_statement("s")
        auditor = auditor_for(adapter)
        assert auditor.audit_actions(tree) == 1.0
        assert auditor.audit_schedule(tree) == 1.0
        assert auditor.audit_condition_synthesis(tree) == 1.0
        assert adapter.prompts == []

    def test_rule_conversion_lists_parts(self, scripted, auditor_for):
        adapter = scripted({"consistency_check": [_score(0.9)]})
        tree = RuleTree.from_statement("s")
        segment = tree.root.add_child(RuleNode(kind=NodeKind.NORMAL_STATEMENTS, text="s")).add_child(
            RuleNode(kind=NodeKind.SEGMENT, text="If recharge > 100 then bonus")
        )
        segment.add_child(RuleNode(kind=NodeKind.CONDITIONS, text="recharge > 100"))
        segment.add_child(RuleNode(kind=NodeKind.ACTION, text="bonus"))

        auditor_for(adapter).audit_rule_conversion(tree)
        (prompt,) = adapter.prompts_for("consistency_check")
        assert "Conditions: recharge > 100\\nAction: bonus" in prompt
        assert segment.similarity_score == pytest.approx(0.9)

    def test_schedule_audit_with_missing_details(self, scripted, auditor_for):
        adapter = scripted({"consistency_check": [_score(0.1)]})
        tree = RuleTree.from_statement("s")
        schedule = tree.root.add_child(RuleNode(kind=NodeKind.SCHEDULE, text="Every Monday"))

        assert auditor_for(adapter).audit_schedule(tree) == pytest.approx(0.1)
        assert schedule.similarity_score == pytest.approx(0.1)
        (prompt,) = adapter.prompts_for("consistency_check")
        assert '"derived": ""' in prompt
