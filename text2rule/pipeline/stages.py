from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from text2rule.errors import InputRejected, ParseError
from text2rule.gates.parsers import extract_validated, strip_code_fences
from text2rule.oracle import OracleClient
from text2rule.pipeline.state import PipelineState
from text2rule.prompts import compose_prompt
from text2rule.tree.model import NodeKind, RuleNode, RuleTree
from text2rule.tree.traversal import find_nodes

logger = logging.getLogger(__name__)

_SEGMENT_EXTRAS = (
    ("policy", NodeKind.POLICY),
    ("schedule", NodeKind.SCHEDULE),
    ("sampling", NodeKind.SAMPLING),
)


def _segment_text(item: Dict[str, Any]) -> str:
    if item.get("rule"):
        return item["rule"].strip()
    actions = item.get("actions") or ""
    if isinstance(actions, list):
        actions = ", ".join(str(a) for a in actions)
    condition = item.get("condition", "").strip()
    return f"If {condition} then {actions}".strip() if actions else condition


class RuleStages:
    """The execute functions of the text-to-rule pipeline.

    Each takes the run state and the active instruction, mutates only the
    subtree it owns (cleared first, so a retry starts clean) and returns the
    raw oracle output it worked from.
    """

    def __init__(self, oracle: OracleClient, reference_context: str = "") -> None:
        self.oracle = oracle
        self.reference_context = reference_context

    def _node(self, kind: NodeKind, text: str) -> RuleNode:
        return RuleNode(kind=kind, text=text, model_name=self.oracle.model_name)

    def validate(self, state: PipelineState, prompt: str) -> str:
        statement = state.input_text.strip()
        if not statement:
            raise InputRejected(["Statement is empty"])
        messages = [
            {"role": "system", "content": prompt},
            {"role": "user", "content": compose_prompt("Validate the following statement.", statement)},
        ]
        raw = self.oracle.chat(messages, agent_name="ValidationAgent")
        try:
            result = extract_validated(raw, "validation_result.schema.json")
        except ParseError as exc:
            raise InputRejected([f"Validation response unreadable: {exc}"]) from exc
        state.validation_issues = list(result.get("issues_detected") or [])
        if not result["is_valid"]:
            raise InputRejected(state.validation_issues)
        return raw

    def decompose(self, state: PipelineState, prompt: str) -> str:
        raw = self.oracle.generate(compose_prompt(prompt, state.input_text), agent_name="DecompositionAgent")
        result = extract_validated(raw, "decomposition.schema.json")

        tree = RuleTree.from_statement(state.input_text, model_name=self.oracle.model_name)
        for text in result["normal_statements"]:
            tree.root.add_child(self._node(NodeKind.NORMAL_STATEMENTS, text.strip()))
        schedule = (result.get("schedule") or "").strip()
        if schedule:
            tree.root.add_child(self._node(NodeKind.SCHEDULE, schedule))
        state.tree = tree
        logger.info(
            "decomposed into %d statement(s)%s",
            len(result["normal_statements"]),
            " and a schedule" if schedule else "",
        )
        return raw

    def extract_schedules(self, state: PipelineState, prompt: str) -> str:
        schedules = state.require_tree().root.children_of_kind(NodeKind.SCHEDULE)
        for schedule in schedules:
            schedule.remove_children(NodeKind.SCHEDULE_DETAILS)
        outputs: List[str] = []
        for schedule in schedules:
            raw = self.oracle.generate(compose_prompt(prompt, schedule.text), agent_name="ScheduleExtractionAgent")
            details = extract_validated(raw, "schedule_details.schema.json")
            schedule.add_child(self._node(NodeKind.SCHEDULE_DETAILS, json.dumps(details, ensure_ascii=False)))
            outputs.append(raw)
        return "\n".join(outputs)

    def extract_conditions(self, state: PipelineState, prompt: str) -> str:
        statements = state.require_tree().root.children_of_kind(NodeKind.NORMAL_STATEMENTS)
        for statement in statements:
            statement.remove_children()
        outputs: List[str] = []
        for statement in statements:
            raw = self.oracle.generate(compose_prompt(prompt, statement.text), agent_name="ConditionExtractionAgent")
            for item in extract_validated(raw, "conditions.schema.json"):
                text = _segment_text(item)
                if text:
                    statement.add_child(self._node(NodeKind.SEGMENT, text))
            outputs.append(raw)
        return "\n".join(outputs)

    def convert_rules(self, state: PipelineState, prompt: str) -> str:
        segments = find_nodes(state.require_tree().root, NodeKind.SEGMENT)
        for segment in segments:
            segment.remove_children()
        outputs: List[str] = []
        for segment in segments:
            raw = self.oracle.generate(compose_prompt(prompt, segment.text), agent_name="RuleConversionAgent")
            result = extract_validated(raw, "rule_conversion.schema.json")
            # Conditions first: it is the segment's leftmost child
            segment.add_child(self._node(NodeKind.CONDITIONS, "\n".join(c.strip() for c in result["conditions"])))
            segment.add_child(self._node(NodeKind.ACTION, result["action"].strip()))
            for field_name, kind in _SEGMENT_EXTRAS:
                value = (result.get(field_name) or "").strip()
                if value:
                    segment.add_child(self._node(kind, value))
            outputs.append(raw)
        return "\n".join(outputs)

    def synthesize_conditions(self, state: PipelineState, prompt: str) -> str:
        groups = find_nodes(state.require_tree().root, NodeKind.CONDITIONS)
        for conditions in groups:
            conditions.remove_children(NodeKind.IF_CONDITION)
        outputs: List[str] = []
        for conditions in groups:
            payload = {
                "conditions": conditions.text.splitlines(),
                "statement": conditions.parent.text if conditions.parent is not None else "",
                "context": self.reference_context,
            }
            raw = self.oracle.generate(compose_prompt(prompt, payload), agent_name="ConditionSynthesisAgent")
            lines = [line.strip() for line in strip_code_fences(raw).splitlines() if line.strip()]
            if not lines:
                raise ParseError("Condition synthesis returned an empty expression")
            conditions.add_child(self._node(NodeKind.IF_CONDITION, lines[0]))
            outputs.append(raw)
        return "\n".join(outputs)

    def extract_actions(self, state: PipelineState, prompt: str) -> str:
        actions = find_nodes(state.require_tree().root, NodeKind.ACTION)
        for action in actions:
            action.remove_children(NodeKind.ACTION_DETAILS)
        outputs: List[str] = []
        for action in actions:
            raw = self.oracle.generate(compose_prompt(prompt, action.text), agent_name="ActionExtractionAgent")
            details = extract_validated(raw, "action_details.schema.json")
            action.add_child(self._node(NodeKind.ACTION_DETAILS, json.dumps(details, ensure_ascii=False)))
            outputs.append(raw)
        return "\n".join(outputs)
