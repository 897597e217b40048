from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

from text2rule.errors import ParseError
from text2rule.gates.parsers import extract_json
from text2rule.oracle import OracleClient
from text2rule.prompts import PromptRegistry, compose_prompt
from text2rule.tree.model import NodeKind, RuleNode, RuleTree
from text2rule.tree.traversal import find_nodes

logger = logging.getLogger(__name__)

AuditPair = Tuple[RuleNode, str, str]

_SEGMENT_PARTS = (
    NodeKind.CONDITIONS,
    NodeKind.ACTION,
    NodeKind.POLICY,
    NodeKind.SCHEDULE,
    NodeKind.SAMPLING,
)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _joined(nodes: Iterable[RuleNode]) -> str:
    return "\n".join(node.text for node in nodes)


class ConsistencyAuditor:
    """Scores how faithfully derived text preserves its source, in [0, 1].

    Every audited pair writes its score onto the originating node, pass or
    fail. Nested audits report the weakest pair; with nothing to compare
    they pass with 1.0.
    """

    def __init__(self, oracle: OracleClient, prompts: PromptRegistry, prompt_key: str = "consistency_check") -> None:
        self.oracle = oracle
        self.prompts = prompts
        self.prompt_key = prompt_key

    def score(self, original: str, derived: str, agent_name: str = "ConsistencyAgent") -> float:
        prompt = compose_prompt(self.prompts.get(self.prompt_key), {"original": original, "derived": derived})
        raw = self.oracle.generate(prompt, agent_name=agent_name)
        try:
            parsed = extract_json(raw)
        except ParseError as exc:
            logger.warning("consistency response unparsable, scoring 0: %s", exc)
            return 0.0
        value = parsed.get("similarity_score") if isinstance(parsed, dict) else None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning("consistency response has no numeric similarity_score, scoring 0")
            return 0.0
        return _clamp(float(value))

    def _audit_pairs(self, pairs: List[AuditPair], agent_name: str) -> float:
        if not pairs:
            logger.debug("%s: nothing to audit", agent_name)
            return 1.0
        lowest = 1.0
        for node, original, derived in pairs:
            value = self.score(original, derived, agent_name=agent_name)
            node.similarity_score = value
            lowest = min(lowest, value)
        logger.info("%s: %d pair(s) audited, lowest score %.2f", agent_name, len(pairs), lowest)
        return lowest

    def audit_root(self, tree: RuleTree) -> float:
        root = tree.root
        return self._audit_pairs([(root, root.text, _joined(root.children))], "DecompositionConsistency")

    def audit_conditions(self, tree: RuleTree) -> float:
        pairs = [
            (node, node.text, _joined(node.children_of_kind(NodeKind.SEGMENT)))
            for node in tree.root.children_of_kind(NodeKind.NORMAL_STATEMENTS)
        ]
        return self._audit_pairs(pairs, "ConditionConsistency")

    def audit_schedule(self, tree: RuleTree) -> float:
        schedules = tree.root.children_of_kind(NodeKind.SCHEDULE)
        if not schedules:
            return self._audit_pairs([], "ScheduleConsistency")
        details = [d for s in schedules for d in s.children_of_kind(NodeKind.SCHEDULE_DETAILS)]
        value = self.score(_joined(schedules), _joined(details), agent_name="ScheduleConsistency")
        for schedule in schedules:
            schedule.similarity_score = value
        logger.info("ScheduleConsistency: score %.2f", value)
        return value

    def audit_rule_conversion(self, tree: RuleTree) -> float:
        pairs = []
        for segment in find_nodes(tree.root, NodeKind.SEGMENT):
            lines = [
                f"{child.kind.value}: {child.text}"
                for child in segment.children
                if child.kind in _SEGMENT_PARTS
            ]
            pairs.append((segment, segment.text, "\n".join(lines)))
        return self._audit_pairs(pairs, "RuleConversionConsistency")

    def audit_condition_synthesis(self, tree: RuleTree) -> float:
        pairs = [
            (node, node.text, _joined(node.children_of_kind(NodeKind.IF_CONDITION)))
            for node in find_nodes(tree.root, NodeKind.CONDITIONS)
        ]
        return self._audit_pairs(pairs, "ConditionSynthesisConsistency")

    def audit_actions(self, tree: RuleTree) -> float:
        pairs = [
            (node, node.text, _joined(node.children_of_kind(NodeKind.ACTION_DETAILS)))
            for node in find_nodes(tree.root, NodeKind.ACTION)
        ]
        return self._audit_pairs(pairs, "ActionConsistency")
