from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from text2rule.tree.model import NodeKind, RuleNode

logger = logging.getLogger(__name__)


def iter_preorder(node: Optional[RuleNode]) -> Iterator[RuleNode]:
    if node is None:
        return
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def find_nodes(root: Optional[RuleNode], kind: NodeKind) -> List[RuleNode]:
    return [node for node in iter_preorder(root) if node.kind == kind]


def find_leftmost_leaf(root: Optional[RuleNode]) -> Optional[RuleNode]:
    if root is None:
        logger.warning("find_leftmost_leaf called without a root")
        return None
    current = root
    while current.children:
        current = current.children[0]
    return current


def find_matching_action(condition: Optional[RuleNode]) -> Optional[RuleNode]:
    """Return the Action nearest to ``condition`` in its enclosing scopes.

    Each ancestor is checked one level deep only; unrelated subtrees are
    never searched.
    """
    if condition is None:
        return None
    for ancestor in condition.ancestors():
        action = ancestor.first_child_of_kind(NodeKind.ACTION)
        if action is not None:
            return action
    logger.debug("No action encloses %s node %s", condition.kind.value, condition.node_id)
    return None


def siblings(node: RuleNode) -> List[RuleNode]:
    if node.parent is None:
        return []
    return list(node.parent.children)


@dataclass(eq=False)
class ConditionGroup:
    action: Optional[RuleNode]
    conditions: List[RuleNode] = field(default_factory=list)

    @property
    def has_action(self) -> bool:
        return self.action is not None


class ConditionActionGrouper:
    def group_conditions_by_action(self, root: Optional[RuleNode]) -> List[ConditionGroup]:
        """Partition IfCondition nodes by the identity of their matching action.

        The action-less group, when present, comes first; the remaining
        groups follow the pre-order position of their first condition.
        """
        by_action: Dict[int, ConditionGroup] = {}
        orphaned = ConditionGroup(action=None)
        for condition in find_nodes(root, NodeKind.IF_CONDITION):
            action = find_matching_action(condition)
            if action is None:
                orphaned.conditions.append(condition)
                continue
            group = by_action.get(id(action))
            if group is None:
                group = by_action[id(action)] = ConditionGroup(action=action)
            group.conditions.append(condition)

        groups: List[ConditionGroup] = []
        if orphaned.conditions:
            groups.append(orphaned)
        groups.extend(by_action.values())
        logger.info(
            "Grouped conditions: %d action group(s), %d without action",
            len(by_action),
            len(orphaned.conditions),
        )
        return groups
