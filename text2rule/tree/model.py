from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional
from uuid import uuid4

from text2rule.errors import StructuralError


class NodeKind(str, Enum):
    ROOT = "Root"
    NORMAL_STATEMENTS = "NormalStatements"
    SEGMENT = "Segment"
    CONDITIONS = "Conditions"
    IF_CONDITION = "IfCondition"
    ACTION = "Action"
    ACTION_DETAILS = "ActionDetails"
    SCHEDULE = "Schedule"
    SCHEDULE_DETAILS = "ScheduleDetails"
    POLICY = "Policy"
    SAMPLING = "Sampling"


ALLOWED_CHILDREN: Dict[NodeKind, FrozenSet[NodeKind]] = {
    NodeKind.ROOT: frozenset({NodeKind.NORMAL_STATEMENTS, NodeKind.SCHEDULE}),
    NodeKind.NORMAL_STATEMENTS: frozenset({NodeKind.SEGMENT}),
    NodeKind.SEGMENT: frozenset(
        {
            NodeKind.CONDITIONS,
            NodeKind.ACTION,
            NodeKind.POLICY,
            NodeKind.SCHEDULE,
            NodeKind.SAMPLING,
        }
    ),
    NodeKind.CONDITIONS: frozenset({NodeKind.IF_CONDITION}),
    NodeKind.ACTION: frozenset({NodeKind.ACTION_DETAILS}),
    NodeKind.SCHEDULE: frozenset({NodeKind.SCHEDULE_DETAILS}),
    NodeKind.IF_CONDITION: frozenset(),
    NodeKind.ACTION_DETAILS: frozenset(),
    NodeKind.SCHEDULE_DETAILS: frozenset(),
    NodeKind.POLICY: frozenset(),
    NodeKind.SAMPLING: frozenset(),
}


def can_contain(parent: NodeKind, child: NodeKind) -> bool:
    return child in ALLOWED_CHILDREN.get(parent, frozenset())


@dataclass(eq=False)
class RuleNode:
    """One node of a rule tree.

    Nodes compare and hash by identity: two Action nodes with the same text
    are still different actions.
    """

    kind: NodeKind
    text: str = ""
    model_name: str = ""
    similarity_score: Optional[float] = None
    children: List["RuleNode"] = field(default_factory=list)
    parent: Optional["RuleNode"] = field(default=None, repr=False)
    node_id: str = field(default_factory=lambda: uuid4().hex[:12])

    def add_child(self, child: "RuleNode") -> "RuleNode":
        if child.parent is not None:
            raise StructuralError(
                f"{child.kind.value} node already belongs to a {child.parent.kind.value} node"
            )
        if child is self or child in self.ancestors():
            raise StructuralError("Adding this child would create a cycle")
        if not can_contain(self.kind, child.kind):
            raise StructuralError(
                f"{child.kind.value} is not allowed under {self.kind.value}"
            )
        child.parent = self
        self.children.append(child)
        return child

    def remove_children(self, kind: Optional[NodeKind] = None) -> List["RuleNode"]:
        removed = [c for c in self.children if kind is None or c.kind == kind]
        self.children = [c for c in self.children if c not in removed]
        for child in removed:
            child.parent = None
        return removed

    def ancestors(self) -> Iterator["RuleNode"]:
        current = self.parent
        while current is not None:
            yield current
            current = current.parent

    def children_of_kind(self, kind: NodeKind) -> List["RuleNode"]:
        return [c for c in self.children if c.kind == kind]

    def first_child_of_kind(self, kind: NodeKind) -> Optional["RuleNode"]:
        for child in self.children:
            if child.kind == kind:
                return child
        return None

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.node_id,
            "parent_id": self.parent.node_id if self.parent is not None else None,
            "kind": self.kind.value,
            "text": self.text,
            "model_name": self.model_name,
            "similarity_score": self.similarity_score,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass(eq=False)
class RuleTree:
    root: RuleNode

    @classmethod
    def from_statement(cls, text: str, model_name: str = "") -> "RuleTree":
        return cls(root=RuleNode(kind=NodeKind.ROOT, text=text, model_name=model_name))

    def to_dict(self) -> Dict[str, object]:
        return self.root.to_dict()
