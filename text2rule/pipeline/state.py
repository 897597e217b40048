from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from text2rule.errors import StructuralError
from text2rule.tree.model import RuleTree


class Transition(str, Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    GIVE_UP_AND_ADVANCE = "give_up_and_advance"
    GIVE_UP_AND_ABORT = "give_up_and_abort"
    EXECUTION_FAILURE = "execution_failure"


@dataclass
class StageTransition:
    stage: str
    attempt: int
    transition: Transition
    score: Optional[float] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "attempt": self.attempt,
            "transition": self.transition.value,
            "score": self.score,
            "detail": self.detail,
        }


@dataclass
class StageProgress:
    retry_count: int = 0
    consistency_score: Optional[float] = None
    feedback: Optional[str] = None
    refined_prompt: Optional[str] = None
    previous_output: Optional[str] = None
    attempts: int = 0

    def record_retry(self, max_retries: int) -> None:
        if self.retry_count >= max_retries:
            raise ValueError(f"retry budget of {max_retries} already spent")
        self.retry_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retry_count": self.retry_count,
            "consistency_score": self.consistency_score,
            "feedback": self.feedback,
            "refined": self.refined_prompt is not None,
            "attempts": self.attempts,
        }


@dataclass
class PipelineState:
    """Everything one run knows about one statement.

    Owned by a single run; the engine is its only writer besides the stage
    being executed.
    """

    input_text: str
    trace_id: str = ""
    tree: Optional[RuleTree] = None
    stages: Dict[str, StageProgress] = field(default_factory=dict)
    validation_issues: List[str] = field(default_factory=list)
    history: List[StageTransition] = field(default_factory=list)
    terminal_failure: bool = False
    failure_reason: Optional[str] = None
    completed: bool = False

    def progress(self, stage: str) -> StageProgress:
        if stage not in self.stages:
            self.stages[stage] = StageProgress()
        return self.stages[stage]

    def fail(self, reason: str) -> None:
        # first reason wins
        if not self.terminal_failure:
            self.terminal_failure = True
            self.failure_reason = reason

    def require_tree(self) -> RuleTree:
        if self.tree is None:
            raise StructuralError("No rule tree yet; decomposition has not produced one")
        return self.tree

    @property
    def status(self) -> str:
        if self.terminal_failure:
            return "aborted"
        if self.completed:
            return "completed"
        return "running"

    def summary(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "validation_issues": list(self.validation_issues),
            "stages": {name: progress.to_dict() for name, progress in self.stages.items()},
            "history": [entry.to_dict() for entry in self.history],
        }
