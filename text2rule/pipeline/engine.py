from __future__ import annotations

import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Type

from text2rule.errors import ConfigurationError, ConsistencyFailure
from text2rule.observability.event_queue import ObservabilityQueue
from text2rule.observability.events import ObservabilityEvent
from text2rule.pipeline.state import PipelineState, StageProgress, StageTransition, Transition
from text2rule.prompts import PromptRegistry
from text2rule.utils.logging_config import current_trace_id

logger = logging.getLogger(__name__)

ExecuteFn = Callable[[PipelineState, str], Optional[str]]
AuditFn = Callable[[PipelineState], float]
RefineFn = Callable[[str, str, Optional[str], Optional[str], int], str]


class RetryPolicy(str, Enum):
    ABORT = "abort"
    PROCEED_BEST_EFFORT = "proceed_best_effort"


@dataclass(frozen=True)
class StageDescriptor:
    name: str
    execute_fn: ExecuteFn
    prompt_key: str
    audit_fn: Optional[AuditFn] = None
    refine_fn: Optional[RefineFn] = None
    threshold: float = 0.8
    max_retries: int = 3
    on_retry_exhausted: RetryPolicy = RetryPolicy.ABORT
    degraded_errors: Tuple[Type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigurationError(f"Stage '{self.name}': threshold must be within [0, 1]")
        if self.max_retries < 0:
            raise ConfigurationError(f"Stage '{self.name}': max_retries must not be negative")


def build_feedback(stage: str, score: float, threshold: float, detail: str = "") -> str:
    lines = [
        f"Stage: {stage}",
        f"Consistency Score: {score:.2f} (Threshold: {threshold})",
    ]
    if score < threshold:
        lines.append("The output does not preserve the meaning of the original statement.")
    if detail:
        lines.append(f"Error: {detail}")
    return "\n".join(lines)


class PipelineEngine:
    """Drives one statement through the ordered stages.

    For each stage: execute, audit, then advance, retry with a refined
    prompt, or give up according to the stage's retry policy. A terminal
    failure stops the run and keeps the first reason.
    """

    def __init__(
        self,
        stages: Sequence[StageDescriptor],
        prompts: Optional[PromptRegistry] = None,
        observability: Optional[ObservabilityQueue] = None,
    ) -> None:
        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate stage names: {names}")
        self.stages = list(stages)
        self.prompts = prompts
        self.observability = observability

    def run(self, state: PipelineState) -> PipelineState:
        if not state.trace_id:
            state.trace_id = uuid.uuid4().hex
        token = current_trace_id.set(state.trace_id)
        try:
            logger.info("pipeline run started with %d stage(s)", len(self.stages))
            for stage in self.stages:
                if state.terminal_failure:
                    break
                self._run_stage(stage, state)
            if not state.terminal_failure:
                state.completed = True
            logger.info("pipeline run %s: %s", state.status, state.failure_reason or "ok")
            self._emit_summary(state)
        finally:
            current_trace_id.reset(token)
        return state

    def run_many(self, statements: Iterable[str], max_workers: int = 4) -> List[PipelineState]:
        """Run independent statements concurrently; results keep input order."""
        states = [PipelineState(input_text=text) for text in statements]
        if not states:
            return []
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline") as executor:
            return list(executor.map(self.run, states))

    def _active_prompt(self, stage: StageDescriptor, progress: StageProgress) -> str:
        if progress.refined_prompt:
            return progress.refined_prompt
        if self.prompts is None:
            return ""
        return self.prompts.get(stage.prompt_key)

    def _record(
        self,
        state: PipelineState,
        stage: StageDescriptor,
        attempt: int,
        transition: Transition,
        score: Optional[float] = None,
        detail: str = "",
    ) -> None:
        state.history.append(
            StageTransition(stage=stage.name, attempt=attempt, transition=transition, score=score, detail=detail)
        )
        logger.info(
            "stage=%s attempt=%d transition=%s score=%s",
            stage.name,
            attempt,
            transition.value,
            "-" if score is None else f"{score:.2f}",
        )

    def _run_stage(self, stage: StageDescriptor, state: PipelineState) -> None:
        progress = state.progress(stage.name)
        while True:
            progress.attempts += 1
            attempt = progress.attempts
            detail = ""
            score: Optional[float] = None
            prompt = ""
            try:
                prompt = self._active_prompt(stage, progress)
                progress.previous_output = stage.execute_fn(state, prompt)
            except stage.degraded_errors as exc:
                logger.warning("stage=%s attempt=%d degraded: %s", stage.name, attempt, exc)
                progress.previous_output = None
                detail = str(exc)
                score = 0.0
            except Exception as exc:
                logger.error("stage=%s attempt=%d failed: %s", stage.name, attempt, exc)
                self._record(state, stage, attempt, Transition.EXECUTION_FAILURE, detail=str(exc))
                state.fail(f"{stage.name}: {exc}")
                return

            if score is None:
                if stage.audit_fn is None:
                    self._record(state, stage, attempt, Transition.ADVANCE)
                    return
                try:
                    score = stage.audit_fn(state)
                except stage.degraded_errors as exc:
                    logger.warning("stage=%s attempt=%d audit degraded: %s", stage.name, attempt, exc)
                    detail = str(exc)
                    score = 0.0
                except Exception as exc:
                    logger.error("stage=%s attempt=%d audit failed: %s", stage.name, attempt, exc)
                    self._record(state, stage, attempt, Transition.EXECUTION_FAILURE, detail=str(exc))
                    state.fail(f"{stage.name}: {exc}")
                    return

            progress.consistency_score = score
            progress.feedback = build_feedback(stage.name, score, stage.threshold, detail)

            if score >= stage.threshold:
                self._record(state, stage, attempt, Transition.ADVANCE, score)
                return

            if progress.retry_count < stage.max_retries:
                if stage.refine_fn is not None:
                    refined = stage.refine_fn(
                        prompt,
                        state.input_text,
                        progress.previous_output,
                        progress.feedback,
                        progress.retry_count + 1,
                    )
                    if refined:
                        progress.refined_prompt = refined
                progress.record_retry(stage.max_retries)
                self._record(state, stage, attempt, Transition.RETRY, score, detail)
                continue

            if stage.on_retry_exhausted is RetryPolicy.ABORT:
                failure = ConsistencyFailure(stage.name, score, stage.threshold, attempt)
                self._record(state, stage, attempt, Transition.GIVE_UP_AND_ABORT, score, str(failure))
                state.fail(str(failure))
                return

            logger.warning(
                "stage=%s kept best-effort output after %d attempt(s), score %.2f",
                stage.name,
                attempt,
                score,
            )
            self._record(state, stage, attempt, Transition.GIVE_UP_AND_ADVANCE, score)
            return

    def _emit_summary(self, state: PipelineState) -> None:
        if self.observability is None:
            return
        self.observability.offer(
            ObservabilityEvent(
                agent_name="PipelineEngine",
                messages=[{"role": "user", "content": state.input_text}],
                output=json.dumps(state.summary()),
                model="pipeline",
                trace_id=state.trace_id,
                status=state.status,
            )
        )
