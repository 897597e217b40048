from __future__ import annotations

from typing import Callable, List, Optional

from text2rule.adapters.gemini_adapter import GeminiAdapter
from text2rule.adapters.llm_base import LLMAdapter
from text2rule.adapters.mock_adapter import MockAdapter
from text2rule.adapters.openai_adapter import OpenAIAdapter
from text2rule.config import Settings
from text2rule.errors import OracleCommunicationError, ParseError
from text2rule.gates.consistency import ConsistencyAuditor
from text2rule.gates.refiner import PromptRefiner
from text2rule.observability.event_queue import ObservabilityQueue
from text2rule.oracle import OracleClient
from text2rule.pipeline.engine import AuditFn, ExecuteFn, PipelineEngine, RetryPolicy, StageDescriptor
from text2rule.pipeline.stages import RuleStages
from text2rule.prompts import PromptRegistry
from text2rule.tree.model import RuleTree
from text2rule.utils.rate_limit import RateLimiter

STAGE_ORDER = (
    "validation",
    "decomposition",
    "schedule",
    "condition",
    "rule_conversion",
    "condition_synthesis",
    "action",
)

EXTRACTION_DEGRADED_ERRORS = (OracleCommunicationError, ParseError)


def build_adapter(mode: str, settings: Settings) -> LLMAdapter:
    if mode == "mock" or settings.oracle.provider == "mock":
        return MockAdapter()
    if settings.oracle.provider == "gemini":
        return GeminiAdapter(settings.oracle)
    return OpenAIAdapter(settings.oracle)


def _on_tree(audit: Callable[[RuleTree], float]) -> AuditFn:
    return lambda state: audit(state.require_tree())


def build_stage_descriptors(
    settings: Settings,
    stages: RuleStages,
    auditor: ConsistencyAuditor,
    refiner: PromptRefiner,
) -> List[StageDescriptor]:
    def audited(
        key: str,
        execute_fn: ExecuteFn,
        audit_fn: AuditFn,
        policy: RetryPolicy,
        degraded_errors=EXTRACTION_DEGRADED_ERRORS,
    ) -> StageDescriptor:
        options = settings.stage(key)
        return StageDescriptor(
            name=key,
            execute_fn=execute_fn,
            prompt_key=options.prompt,
            audit_fn=audit_fn,
            refine_fn=refiner.refine,
            threshold=options.consistency_threshold,
            max_retries=options.max_retries,
            on_retry_exhausted=policy,
            degraded_errors=degraded_errors,
        )

    best_effort = RetryPolicy.PROCEED_BEST_EFFORT
    return [
        StageDescriptor(
            name="validation",
            execute_fn=stages.validate,
            prompt_key=settings.stage("validation").prompt,
            max_retries=0,
        ),
        audited("decomposition", stages.decompose, _on_tree(auditor.audit_root), RetryPolicy.ABORT, ()),
        audited("schedule", stages.extract_schedules, _on_tree(auditor.audit_schedule), best_effort),
        audited("condition", stages.extract_conditions, _on_tree(auditor.audit_conditions), best_effort),
        audited("rule_conversion", stages.convert_rules, _on_tree(auditor.audit_rule_conversion), best_effort),
        audited(
            "condition_synthesis",
            stages.synthesize_conditions,
            _on_tree(auditor.audit_condition_synthesis),
            best_effort,
        ),
        audited("action", stages.extract_actions, _on_tree(auditor.audit_actions), best_effort),
    ]


def build_engine(
    settings: Settings,
    adapter: LLMAdapter,
    observability: Optional[ObservabilityQueue] = None,
) -> PipelineEngine:
    oracle = OracleClient(adapter, RateLimiter(settings.rate_limit_delay_ms), observability)
    prompts = PromptRegistry(settings.prompts_dir)
    stages = RuleStages(oracle, reference_context=settings.reference_context)
    auditor = ConsistencyAuditor(oracle, prompts, prompt_key=settings.consistency_prompt)
    refiner = PromptRefiner(oracle, prompts, prompt_key=settings.refinement_prompt)
    descriptors = build_stage_descriptors(settings, stages, auditor, refiner)
    return PipelineEngine(descriptors, prompts=prompts, observability=observability)
