from __future__ import annotations

import logging
from typing import List, Optional

from text2rule.adapters.llm_base import ChatMessage, LLMAdapter
from text2rule.errors import OracleCommunicationError, Text2RuleError
from text2rule.observability.event_queue import ObservabilityQueue
from text2rule.observability.events import ObservabilityEvent
from text2rule.utils.logging_config import current_trace_id
from text2rule.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class OracleClient:
    """Adapter wrapper shared by every stage.

    Applies the per-call delay, turns adapter failures into
    ``OracleCommunicationError`` and records each exchange on the
    observability queue.
    """

    def __init__(
        self,
        adapter: LLMAdapter,
        rate_limiter: Optional[RateLimiter] = None,
        observability: Optional[ObservabilityQueue] = None,
    ) -> None:
        self.adapter = adapter
        self.rate_limiter = rate_limiter or RateLimiter()
        self.observability = observability

    @property
    def model_name(self) -> str:
        return getattr(self.adapter, "model_name", "unknown")

    def generate(self, prompt: str, *, agent_name: str) -> str:
        messages = [{"role": "user", "content": prompt}]
        return self._call(agent_name, messages, lambda: self.adapter.generate(prompt))

    def chat(self, messages: List[ChatMessage], *, agent_name: str) -> str:
        return self._call(agent_name, messages, lambda: self.adapter.chat(messages))

    def _call(self, agent_name: str, messages: List[ChatMessage], send) -> str:
        self.rate_limiter.apply()
        logger.debug("oracle call agent=%s model=%s", agent_name, self.model_name)
        try:
            output = send()
        except Text2RuleError as exc:
            self._record(agent_name, messages, str(exc), status="error")
            raise
        except Exception as exc:
            self._record(agent_name, messages, str(exc), status="error")
            raise OracleCommunicationError(f"{agent_name}: oracle call failed: {exc}") from exc
        output = output or ""
        self._record(agent_name, messages, output)
        return output

    def _record(self, agent_name: str, messages: List[ChatMessage], output: str, status: str = "success") -> None:
        if self.observability is None:
            return
        self.observability.offer(
            ObservabilityEvent(
                agent_name=agent_name,
                messages=list(messages),
                output=output,
                model=self.model_name,
                trace_id=current_trace_id.get(),
                status=status,
            )
        )
