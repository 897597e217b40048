from __future__ import annotations

import logging
import os
import time
from typing import List, Optional

from openai import OpenAI
from openai import APIConnectionError, APIError, APITimeoutError, InternalServerError, RateLimitError

from text2rule.config import OracleSettings
from text2rule.errors import ConfigurationError, OracleCommunicationError

from .llm_base import ChatMessage, LLMAdapter, LLMResponse

logger = logging.getLogger(__name__)


class OpenAIAdapter(LLMAdapter):
    """Chat-completions client; also serves OpenAI-compatible hosts such as Groq."""

    def __init__(self, settings: OracleSettings, api_key: Optional[str] = None) -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set.")
        self.settings = settings
        self.model_name = settings.model
        self.client = OpenAI(
            api_key=self.api_key,
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            max_retries=0,
        )

    def complete_messages(self, messages: List[ChatMessage]) -> LLMResponse:
        attempt = 0
        backoff = 1.0
        while True:
            attempt += 1
            try:
                response = self.client.chat.completions.create(
                    model=self.model_name,
                    messages=messages,
                    max_tokens=self.settings.max_output_tokens,
                    temperature=self.settings.temperature,
                )
                content = response.choices[0].message.content
                if content is None:
                    raise OracleCommunicationError("OpenAI returned empty content.")
                usage = getattr(response, "usage", None)
                usage_payload = {}
                if usage:
                    usage_payload = {
                        "prompt_tokens": getattr(usage, "prompt_tokens", None),
                        "completion_tokens": getattr(usage, "completion_tokens", None),
                        "total_tokens": getattr(usage, "total_tokens", None),
                    }
                    logger.debug(
                        "model=%s prompt_tokens=%s completion_tokens=%s total_tokens=%s",
                        self.model_name,
                        usage_payload["prompt_tokens"],
                        usage_payload["completion_tokens"],
                        usage_payload["total_tokens"],
                    )
                return LLMResponse(raw_text=content, usage=usage_payload)
            except RateLimitError as exc:
                error = getattr(exc, "error", None)
                code = getattr(error, "code", None)
                if code == "insufficient_quota":
                    raise OracleCommunicationError(
                        "OpenAI API quota exceeded. Please enable billing for the account."
                    ) from exc
                if attempt >= self.settings.max_attempts:
                    raise OracleCommunicationError(f"Rate limited after {attempt} attempts") from exc
            except (APITimeoutError, APIConnectionError, InternalServerError) as exc:
                if attempt >= self.settings.max_attempts:
                    raise OracleCommunicationError(
                        f"{type(exc).__name__} after {attempt} attempts"
                    ) from exc
            except APIError as exc:
                raise OracleCommunicationError(f"OpenAI request failed: {exc}") from exc
            logger.warning("transient OpenAI error, retrying in %.1fs (attempt %d)", backoff, attempt)
            time.sleep(backoff)
            backoff *= 2

    def complete(self, prompt: str) -> LLMResponse:
        return self.complete_messages([{"role": "user", "content": prompt}])

    def generate(self, prompt: str) -> str:
        return self.complete(prompt).raw_text

    def chat(self, messages: List[ChatMessage]) -> str:
        return self.complete_messages(messages).raw_text
