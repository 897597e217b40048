from __future__ import annotations

import logging
import os
import random
import time
from typing import List, Optional

from google import genai
from google.genai import types

from text2rule.config import OracleSettings
from text2rule.errors import ConfigurationError, OracleCommunicationError

from .llm_base import ChatMessage, LLMAdapter

logger = logging.getLogger(__name__)


class GeminiAdapter(LLMAdapter):
    def __init__(self, settings: OracleSettings, api_key: Optional[str] = None) -> None:
        api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is not set.")

        self.client = genai.Client(api_key=api_key)
        self.settings = settings
        self.model_name = settings.model

        self.model_candidates: List[str] = [settings.model]
        for fallback in ("gemini-flash-latest", "gemini-1.5-pro"):
            if fallback not in self.model_candidates:
                self.model_candidates.append(fallback)

        self.max_attempts = settings.max_attempts
        self.base_delay = float(os.getenv("GEMINI_BASE_DELAY_SECONDS", "1.0"))

    def _is_transient(self, err: Exception) -> bool:
        msg = str(err).lower()
        return any(s in msg for s in ["503", "unavailable", "429", "too many", "timeout", "temporarily"])

    def _generate(self, contents, system_instruction: Optional[str] = None) -> str:
        last_err: Exception | None = None
        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=self.settings.temperature,
            max_output_tokens=self.settings.max_output_tokens,
        )

        for model in self.model_candidates:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    logger.debug("model=%s attempt=%d/%d", model, attempt, self.max_attempts)
                    response = self.client.models.generate_content(
                        model=model,
                        contents=contents,
                        config=config,
                    )
                    text = getattr(response, "text", None)
                    if not text:
                        raise OracleCommunicationError("Gemini returned empty content.")
                    self.model_name = model
                    return text

                except Exception as e:
                    last_err = e
                    if not self._is_transient(e):
                        break

                    delay = self.base_delay * (2 ** (attempt - 1)) + random.random() * 0.5
                    logger.warning("transient Gemini error: %s -> sleeping %.2fs", e, delay)
                    time.sleep(delay)

            logger.warning("switching Gemini model after failures: %s", model)

        raise OracleCommunicationError(
            "Gemini generate_content failed for all candidate models. "
            f"Last error: {last_err}"
        ) from last_err

    def generate(self, prompt: str) -> str:
        return self._generate(prompt)

    def chat(self, messages: List[ChatMessage]) -> str:
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        turns = [
            types.Content(
                role="model" if m.get("role") == "assistant" else "user",
                parts=[types.Part.from_text(text=m.get("content", ""))],
            )
            for m in messages
            if m.get("role") != "system"
        ]
        if not turns:
            return self._generate(system)
        return self._generate(turns, system_instruction=system or None)
