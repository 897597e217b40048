from __future__ import annotations

import logging
import re

from text2rule.oracle import OracleClient
from text2rule.prompts import PromptRegistry, compose_prompt

logger = logging.getLogger(__name__)

WHOLE_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\n(.*?)\n?```\s*$", re.DOTALL)


def unwrap_fenced_answer(text: str) -> str:
    """Drop the fence only when the whole answer is one fenced block."""
    match = WHOLE_FENCE.match(text)
    if match and "```" not in match.group(1):
        return match.group(1).strip()
    return text.strip()


class PromptRefiner:
    def __init__(self, oracle: OracleClient, prompts: PromptRegistry, prompt_key: str = "prompt_refinement") -> None:
        self.oracle = oracle
        self.prompts = prompts
        self.prompt_key = prompt_key

    def refine(
        self,
        original_prompt: str,
        input_text: str,
        previous_output: str | None,
        feedback: str | None,
        attempt_number: int,
    ) -> str:
        """Ask the oracle for a better stage instruction.

        Falls back to ``original_prompt`` whenever no usable answer comes back.
        """
        payload = {
            "original_prompt": original_prompt,
            "input_text": input_text,
            "previous_output": previous_output or "",
            "feedback": feedback or "",
            "attempt": attempt_number,
        }
        try:
            meta_prompt = compose_prompt(self.prompts.get(self.prompt_key), payload)
            raw = self.oracle.generate(meta_prompt, agent_name="PromptRefiner")
        except Exception as exc:
            logger.warning("prompt refinement failed on attempt %d, keeping prompt: %s", attempt_number, exc)
            return original_prompt
        refined = unwrap_fenced_answer(raw or "")
        if not refined:
            logger.warning("prompt refinement returned nothing on attempt %d, keeping prompt", attempt_number)
            return original_prompt
        logger.info("prompt refined for attempt %d (%d chars)", attempt_number, len(refined))
        return refined
