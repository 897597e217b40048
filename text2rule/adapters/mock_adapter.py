from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List

from .llm_base import LLMAdapter

_TASK_MARKER = re.compile(r"^#\s*task:\s*(\w+)", re.MULTILINE)
_SCHEDULE_HINTS = re.compile(
    r"\b(every|daily|weekly|monthly|monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    r"between|from \d|at \d|until)\b",
    re.IGNORECASE,
)
_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _task_of(prompt: str) -> str:
    match = _TASK_MARKER.search(prompt)
    return match.group(1) if match else ""


def _input_of(prompt: str) -> str:
    _, _, tail = prompt.rpartition("INPUT:\n")
    return tail.strip()


def _split_sentences(text: str) -> List[str]:
    return [part.strip() for part in re.split(r"(?<=[.;])\s+", text) if part.strip()]


def _split_if_then(text: str) -> tuple[str, str]:
    match = re.match(r"\s*(?:if\s+)?(.*?)\s*(?:,\s*)?\bthen\b\s*(.*)", text, re.IGNORECASE | re.DOTALL)
    if match:
        return match.group(1).strip(" ,."), match.group(2).strip(" ,.")
    return text.strip(" ,."), ""


@dataclass
class MockAdapter(LLMAdapter):
    """Offline oracle answering each prompt by its ``# task:`` marker."""

    model_name: str = "mock"
    similarity_score: float = 0.95
    valid: bool = True

    def generate(self, prompt: str) -> str:
        task = _task_of(prompt)
        text = _input_of(prompt)
        if task == "condition_synthesis":
            return self._synthesize(json.loads(text))
        if task == "prompt_refinement":
            return self._refine(json.loads(text))
        return json.dumps(self._build_payload(task, text))

    def _build_payload(self, task: str, text: str) -> Any:
        if task == "validation":
            if self.valid and text:
                return {"is_valid": True, "issues_detected": []}
            return {"is_valid": False, "issues_detected": ["Statement is not a business rule"]}
        if task == "decomposition":
            sentences = _split_sentences(text)
            schedule = [s for s in sentences if _SCHEDULE_HINTS.search(s) and " then " not in s.lower()]
            normal = [s for s in sentences if s not in schedule]
            return {
                "normal_statements": normal or [text],
                "schedule": " ".join(schedule) or None,
            }
        if task == "schedule_extraction":
            days = [day.capitalize()[:3] for day in _WEEKDAYS if day in text.lower()]
            return {
                "schedule_type": "Weekly" if days else "Daily",
                "days": days,
                "description": text,
            }
        if task == "condition_extraction":
            segments = []
            for sentence in _split_sentences(text):
                condition, action = _split_if_then(sentence)
                segments.append({"rule": sentence, "condition": condition, "actions": action})
            return segments
        if task == "rule_conversion":
            condition, action = _split_if_then(text)
            conditions = [c.strip() for c in re.split(r"\band\b", condition, flags=re.IGNORECASE) if c.strip()]
            return {
                "conditions": conditions or [text],
                "action": action,
                "policy": None,
                "schedule": None,
                "sampling": None,
            }
        if task == "action_extraction":
            lowered = text.lower()
            channel = next((c.upper() for c in ("sms", "email", "push", "ussd") if c in lowered), None)
            amounts = re.findall(r"\d+(?:\.\d+)?\s*[A-Za-z%]*", text)
            parameters: Dict[str, str] = {}
            if amounts:
                parameters["amount"] = amounts[0].strip()
            return {"action_name": text[:60] or "Unknown", "channel": channel, "parameters": parameters}
        if task == "consistency_check":
            return {"similarity_score": self.similarity_score, "missing": [], "added": []}
        return {}

    def _synthesize(self, payload: Dict[str, Any]) -> str:
        conditions = payload.get("conditions") or []
        return " AND ".join(f"({condition})" for condition in conditions)

    def _refine(self, payload: Dict[str, Any]) -> str:
        original = payload.get("original_prompt", "")
        feedback = (payload.get("feedback") or "").splitlines()
        hint = feedback[0] if feedback else "Preserve every condition and action."
        return f"{original}\n\nAddress this before answering: {hint}"
