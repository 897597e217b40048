from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

ChatMessage = Dict[str, str]


@dataclass
class LLMResponse:
    raw_text: str
    usage: Dict[str, Any] = field(default_factory=dict)


def flatten_messages(messages: List[ChatMessage]) -> str:
    return "\n\n".join(message.get("content", "") for message in messages)


class LLMAdapter(Protocol):
    model_name: str

    def generate(self, prompt: str) -> str:
        raise NotImplementedError

    def chat(self, messages: List[ChatMessage]) -> str:
        return self.generate(flatten_messages(messages))

    def complete(self, prompt: str) -> LLMResponse:
        return LLMResponse(raw_text=self.generate(prompt))
