from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from text2rule.errors import ConfigurationError
from text2rule.utils.io import read_text


def compose_prompt(instruction: str, payload: Any) -> str:
    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"{instruction}\n\nINPUT:\n{body}\n"


class PromptRegistry:
    """Stage instructions, one Markdown file per key under ``prompts_dir``."""

    def __init__(self, prompts_dir: Path, overrides: Optional[Mapping[str, str]] = None) -> None:
        self.prompts_dir = prompts_dir
        self._cache: Dict[str, str] = dict(overrides or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str:
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        path = self.prompts_dir / f"{key}.md"
        if not path.exists():
            raise ConfigurationError(f"Prompt template '{key}' not found at {path}")
        template = read_text(path).strip()
        if not template:
            raise ConfigurationError(f"Prompt template '{key}' is empty")
        with self._lock:
            self._cache[key] = template
        return template
