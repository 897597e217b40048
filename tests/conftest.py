import json
import threading
from pathlib import Path
from typing import Dict, List

import pytest

from text2rule.adapters.llm_base import LLMAdapter
from text2rule.config import DEFAULT_CONFIG_PATH, load_settings
from text2rule.oracle import OracleClient
from text2rule.prompts import PromptRegistry

PROMPTS_DIR = DEFAULT_CONFIG_PATH.parent / "prompts"

STATEMENT = (
    "If a subscriber recharges more than 100 in a week then give 1GB bonus via SMS. "
    "Run every Monday between 10:00 and 12:00."
)


def task_of(prompt: str) -> str:
    first = prompt.splitlines()[0] if prompt else ""
    return first.replace("# task:", "").strip()


class ScriptedAdapter(LLMAdapter):
    """Answers by task marker from a per-task script.

    Each script entry is a string, a dict/list (sent as JSON) or an
    exception instance (raised). The last entry repeats once the script
    runs out.
    """

    model_name = "scripted"

    def __init__(self, scripts: Dict[str, list] = None, fallback=None):
        self.scripts = {key: list(values) for key, values in (scripts or {}).items()}
        self.fallback = fallback
        self.prompts: List[str] = []
        self.calls: Dict[str, int] = {}
        self._lock = threading.Lock()

    def generate(self, prompt: str) -> str:
        task = task_of(prompt)
        with self._lock:
            self.prompts.append(prompt)
            self.calls[task] = self.calls.get(task, 0) + 1
            script = self.scripts.get(task)
            if script:
                answer = script.pop(0) if len(script) > 1 else script[0]
            else:
                answer = self.fallback
        if answer is None:
            raise AssertionError(f"No scripted answer for task '{task}'")
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, (dict, list)):
            return json.dumps(answer)
        return answer

    def prompts_for(self, task: str) -> List[str]:
        return [p for p in self.prompts if task_of(p) == task]


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.delenv("TEXT2RULE_RATE_LIMIT_MS", raising=False)
    return load_settings(env_file=Path("/nonexistent/.env"))


@pytest.fixture
def prompts():
    return PromptRegistry(PROMPTS_DIR)


@pytest.fixture
def scripted():
    def factory(scripts=None, fallback=None):
        return ScriptedAdapter(scripts, fallback)

    return factory


@pytest.fixture
def oracle_for():
    def factory(adapter, observability=None):
        return OracleClient(adapter, observability=observability)

    return factory
