from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, Optional

from jsonschema import ValidationError, validate

from text2rule.errors import ParseError
from text2rule.utils.io import read_text

SCHEMAS_DIR = Path(__file__).resolve().parents[1] / "schemas"

_PAIRS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    fenced = re.findall(r"```(?:[a-z]+)?\s*(.*?)```", text, flags=re.DOTALL | re.IGNORECASE)
    if fenced:
        return "\n".join(block.strip() for block in fenced)
    return text.strip()


def extract_json_text(raw_text: str | None) -> Optional[str]:
    """Cut the JSON payload out of a free-text oracle answer.

    Returns the span from the first opening bracket to the last closing
    bracket of the same kind, which strips code fences and surrounding
    prose. Falls back to the other bracket kind when the first one is never
    closed.
    """
    if not raw_text:
        return None
    openings = sorted(
        (raw_text.find(char), char) for char in _PAIRS if char in raw_text
    )
    for start, opening in openings:
        end = raw_text.rfind(_PAIRS[opening])
        if end > start:
            return raw_text[start : end + 1]
    return None


def _snippet(raw_text: str) -> str:
    snippet = raw_text.strip().replace("\n", " ")
    return (snippet[:200] + "...") if len(snippet) > 200 else snippet


def extract_json(raw_text: str | None) -> Any:
    candidate = extract_json_text(raw_text)
    if candidate is None:
        raise ParseError(f"No JSON payload found in response. Snippet: {_snippet(raw_text or '')}")
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed JSON in response ({exc.msg}). Snippet: {_snippet(candidate)}") from exc


def load_schema(name: str) -> Dict:
    return json.loads(read_text(SCHEMAS_DIR / name))


def extract_validated(raw_text: str | None, schema_name: str) -> Any:
    parsed = extract_json(raw_text)
    try:
        validate(instance=parsed, schema=load_schema(schema_name))
    except ValidationError as exc:
        raise ParseError(f"Response does not match {schema_name}: {exc.message}") from exc
    return parsed
