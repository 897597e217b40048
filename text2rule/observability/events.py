from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from text2rule.adapters.llm_base import ChatMessage
from text2rule.utils.time import utc_isoformat


@dataclass(frozen=True)
class ObservabilityEvent:
    """One oracle exchange, shipped to the telemetry sink after the fact."""

    agent_name: str
    messages: List[ChatMessage]
    output: str
    model: str
    trace_id: Optional[str] = None
    status: str = "success"
    model_parameters: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _output_payload(output: str) -> Dict[str, Any]:
    stripped = output.strip()
    if stripped.startswith(("{", "[")):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            return {"value": output}
        return parsed if isinstance(parsed, dict) else {"value": parsed}
    return {"value": output}


def _inputs(messages: List[ChatMessage]) -> List[Dict[str, str]]:
    return [
        {"role": message.get("role", "user"), "content": message.get("content", "")}
        for message in messages
    ]


def to_ingestion_batch(event: ObservabilityEvent, timestamp: str | None = None) -> Dict[str, Any]:
    """Build the ``{"batch": [trace-create, generation-create]}`` envelope."""
    timestamp = timestamp or utc_isoformat()
    trace_id = event.trace_id or uuid.uuid4().hex
    metadata = {key: str(value) for key, value in event.metadata.items()}
    metadata["status"] = event.status

    trace_body: Dict[str, Any] = {
        "id": trace_id,
        "timestamp": timestamp,
        "name": event.agent_name,
        "input": _inputs(event.messages),
        "metadata": metadata,
    }
    generation_body: Dict[str, Any] = {
        "id": uuid.uuid4().hex,
        "traceId": trace_id,
        "name": event.agent_name,
        "startTime": timestamp,
        "endTime": timestamp,
        "model": event.model,
        "modelParameters": {key: str(value) for key, value in event.model_parameters.items()},
        "input": _inputs(event.messages),
        "output": _output_payload(event.output),
        "metadata": metadata,
    }
    return {
        "batch": [
            {"id": uuid.uuid4().hex, "type": "trace-create", "timestamp": timestamp, "body": trace_body},
            {"id": uuid.uuid4().hex, "type": "generation-create", "timestamp": timestamp, "body": generation_body},
        ]
    }
