from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv
from jsonschema import ValidationError, validate

from text2rule.errors import ConfigurationError
from text2rule.gates.parsers import load_schema
from text2rule.utils.io import read_text

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "configs" / "pipeline.yaml"

DEFAULT_CONSISTENCY_THRESHOLD = 0.8
DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class StageOptions:
    prompt: str
    consistency_threshold: float = DEFAULT_CONSISTENCY_THRESHOLD
    max_retries: int = DEFAULT_MAX_RETRIES


@dataclass(frozen=True)
class OracleSettings:
    provider: str = "openai"
    model: str = "llama-3.3-70b-versatile"
    base_url: Optional[str] = None
    timeout_seconds: float = 60.0
    max_output_tokens: int = 1200
    temperature: float = 0.0
    max_attempts: int = 4


@dataclass(frozen=True)
class ObservabilitySettings:
    enabled: bool = False
    url: Optional[str] = None
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once and handed to every component."""

    prompts_dir: Path
    stages: Mapping[str, StageOptions]
    consistency_prompt: str = "consistency_check"
    refinement_prompt: str = "prompt_refinement"
    oracle: OracleSettings = field(default_factory=OracleSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)
    rate_limit_delay_ms: int = 0
    reference_context: str = ""

    def stage(self, key: str) -> StageOptions:
        options = self.stages.get(key)
        if options is None:
            raise ConfigurationError(f"No configuration for stage '{key}'")
        return options


def _stage_options(key: str, raw: Mapping) -> StageOptions:
    threshold = float(raw.get("consistency_threshold", DEFAULT_CONSISTENCY_THRESHOLD))
    max_retries = int(raw.get("max_retries", DEFAULT_MAX_RETRIES))
    if not 0.0 <= threshold <= 1.0:
        raise ConfigurationError(f"Stage '{key}': consistency_threshold must be within [0, 1]")
    if max_retries < 0:
        raise ConfigurationError(f"Stage '{key}': max_retries must not be negative")
    return StageOptions(prompt=raw["prompt"], consistency_threshold=threshold, max_retries=max_retries)


def _rate_limit_delay(raw: Mapping) -> int:
    override = os.getenv("TEXT2RULE_RATE_LIMIT_MS")
    if override:
        try:
            return max(0, int(override))
        except ValueError as exc:
            raise ConfigurationError("TEXT2RULE_RATE_LIMIT_MS must be an integer") from exc
    return int(raw.get("delay_ms", 0))


def load_settings(config_path: Path | None = None, env_file: Path | None = None) -> Settings:
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    raw = yaml.safe_load(read_text(path)) or {}
    try:
        validate(instance=raw, schema=load_schema("pipeline_config.schema.json"))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration in {path}: {exc.message}") from exc

    base_dir = path.parent
    prompts_dir = base_dir / raw.get("prompts_dir", "prompts")

    stages: Dict[str, StageOptions] = {
        key: _stage_options(key, options) for key, options in raw["stages"].items()
    }

    oracle_raw = raw.get("oracle", {})
    oracle = OracleSettings(
        provider=oracle_raw.get("provider", "openai"),
        model=oracle_raw.get("model", OracleSettings.model),
        base_url=oracle_raw.get("base_url"),
        timeout_seconds=float(oracle_raw.get("timeout_seconds", 60.0)),
        max_output_tokens=int(oracle_raw.get("max_output_tokens", 1200)),
        temperature=float(oracle_raw.get("temperature", 0.0)),
        max_attempts=int(oracle_raw.get("max_attempts", 4)),
    )

    observability_raw = raw.get("observability", {})
    observability = ObservabilitySettings(
        enabled=bool(observability_raw.get("enabled", False)),
        url=observability_raw.get("url"),
        public_key=os.getenv("LANGFUSE_PUBLIC_KEY"),
        secret_key=os.getenv("LANGFUSE_SECRET_KEY"),
        timeout_seconds=float(observability_raw.get("timeout_seconds", 10.0)),
    )

    reference_context = ""
    context_file = raw.get("reference_context_file")
    if context_file:
        context_path = base_dir / context_file
        if not context_path.exists():
            raise ConfigurationError(f"Reference context file not found: {context_path}")
        reference_context = read_text(context_path)

    return Settings(
        prompts_dir=prompts_dir,
        stages=stages,
        consistency_prompt=raw.get("consistency", {}).get("prompt", "consistency_check"),
        refinement_prompt=raw.get("refinement", {}).get("prompt", "prompt_refinement"),
        oracle=oracle,
        observability=observability,
        rate_limit_delay_ms=_rate_limit_delay(raw.get("rate_limit", {})),
        reference_context=reference_context,
    )
