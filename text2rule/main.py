from __future__ import annotations

import argparse
import os
from pathlib import Path

from text2rule.config import Settings, load_settings
from text2rule.errors import ConfigurationError
from text2rule.observability.event_queue import ObservabilityQueue
from text2rule.observability.worker import start_telemetry
from text2rule.pipeline.builder import build_adapter, build_engine
from text2rule.utils.io import read_text, write_json, write_text
from text2rule.utils.logging_config import configure_logging
from text2rule.utils.time import utc_timestamp

PROVIDER_KEYS = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Text to rule pipeline")
    parser.add_argument("--mode", choices=["mock", "live"], required=True)
    parser.add_argument(
        "--statement",
        action="append",
        required=True,
        help="File holding one business-rule statement; repeat for several",
    )
    parser.add_argument("--config", default=None, help="Pipeline YAML (defaults to the bundled one)")
    parser.add_argument("--workers", type=_positive_int, default=4)
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--json-logs", action="store_true")
    return parser


def _ensure_env(settings: Settings) -> None:
    key = PROVIDER_KEYS.get(settings.oracle.provider)
    if key and not os.getenv(key):
        raise ConfigurationError(
            f"Missing required API key: {key}. Create a .env file from .env.example and set the key."
        )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args.log_level, json_format=args.json_logs)

    base_dir = Path.cwd()
    settings = load_settings(Path(args.config) if args.config else None, env_file=base_dir / ".env")
    if args.mode == "live":
        _ensure_env(settings)

    statement_paths = [Path(p) for p in args.statement]
    for path in statement_paths:
        if not path.exists():
            raise ConfigurationError(f"Statement file not found: {path}")
    statements = [read_text(path).strip() for path in statement_paths]

    run_dir = base_dir / "runs" / utc_timestamp()
    queue = ObservabilityQueue(enabled=settings.observability.enabled)
    worker = start_telemetry(settings.observability, queue)
    try:
        engine = build_engine(settings, build_adapter(args.mode, settings), observability=queue)
        states = engine.run_many(statements, max_workers=args.workers)
    finally:
        if worker is not None:
            worker.stop(timeout=30)

    for index, (path, state) in enumerate(zip(statement_paths, states), start=1):
        statement_dir = run_dir / f"{index:02d}_{path.stem}"
        write_text(statement_dir / "input.txt", state.input_text + "\n")
        write_json(statement_dir / "state.json", state.summary())
        if state.tree is not None and not state.terminal_failure:
            write_json(statement_dir / "tree.json", state.tree.to_dict())
        outcome = state.failure_reason or "completed"
        print(f"[{state.status}] {path}: {outcome}")

    print(f"Run artifacts written to {run_dir}")


if __name__ == "__main__":
    main()
