from __future__ import annotations

from datetime import datetime, timezone


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def utc_isoformat() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
