"""Structured JSON log events shared by core modules and the API."""

from __future__ import annotations

import json
import logging
from typing import Any


def dump_json(payload: dict[str, Any]) -> str:
    return json.dumps(
        payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str
    )


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log one event as a compact, key-sorted JSON object."""

    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **fields}
    logger.log(level, dump_json(payload))
