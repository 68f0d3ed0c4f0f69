"""
Logging setup.

Console output goes through rich; ``json_lines`` switches to one JSON object
per line for log shippers.
"""

import json
import logging
import time
from typing import Any, Dict

from rich.logging import RichHandler

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class _JsonLinesFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Json = {
            "ts_ms": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def configure_logging(level: str = "INFO", json_lines: bool = False) -> None:
    """Configure the root logger. Safe to call multiple times."""
    numeric_level = getattr(logging, (level or "INFO").strip().upper(), logging.INFO)

    root = logging.getLogger()
    if getattr(root, "_depin_configured", False):
        root.setLevel(numeric_level)
        for existing in root.handlers:
            existing.setLevel(numeric_level)
        return

    if json_lines:
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(_JsonLinesFormatter())
    else:
        handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(numeric_level)

    root.handlers = [handler]
    root.setLevel(numeric_level)
    setattr(root, "_depin_configured", True)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a single structured event as one JSON object."""
    payload: Json = {"ts_ms": _now_ms(), "event": str(event)}
    payload.update(fields)
    try:
        message = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        parts = [f"event={event}"] + [f"{k}={fields.get(k)!r}" for k in sorted(fields.keys())]
        message = " ".join(parts)
    logger.log(level, message)
