"""Structured JSON logging with run_id support and secret redaction."""
from __future__ import annotations

import contextvars
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

# Context variable for the active pipeline run
run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "run_id", default=""
)

REDACTED = "[REDACTED]"

SECRET_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"gh[pousr]_[A-Za-z0-9_]{36,255}"),
    re.compile(r"github_pat_[A-Za-z0-9_]{36,255}"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
    re.compile(r"sk-[A-Za-z0-9_-]{20,}"),
    re.compile(r"AIza[0-9A-Za-z_-]{35}"),
    re.compile(r"xox[abpr]-[A-Za-z0-9-]{10,}"),
    re.compile(r"(?i)(password|api[_-]?key|secret|token)([\"'\s:=]+)[^\s\"',]+"),
]

_SECRET_KEY_RE = re.compile(
    r"(?i)(password|secret|api[_-]?key|credential|authorization|access[_-]?token|^token$)"
)


def redact_text(text: str) -> str:
    """Mask secret-looking substrings in *text*."""
    for pattern in SECRET_PATTERNS:
        if pattern.groups >= 2:
            text = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
        else:
            text = pattern.sub(REDACTED, text)
    return text


def redact_object(obj: Any) -> Any:
    """Recursively redact secret-named keys and secret-looking strings."""
    if isinstance(obj, str):
        return redact_text(obj)
    if isinstance(obj, list):
        return [redact_object(item) for item in obj]
    if isinstance(obj, dict):
        redacted: dict[str, Any] = {}
        for key, value in obj.items():
            if _SECRET_KEY_RE.search(str(key)):
                redacted[key] = REDACTED
            else:
                redacted[key] = redact_object(value)
        return redacted
    return obj


class RedactingFilter(logging.Filter):
    """Rewrites each record's message with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact_text(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with the service and current run id."""

    def __init__(self, service_name: str = "stage-pipeline") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service_name": self.service_name,
            "logger": record.name,
            "run_id": run_id_var.get(""),
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = redact_text(repr(record.exc_info[1]))
        return json.dumps(entry, default=str)


def setup_logging(service_name: str, level: str = "INFO") -> logging.Logger:
    """Route every ``src.*`` logger to a single redacting JSON stream handler.

    Calling it again replaces the handler instead of stacking a second one.
    Unknown *level* names fall back to INFO.
    """
    root = logging.getLogger("src")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in list(root.handlers):
        root.removeHandler(existing)

    stream = logging.StreamHandler()
    stream.addFilter(RedactingFilter())
    stream.setFormatter(JSONFormatter(service_name))
    root.addHandler(stream)
    return root
