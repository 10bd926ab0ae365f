"""Structured logging configuration.

- Development: human-readable format on stderr
- Production (or ``LOG_JSON=true``): one JSON object per line
- Level controlled by ``LOG_LEVEL``
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from app.core.config import Settings

# Extra fields promoted into JSON log lines when passed via ``extra=``.
CONTEXT_FIELDS = (
    "allocation_id",
    "phase_id",
    "project_id",
    "consultant_id",
    "actor_id",
    "event_type",
    "new_status",
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = str(value)
        return json.dumps(entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    """Compact single-line formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        context = " ".join(
            f"{key}={getattr(record, key)}" for key in CONTEXT_FIELDS if getattr(record, key, None) is not None
        )
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if context:
            line += f" [{context}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(settings: Settings) -> None:
    """Install a single stderr handler on the root logger."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    formatter: logging.Formatter = (
        JSONFormatter() if settings.log_json or settings.is_production else ReadableFormatter()
    )

    root = logging.getLogger()
    # Replace only our own handler so repeated create_app() calls do not stack output.
    for existing in list(root.handlers):
        if getattr(existing, "_allocations_handler", False):
            root.removeHandler(existing)
    handler = logging.StreamHandler(sys.stderr)
    handler._allocations_handler = True  # type: ignore[attr-defined]
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("sqlalchemy.engine", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
