from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from orthoflow.context import get_correlation_id
from orthoflow.core.config import get_settings

# Structured fields allowed into the JSON line. Anything else passed via ``extra`` is dropped,
# so entity payloads never reach the log stream.
LOGGED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "entity_type",
        "entity_id",
        "action",
        "from_status",
        "to_status",
        "actor_id",
        "attempt",
        "transition_record_id",
        "tags",
        "error_code",
        "error",
        "event_name",
        "event_payload",
    }
)
_MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _correlated_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in LOGGED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        line = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(line, default=str)


def configure_logging() -> None:
    """Route every logger through one JSON handler on stdout. Safe to call more than once."""
    root = logging.getLogger()
    if getattr(root, "_orthoflow_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    logging.setLogRecordFactory(_correlated_record)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    root._orthoflow_configured = True  # type: ignore[attr-defined]
