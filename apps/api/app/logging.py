from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_log_context


# Structured extras allowed through to the JSON payload.
_HTTP_FIELDS = ("method", "path", "status_code", "duration_ms")
_CRM_FIELDS = ("contact_id", "deal_id", "action", "outcome", "status", "resource")
_EVENT_FIELDS = ("event_name", "event_type", "error")
ALLOWED_FIELDS = frozenset(_HTTP_FIELDS + _CRM_FIELDS + _EVENT_FIELDS)

_ERROR_TRUNCATE = 500
_CONTEXT_KEYS = ("correlation_id", "tenant_id")


def _stamp_context(record: logging.LogRecord, keys: tuple[str, ...]) -> logging.LogRecord:
    context = get_log_context()
    for key in keys:
        if not getattr(record, key, None):
            setattr(record, key, context[key])
    return record


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record, _CONTEXT_KEYS)
        return True


_default_factory = logging.getLogRecordFactory()


def _context_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # tenant_id is left to the filter so callers can still pass it via extra
    return _stamp_context(_default_factory(*args, **kwargs), ("correlation_id",))


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: envelope keys at the top, extras under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            payload[key] = getattr(record, key, None)

        fields = {key: value for key, value in vars(record).items() if key in ALLOWED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_ERROR_TRUNCATE]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root = logging.getLogger()
    if getattr(root, "_leadflow_configured", False):
        return

    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root.handlers[:] = [handler]
    root.setLevel(level)
    logging.setLogRecordFactory(_context_record_factory)
    root._leadflow_configured = True  # type: ignore[attr-defined]
