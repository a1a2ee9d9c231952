from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

logger = logging.getLogger("app.audit")

AuditSink = Callable[[dict[str, Any]], None]

audit_entries: list[dict[str, Any]] = []
_sinks: list[AuditSink] = []


def register_sink(sink: AuditSink) -> None:
    _sinks.append(sink)


def clear_sinks() -> None:
    _sinks.clear()


def record(
    actor_user_id: str,
    tenant_id: str | None,
    entity_type: str,
    entity_id: str,
    action: str,
    changes: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    """Emit an audit entry. Sink failures are logged and never reach the caller."""

    entry = {
        "id": str(uuid.uuid4()),
        "action": action,
        "actor_id": actor_user_id,
        "tenant_id": tenant_id,
        "resource_type": entity_type,
        "resource_id": entity_id,
        "changes": changes,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)

    for sink in list(_sinks):
        try:
            sink(entry)
        except Exception as exc:
            logger.warning(
                "audit.sink_failed",
                extra={"action": action, "tenant_id": tenant_id, "error": str(exc)[:500]},
            )


def diff(before: dict[str, Any] | None, after: dict[str, Any] | None) -> dict[str, Any]:
    before = before or {}
    after = after or {}
    changed: dict[str, Any] = {}
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            changed[key] = {"from": before.get(key), "to": after.get(key)}
    return changed
