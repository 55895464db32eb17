"""Audit trail for ledger-affecting actions.

Entries carry the request id (HTTP) or job id (worker) bound in the structlog
context, so an audit row can be traced back to its log lines.
"""

from typing import Any

import structlog

from app.models.audit_log import AuditEvent, AuditLog


async def log_event(
    user_id: str | None,
    event: AuditEvent,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    actor_id: str | None = None,
) -> AuditLog:
    ctx = structlog.contextvars.get_contextvars()
    entry = AuditLog(
        event_type=event,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        actor_id=actor_id,
        correlation_id=ctx.get("request_id") or ctx.get("job_id"),
        metadata=metadata or {},
    )
    await entry.insert()
    return entry
