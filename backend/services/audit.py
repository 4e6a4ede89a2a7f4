# services/audit.py
# Audit trail helper shared by the payment services.

from typing import Optional

import structlog

from schemas.domain import AuditEventType, AuditLogEntry
from storage.interfaces import IAuditLog

logger = structlog.get_logger(component="audit")


async def emit_audit(
    audit_log: IAuditLog,
    event_type: AuditEventType,
    entity_id: str,
    trace_id: str,
    previous_state: Optional[dict] = None,
    new_state: Optional[dict] = None,
    metadata: Optional[dict] = None,
    actor: str = "system",
) -> AuditLogEntry:
    """Append an audit log entry and mirror it to the log stream."""
    entry = AuditLogEntry(
        trace_id=trace_id,
        event_type=event_type,
        entity_id=entity_id,
        previous_state=previous_state,
        new_state=new_state,
        metadata=metadata or {},
        actor=actor,
    )
    await audit_log.append(entry)

    logger.info("audit_event",
                trace_id=trace_id,
                event_type=event_type.value,
                entity_id=entity_id,
                actor=actor)
    return entry
