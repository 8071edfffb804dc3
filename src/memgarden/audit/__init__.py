"""Audit subsystem — async JSONL log of attributed mutations."""

from memgarden.audit.schemas import AuditEvent
from memgarden.audit.schemas import AuditEventType
from memgarden.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
