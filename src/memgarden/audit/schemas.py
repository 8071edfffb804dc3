"""Audit event model.

Events are plain JSON lines; ``payload`` holds the memory keys, tags and
outcome fields relevant to each event type.
"""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(StrEnum):
    MEMORY_CREATED = "MEMORY_CREATED"
    MEMORY_UPDATED = "MEMORY_UPDATED"
    MEMORY_DELETED = "MEMORY_DELETED"
    TAG_ATTACHED = "TAG_ATTACHED"
    TAG_DETACHED = "TAG_DETACHED"
    EDGE_LINKED = "EDGE_LINKED"
    EDGE_UNLINKED = "EDGE_UNLINKED"
    REFINEMENT_RUN = "REFINEMENT_RUN"


class AuditEvent(BaseModel):
    """One attributed mutation, frozen once written."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch seconds at which the mutation was recorded.",
    )
    event_type: AuditEventType
    actor: str | None = Field(
        default=None,
        description="Serialized actor (``human`` or ``agent:<role>``).",
    )
    payload: dict[str, Any] = Field(default_factory=dict)
