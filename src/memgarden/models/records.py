"""Pydantic models for the persisted entities.

These mirror what is stored in Neo4j: memories and their archived
versions, tags and tag assignments, typed edges, agents and the
per-(agent, memory) interaction counters.  Attribution fields hold the
serialized :class:`~memgarden.models.attribution.Actor` string.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel
from pydantic import Field


class Memory(BaseModel):
    """A single attributed fact."""

    id: int = Field(description="Internal identifier, never reused.")
    key: str = Field(description="Public identifier derived from ``id``.")
    name: str | None = Field(
        default=None,
        description="Optional unique human-chosen name.",
    )
    value: str = Field(description="Current text of the fact.")
    embedding: list[float] | None = Field(
        default=None,
        description="Opaque fixed-length vector supplied by the caller.",
    )
    created_at: datetime
    modified_at: datetime = Field(
        description="Last time ``value`` changed.",
    )
    last_reviewed_at: datetime | None = None
    last_tended_at: datetime | None = None
    last_accessed_at: datetime | None = None
    version_count: int = Field(
        default=0,
        description="Number of archived versions.",
    )


class MemoryVersion(BaseModel):
    """Immutable snapshot of a value that has since been replaced."""

    model_config = {"frozen": True}

    memory_id: int
    seq: int = Field(description="1-based position in the memory's history.")
    value: str
    embedding: list[float] | None = None
    modified_at: datetime = Field(
        description="When this value was written.",
    )
    superseded_at: datetime = Field(
        description="When this value stopped being current.",
    )
    modified_by: str = Field(description="Actor that replaced this value.")
    modification_reason: str | None = None


class Tag(BaseModel):
    model_config = {"frozen": True}

    name: str


class TagAssignment(BaseModel):
    """A tag attached to one memory."""

    memory_key: str
    tag: str
    added_at: datetime
    added_by: str


class Edge(BaseModel):
    """A typed relation between two memories."""

    from_key: str
    to_key: str
    edge_type: str
    bidirectional: bool = False
    created_at: datetime
    created_by: str


class Agent(BaseModel):
    name: str
    description: str | None = None
    created_at: datetime


class AgentMemoryStat(BaseModel):
    """Serve/relevance counters for one (agent, memory) pair."""

    agent: str
    memory_key: str
    times_served: int = 0
    times_relevant: int = 0
    last_served_at: datetime | None = None
    last_relevant_at: datetime | None = None


class RefinementStatus(StrEnum):
    """Result of one refinement attempt on a tag combination."""

    not_needed = "not_needed"
    refined = "refined"
    partial = "partial"
    deferred = "deferred"
    superseded = "superseded"
    empty = "empty"


class RefinementOutcome(BaseModel):
    """What a refinement pass did (or why it did nothing)."""

    status: RefinementStatus
    combination: list[str] = Field(description="Sorted tag names.")
    count_before: int = 0
    count_after: int | None = None
    applied: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Subtag label -> memory keys it was attached to.",
    )
    reason: str | None = None
