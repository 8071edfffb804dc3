"""MCP tool result schemas.

Tools never raise on caller mistakes.  Every result carries a ``status``
and, when ``status == "error"``, an ``error_code`` plus a human-readable
``message``.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from pydantic import Field

from memgarden.models.records import AgentMemoryStat
from memgarden.models.records import Memory
from memgarden.models.records import RefinementOutcome

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class MemoryEntry(BaseModel):
    """A memory as returned to callers (embedding omitted)."""

    key: str = Field(description="Public identifier of the memory.")
    name: str | None = Field(default=None, description="Unique human name, if set.")
    value: str = Field(description="Current text of the fact.")
    created_at: datetime
    modified_at: datetime
    last_reviewed_at: datetime | None = None
    last_tended_at: datetime | None = None
    last_accessed_at: datetime | None = None
    version_count: int = Field(default=0, description="Archived versions.")

    @classmethod
    def from_memory(cls, memory: Memory) -> MemoryEntry:
        return cls.model_validate(memory.model_dump(exclude={"id", "embedding"}))


class ToolStatus(BaseModel):
    status: str = Field(
        default="ok",
        description="Outcome status (ok, applied, unchanged, error).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure reason when status is error.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable detail for errors.",
    )


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class GetMemoryResult(ToolStatus):
    """Response from get_memory."""

    memory: MemoryEntry | None = Field(
        default=None,
        description="The memory, when found.",
    )


class MemoryListResult(ToolStatus):
    """Response from the listing tools."""

    memories: list[MemoryEntry] = Field(
        default_factory=list,
        description="Matching memories in the tool's documented order.",
    )
    returned: int = Field(default=0, description="Number of memories returned.")

    @classmethod
    def of(cls, memories: list[Memory]) -> MemoryListResult:
        entries = [MemoryEntry.from_memory(m) for m in memories]
        return cls(memories=entries, returned=len(entries))


class MutationResult(ToolStatus):
    """Response from attach_tag and link_memories."""


class LedgerResult(ToolStatus):
    """Response from record_served and record_relevant."""

    stat: AgentMemoryStat | None = Field(
        default=None,
        description="Counters for the (agent, memory) pair after the update.",
    )


class RefineResult(ToolStatus):
    """Response from refine_tags."""

    outcome: RefinementOutcome | None = Field(
        default=None,
        description="What the refinement pass did.",
    )
