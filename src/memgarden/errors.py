"""Error kinds raised by the memory core."""

from __future__ import annotations


class MemgardenError(Exception):
    """Base class for every error raised by the core."""


class NotFound(MemgardenError):
    """Lookup by key, name or id matched nothing."""

    def __init__(self, kind: str, ref: object) -> None:
        super().__init__(f"{kind} not found: {ref!r}")
        self.kind = kind
        self.ref = ref


class DuplicateIdentifier(MemgardenError):
    """A name or key collided with an existing memory."""


class InvalidInput(MemgardenError, ValueError):
    """Caller-supplied data failed validation."""


class InvalidEdge(InvalidInput):
    """Self-loop, or an edge endpoint that does not exist."""


class ConcurrentModificationConflict(MemgardenError):
    """A compound write kept racing another writer and gave up."""


class ReasoningUnavailable(MemgardenError):
    """The external reasoner failed or timed out during a propose step."""


class ReferentialViolation(MemgardenError):
    """A delete could not cascade to its dependent records."""
