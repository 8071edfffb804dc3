"""Models domain — entity records, attribution and key codec."""

from __future__ import annotations

from memgarden.models.attribution import Actor
from memgarden.models.attribution import ActorKind
from memgarden.models.attribution import AgentRole
from memgarden.models.attribution import HUMAN
from memgarden.models.attribution import TAGGER
from memgarden.models.keys import decode_key
from memgarden.models.keys import encode_key
from memgarden.models.records import Agent
from memgarden.models.records import AgentMemoryStat
from memgarden.models.records import Edge
from memgarden.models.records import Memory
from memgarden.models.records import MemoryVersion
from memgarden.models.records import RefinementOutcome
from memgarden.models.records import RefinementStatus
from memgarden.models.records import Tag
from memgarden.models.records import TagAssignment
from memgarden.models.schemas import GetMemoryResult
from memgarden.models.schemas import LedgerResult
from memgarden.models.schemas import MemoryEntry
from memgarden.models.schemas import MemoryListResult
from memgarden.models.schemas import MutationResult
from memgarden.models.schemas import RefineResult

__all__ = [
    "Actor",
    "ActorKind",
    "Agent",
    "AgentMemoryStat",
    "AgentRole",
    "Edge",
    "GetMemoryResult",
    "HUMAN",
    "LedgerResult",
    "Memory",
    "MemoryEntry",
    "MemoryListResult",
    "MemoryVersion",
    "MutationResult",
    "RefineResult",
    "RefinementOutcome",
    "RefinementStatus",
    "TAGGER",
    "Tag",
    "TagAssignment",
    "decode_key",
    "encode_key",
]
