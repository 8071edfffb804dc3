"""Retrieval/reasoning boundary — the narrow surface external reasoners use.

Reads (lookup, tag/temporal listing, neighbor traversal, review queues)
and the four mutation primitives a reasoning pass needs to record its
outcome: attach a tag, link two memories, record a serve, record a
relevance judgment.

Similarity search is not done here.  ``serve`` takes a candidate set that
was narrowed elsewhere and, when a query vector and a :class:`VectorIndex`
are both supplied, lets the index re-rank it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from datetime import timedelta
from typing import Literal
from typing import Protocol
from typing import runtime_checkable

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction

from memgarden.errors import InvalidInput
from memgarden.errors import NotFound
from memgarden.graph._tx import memory_from_props
from memgarden.graph._tx import run_read
from memgarden.graph.relationships import RelationshipGraph
from memgarden.ledger import AgentLedger
from memgarden.models import Actor
from memgarden.models import AgentMemoryStat
from memgarden.models import Memory
from memgarden.observability import measure
from memgarden.records import MemoryRecordStore
from memgarden.taxonomy import TagTaxonomyEngine
from memgarden.temporal import TemporalTracker

logger = logging.getLogger(__name__)

TagMatch = Literal["all", "any"]

DEFAULT_LIST_LIMIT = 50


@runtime_checkable
class VectorIndex(Protocol):
    """External similarity index used to order a candidate set."""

    async def rank(
        self,
        query_vector: Sequence[float],
        candidate_keys: Sequence[str],
        limit: int | None = None,
    ) -> list[str]:
        """Return candidate keys ordered by similarity, best first."""
        ...


def _list_query(
    *,
    tags: list[str],
    match: TagMatch,
    modified_since: datetime | None,
    accessed_since: datetime | None,
) -> str:
    clauses = ["MATCH (m:Memory)"]
    where: list[str] = []
    if tags:
        clauses.append("OPTIONAL MATCH (m)-[:TAGGED]->(t:Tag) WHERE t.name IN $tags")
        clauses.append("WITH m, count(DISTINCT t) AS hits")
        where.append("hits = size($tags)" if match == "all" else "hits > 0")
    if modified_since is not None:
        where.append("m.modified_at >= $modified_since")
    if accessed_since is not None:
        where.append("m.last_accessed_at >= $accessed_since")
    if where:
        clauses.append("WHERE " + " AND ".join(where))
    clauses.append(
        "RETURN properties(m) AS props ORDER BY m.modified_at DESC, m.id ASC LIMIT $limit"
    )
    return " ".join(clauses)


class RetrievalBoundary:
    """Request/response facade over the store components."""

    def __init__(
        self,
        driver: AsyncDriver,
        *,
        records: MemoryRecordStore,
        taxonomy: TagTaxonomyEngine,
        graph: RelationshipGraph,
        tracker: TemporalTracker,
        ledger: AgentLedger,
        vector_index: VectorIndex | None = None,
    ) -> None:
        self._driver = driver
        self._records = records
        self._taxonomy = taxonomy
        self._graph = graph
        self._tracker = tracker
        self._ledger = ledger
        self._vector_index = vector_index

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Memory:
        with measure("boundary.get"):
            return await self._records.get_by_key(key)

    async def get_by_name(self, name: str) -> Memory:
        with measure("boundary.get_by_name"):
            return await self._records.get_by_name(name)

    async def list_memories(
        self,
        tags: Sequence[str] | None = None,
        match: TagMatch = "all",
        modified_since: datetime | None = None,
        accessed_since: datetime | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Memory]:
        """List memories filtered by tags and timestamps, newest change first.

        ``match="all"`` keeps memories carrying every listed tag (others
        may be present too); ``match="any"`` keeps those carrying at least
        one.
        """
        with measure("boundary.list_memories"):
            if match not in ("all", "any"):
                raise InvalidInput(f"match must be 'all' or 'any', got {match!r}")
            if limit < 1:
                raise InvalidInput("limit must be at least 1")
            tag_names = sorted({self._taxonomy.normalize(t) for t in tags or ()})
            query = _list_query(
                tags=tag_names,
                match=match,
                modified_since=modified_since,
                accessed_since=accessed_since,
            )

            async def work(tx: AsyncManagedTransaction) -> list[dict]:
                result = await tx.run(
                    query,
                    tags=tag_names,
                    modified_since=modified_since,
                    accessed_since=accessed_since,
                    limit=limit,
                )
                return [record["props"] async for record in result]

            return [memory_from_props(p) for p in await run_read(self._driver, work)]

    async def needing_review(
        self, staleness: timedelta | None = None, *, limit: int | None = None
    ) -> list[Memory]:
        with measure("boundary.needing_review"):
            return await self._tracker.needing_review(staleness, limit=limit)

    async def needing_tending(self, *, limit: int | None = None) -> list[Memory]:
        with measure("boundary.needing_tending"):
            return await self._tracker.needing_tending(limit=limit)

    async def neighbors(self, key: str, edge_type: str | None = None) -> list[Memory]:
        with measure("boundary.neighbors"):
            return await self._graph.neighbors(key, edge_type)

    # ------------------------------------------------------------------
    # Mutation primitives
    # ------------------------------------------------------------------

    async def attach(self, key: str, tag: str, actor: Actor | str) -> bool:
        with measure("boundary.attach"):
            return await self._taxonomy.attach(key, tag, Actor.parse(actor))

    async def link(
        self,
        from_key: str,
        to_key: str,
        edge_type: str,
        bidirectional: bool = False,
        *,
        actor: Actor | str,
    ) -> bool:
        with measure("boundary.link"):
            return await self._graph.link(
                from_key,
                to_key,
                edge_type,
                bidirectional,
                created_by=Actor.parse(actor),
            )

    async def record_served(self, agent: str, key: str) -> AgentMemoryStat:
        with measure("boundary.record_served"):
            return await self._ledger.record_served(agent, key)

    async def record_relevant(self, agent: str, key: str) -> AgentMemoryStat:
        with measure("boundary.record_relevant"):
            return await self._ledger.record_relevant(agent, key)

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    async def serve(
        self,
        agent: str,
        keys: Sequence[str],
        query_vector: Sequence[float] | None = None,
        limit: int | None = None,
    ) -> list[Memory]:
        """Hand a candidate set to *agent*.

        Unknown keys, and candidates deleted mid-serve, are dropped.  Every
        returned memory gets its ``last_accessed_at`` stamped and one serve
        recorded for *agent*.
        """
        with measure("boundary.serve"):
            if limit is not None and limit < 1:
                raise InvalidInput("limit must be at least 1")
            candidates = await self._records.get_many(keys)
            ordered = [memory.key for memory in candidates]

            if query_vector is not None and ordered:
                if self._vector_index is None:
                    logger.debug(
                        "query vector ignored, no vector index configured agent=%s", agent
                    )
                else:
                    ranked = await self._vector_index.rank(query_vector, ordered, limit)
                    allowed = set(ordered)
                    ordered = [k for k in dict.fromkeys(ranked) if k in allowed]

            if limit is not None:
                ordered = ordered[:limit]

            for key in ordered:
                try:
                    await self._records.touch_accessed(key)
                    await self._ledger.record_served(agent, key)
                except NotFound:
                    logger.debug("candidate deleted while serving key=%s agent=%s", key, agent)
            return await self._records.get_many(ordered)
