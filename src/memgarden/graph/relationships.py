"""Relationship graph — typed edges between memories.

Edges are ``LINKS`` relationships carrying an open-vocabulary
``edge_type``.  ``(from, to, edge_type)`` is unique and linking is
idempotent.  Bidirectional edges are stored once, in canonical order
(lower memory id first), so ``link(A, B, t, bidirectional=True)`` and
``link(B, A, t, bidirectional=True)`` address the same row.  Edge types
listed in ``GraphConfig.symmetric_edge_types`` (``relates_to`` and
``contradicts`` by default) are always stored as bidirectional.

Traversal is single-hop only; cycles are normal here.
"""

from __future__ import annotations

import logging

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction

from memgarden.audit import AuditEventType
from memgarden.audit import AuditLogger
from memgarden.config import GraphConfig
from memgarden.config import StoreConfig
from memgarden.errors import InvalidEdge
from memgarden.errors import NotFound
from memgarden.graph._tx import Clock
from memgarden.graph._tx import convert_props
from memgarden.graph._tx import LOCK_MEMORY
from memgarden.graph._tx import memory_from_props
from memgarden.graph._tx import run_read
from memgarden.graph._tx import run_write
from memgarden.graph._tx import utcnow
from memgarden.models import Actor
from memgarden.models import Edge
from memgarden.models import Memory

logger = logging.getLogger(__name__)

_TRAVERSABLE = (
    "($edge_type IS NULL OR r.edge_type = $edge_type) "
    "AND (startNode(r) = m OR r.bidirectional OR r.edge_type IN $symmetric)"
)


def _edge_key(from_id: int, to_id: int, edge_type: str) -> str:
    return f"{from_id}|{to_id}|{edge_type}"


async def _upgrade(
    tx: AsyncManagedTransaction,
    start: str,
    end: str,
    key: str,
    reverse: str,
    existing: dict[str, bool],
) -> None:
    """Fold directed rows into one bidirectional row stored start -> end."""
    if key in existing:
        await tx.run(
            "MATCH (:Memory)-[r:LINKS {edge_key: $key}]->(:Memory) "
            "SET r.bidirectional = true",
            key=key,
        )
        if reverse in existing:
            await tx.run(
                "MATCH (:Memory)-[r:LINKS {edge_key: $reverse}]->(:Memory) DELETE r",
                reverse=reverse,
            )
    else:
        # only the end -> start row exists; recreate it in canonical order
        await tx.run(
            "MATCH (b:Memory {key: $end})-[old:LINKS {edge_key: $reverse}]->"
            "(a:Memory {key: $start}) "
            "CREATE (a)-[:LINKS {edge_key: $key, edge_type: old.edge_type, "
            "  bidirectional: true, created_at: old.created_at, "
            "  created_by: old.created_by}]->(b) "
            "DELETE old",
            start=start,
            end=end,
            key=key,
            reverse=reverse,
        )
    logger.info("upgraded edge %s to bidirectional", key)


class RelationshipGraph:
    """Owns ``LINKS`` relationships between ``Memory`` nodes."""

    def __init__(
        self,
        driver: AsyncDriver,
        *,
        config: GraphConfig | None = None,
        store_config: StoreConfig | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._driver = driver
        self._config = config or GraphConfig()
        self._attempts = (store_config or StoreConfig()).max_write_attempts
        self._audit = audit_logger
        self._clock = clock or utcnow

    @property
    def symmetric_edge_types(self) -> frozenset[str]:
        return self._config.symmetric_edge_types

    def normalize_type(self, edge_type: str) -> str:
        normalized = "_".join(edge_type.split()).lower()
        if not normalized:
            raise InvalidEdge("edge type must not be blank")
        if len(normalized) > self._config.max_edge_type_length:
            raise InvalidEdge(
                f"edge type exceeds {self._config.max_edge_type_length} characters"
            )
        return normalized

    # ----- mutation -----

    async def link(
        self,
        from_key: str,
        to_key: str,
        edge_type: str,
        bidirectional: bool = False,
        *,
        created_by: Actor,
    ) -> bool:
        """Create an edge; return ``False`` when an equivalent one exists.

        Re-linking a directed edge as bidirectional upgrades the stored row
        in place instead of adding a mirrored one.
        """
        if from_key == to_key:
            raise InvalidEdge(f"self-loop on memory {from_key!r}")
        edge_type = self.normalize_type(edge_type)
        bidirectional = bidirectional or edge_type in self._config.symmetric_edge_types
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> bool:
            result = await tx.run(
                "MATCH (m:Memory) WHERE m.key IN [$from_key, $to_key] "
                "WITH m ORDER BY m.id "
                f"{LOCK_MEMORY} "
                "RETURN m.key AS key, m.id AS id",
                from_key=from_key,
                to_key=to_key,
            )
            ids = {record["key"]: record["id"] async for record in result}
            missing = [k for k in (from_key, to_key) if k not in ids]
            if missing:
                raise InvalidEdge(f"edge references missing memory {missing[0]!r}")

            start, end = from_key, to_key
            if bidirectional and ids[from_key] > ids[to_key]:
                start, end = to_key, from_key
            key = _edge_key(ids[start], ids[end], edge_type)
            reverse = _edge_key(ids[end], ids[start], edge_type)

            result = await tx.run(
                "MATCH (:Memory)-[r:LINKS]->(:Memory) "
                "WHERE r.edge_key = $key "
                "   OR (r.edge_key = $reverse AND ($bidirectional OR r.bidirectional)) "
                "RETURN r.edge_key AS edge_key, r.bidirectional AS bidirectional",
                key=key,
                reverse=reverse,
                bidirectional=bidirectional,
            )
            existing = {
                record["edge_key"]: record["bidirectional"] async for record in result
            }
            if existing:
                if bidirectional and not existing.get(key):
                    await _upgrade(tx, start, end, key, reverse, existing)
                return False

            await tx.run(
                "MATCH (a:Memory {key: $start}), (b:Memory {key: $end}) "
                "CREATE (a)-[:LINKS {edge_key: $key, edge_type: $edge_type, "
                "  bidirectional: $bidirectional, created_at: $now, created_by: $by}]->(b) "
                "WITH a, b "
                "UNWIND [a, b] AS m "
                "SET m.last_tended_at = CASE WHEN $tended THEN $now ELSE m.last_tended_at END",
                start=start,
                end=end,
                key=key,
                edge_type=edge_type,
                bidirectional=bidirectional,
                now=now,
                by=str(created_by),
                tended=created_by.is_agent,
            )
            return True

        created = await run_write(
            self._driver, work, operation="graph.link", max_attempts=self._attempts
        )
        if created and self._audit is not None:
            await self._audit.record(
                AuditEventType.EDGE_LINKED,
                actor=created_by,
                from_key=from_key,
                to_key=to_key,
                edge_type=edge_type,
                bidirectional=bidirectional,
            )
        return created

    async def unlink(
        self,
        from_key: str,
        to_key: str,
        edge_type: str,
        *,
        actor: Actor | None = None,
    ) -> bool:
        """Remove an edge; a bidirectional edge matches in either order."""
        edge_type = self.normalize_type(edge_type)

        async def work(tx: AsyncManagedTransaction) -> int:
            result = await tx.run(
                "MATCH (a:Memory {key: $from_key})-[r:LINKS {edge_type: $edge_type}]-"
                "(b:Memory {key: $to_key}) "
                "WHERE startNode(r) = a OR r.bidirectional "
                "DELETE r RETURN count(*) AS n",
                from_key=from_key,
                to_key=to_key,
                edge_type=edge_type,
            )
            return (await result.single())["n"]

        removed = await run_write(
            self._driver, work, operation="graph.unlink", max_attempts=self._attempts
        )
        if removed and self._audit is not None:
            await self._audit.record(
                AuditEventType.EDGE_UNLINKED,
                actor=actor,
                from_key=from_key,
                to_key=to_key,
                edge_type=edge_type,
            )
        return removed > 0

    # ----- traversal -----

    async def neighbors(self, memory_key: str, edge_type: str | None = None) -> list[Memory]:
        """Memories one hop away, following edge direction unless bidirectional."""
        if edge_type is not None:
            edge_type = self.normalize_type(edge_type)

        async def work(tx: AsyncManagedTransaction) -> list[dict] | None:
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) RETURN m.id AS id", key=memory_key
            )
            if await result.single() is None:
                return None
            result = await tx.run(
                "MATCH (m:Memory {key: $key})-[r:LINKS]-(n:Memory) "
                f"WHERE {_TRAVERSABLE} "
                "WITH DISTINCT n "
                "RETURN properties(n) AS props ORDER BY n.id",
                key=memory_key,
                edge_type=edge_type,
                symmetric=sorted(self._config.symmetric_edge_types),
            )
            return [record["props"] async for record in result]

        rows = await run_read(self._driver, work)
        if rows is None:
            raise NotFound("memory", memory_key)
        return [memory_from_props(props) for props in rows]

    async def edges(self, memory_key: str) -> list[Edge]:
        """Every stored edge touching a memory, in creation order."""

        async def work(tx: AsyncManagedTransaction) -> list[dict] | None:
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) RETURN m.id AS id", key=memory_key
            )
            if await result.single() is None:
                return None
            result = await tx.run(
                "MATCH (:Memory {key: $key})-[r:LINKS]-(:Memory) "
                "RETURN startNode(r).key AS from_key, endNode(r).key AS to_key, "
                "r.edge_type AS edge_type, r.bidirectional AS bidirectional, "
                "r.created_at AS created_at, r.created_by AS created_by "
                "ORDER BY r.created_at, r.edge_key",
                key=memory_key,
            )
            return [record.data() async for record in result]

        rows = await run_read(self._driver, work)
        if rows is None:
            raise NotFound("memory", memory_key)
        return [Edge.model_validate(convert_props(row)) for row in rows]
