"""Composition root — wires every store component onto one driver."""

from __future__ import annotations

import logging

from neo4j import AsyncDriver
from neo4j import AsyncGraphDatabase
from redis.asyncio import Redis  # type: ignore[import-untyped]

from memgarden.audit import AuditLogger
from memgarden.boundary import RetrievalBoundary
from memgarden.boundary import VectorIndex
from memgarden.config import AuditConfig
from memgarden.config import GraphConfig
from memgarden.config import ReasonerConfig
from memgarden.config import RecordConfig
from memgarden.config import StoreConfig
from memgarden.config import TaxonomyConfig
from memgarden.config import TemporalConfig
from memgarden.graph._tx import Clock
from memgarden.graph.relationships import RelationshipGraph
from memgarden.graph.schema import init_schema
from memgarden.ledger import AgentLedger
from memgarden.records import MemoryRecordStore
from memgarden.taxonomy import build_reasoner
from memgarden.taxonomy import Reasoner
from memgarden.taxonomy import RefinementClaims
from memgarden.taxonomy import TagTaxonomyEngine
from memgarden.temporal import TemporalTracker

logger = logging.getLogger(__name__)


class MemoryCore:
    """All components sharing one Neo4j driver (and optionally one Redis).

    Build it with :meth:`connect`, or pass an existing driver to the
    constructor when the caller owns the connection.
    """

    def __init__(
        self,
        driver: AsyncDriver,
        *,
        redis: Redis | None = None,
        store_config: StoreConfig | None = None,
        record_config: RecordConfig | None = None,
        taxonomy_config: TaxonomyConfig | None = None,
        temporal_config: TemporalConfig | None = None,
        graph_config: GraphConfig | None = None,
        reasoner: Reasoner | None = None,
        audit_logger: AuditLogger | None = None,
        vector_index: VectorIndex | None = None,
        clock: Clock | None = None,
    ) -> None:
        store_config = store_config or StoreConfig()
        taxonomy_config = taxonomy_config or TaxonomyConfig()
        self.driver = driver
        self.redis = redis
        self.audit_logger = audit_logger

        self.records = MemoryRecordStore(
            driver,
            config=record_config,
            store_config=store_config,
            audit_logger=audit_logger,
            clock=clock,
        )
        self.taxonomy = TagTaxonomyEngine(
            driver,
            reasoner=reasoner,
            claims=(
                RefinementClaims(redis, ttl_seconds=taxonomy_config.claim_ttl_seconds)
                if redis is not None
                else None
            ),
            config=taxonomy_config,
            store_config=store_config,
            audit_logger=audit_logger,
            clock=clock,
        )
        self.graph = RelationshipGraph(
            driver,
            config=graph_config,
            store_config=store_config,
            audit_logger=audit_logger,
            clock=clock,
        )
        self.tracker = TemporalTracker(
            driver, config=temporal_config, store_config=store_config, clock=clock
        )
        self.ledger = AgentLedger(driver, store_config=store_config, clock=clock)
        self.boundary = RetrievalBoundary(
            driver,
            records=self.records,
            taxonomy=self.taxonomy,
            graph=self.graph,
            tracker=self.tracker,
            ledger=self.ledger,
            vector_index=vector_index,
        )

    @classmethod
    async def connect(
        cls,
        store_config: StoreConfig | None = None,
        *,
        record_config: RecordConfig | None = None,
        taxonomy_config: TaxonomyConfig | None = None,
        temporal_config: TemporalConfig | None = None,
        graph_config: GraphConfig | None = None,
        reasoner: Reasoner | None = None,
        reasoner_config: ReasonerConfig | None = None,
        audit_config: AuditConfig | None = None,
        vector_index: VectorIndex | None = None,
        clock: Clock | None = None,
    ) -> MemoryCore:
        """Open connections, ensure the schema, and build every component.

        Without a reasoner (given directly or built from
        ``reasoner_config``) refinement always comes back ``deferred``.
        """
        store_config = store_config or StoreConfig()
        if reasoner is None and reasoner_config is not None:
            reasoner = build_reasoner(reasoner_config)

        auth = None
        if store_config.neo4j_user is not None:
            auth = (store_config.neo4j_user, store_config.neo4j_password or "")
        driver = AsyncGraphDatabase.driver(store_config.neo4j_url, auth=auth)
        await init_schema(driver)

        redis = (
            Redis.from_url(store_config.redis_url)
            if store_config.redis_url is not None
            else None
        )
        logger.info(
            "memory core connected neo4j=%s redis=%s reasoner=%s",
            store_config.neo4j_url,
            store_config.redis_url,
            type(reasoner).__name__ if reasoner is not None else None,
        )
        return cls(
            driver,
            redis=redis,
            store_config=store_config,
            record_config=record_config,
            taxonomy_config=taxonomy_config,
            temporal_config=temporal_config,
            graph_config=graph_config,
            reasoner=reasoner,
            audit_logger=AuditLogger(audit_config) if audit_config is not None else None,
            vector_index=vector_index,
            clock=clock,
        )

    async def close(self) -> None:
        """Release the Redis client and the driver."""
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        await self.driver.close()
