"""Neo4j schema initialization — indexes and constraints.

All statements use ``IF NOT EXISTS`` so they are safe to run repeatedly
(idempotent).  Uniqueness constraints back the identity invariants
(memory id/key/name, tag name, agent name, stat pair); NOT NULL checks are
handled by Pydantic validation (Neo4j Community Edition does not support
existence constraints).
"""

from __future__ import annotations

from neo4j import AsyncDriver

# ---------------------------------------------------------------------------
# Constraint statements (Community Edition: uniqueness only)
# ---------------------------------------------------------------------------

_CONSTRAINTS = [
    "CREATE CONSTRAINT memory_unique_id IF NOT EXISTS FOR (n:Memory) REQUIRE n.id IS UNIQUE",
    "CREATE CONSTRAINT memory_unique_key IF NOT EXISTS FOR (n:Memory) REQUIRE n.key IS UNIQUE",
    "CREATE CONSTRAINT memory_unique_name IF NOT EXISTS FOR (n:Memory) REQUIRE n.name IS UNIQUE",
    "CREATE CONSTRAINT tag_unique_name IF NOT EXISTS FOR (n:Tag) REQUIRE n.name IS UNIQUE",
    "CREATE CONSTRAINT agent_unique_name IF NOT EXISTS FOR (n:Agent) REQUIRE n.name IS UNIQUE",
    "CREATE CONSTRAINT stat_unique_key IF NOT EXISTS FOR (n:AgentMemoryStat) REQUIRE n.stat_key IS UNIQUE",
    "CREATE CONSTRAINT sequence_unique_name IF NOT EXISTS FOR (n:Sequence) REQUIRE n.name IS UNIQUE",
]

# ---------------------------------------------------------------------------
# Index statements
# ---------------------------------------------------------------------------

_NODE_INDEXES = [
    # Temporal queries
    "CREATE INDEX memory_created IF NOT EXISTS FOR (n:Memory) ON (n.created_at)",
    "CREATE INDEX memory_modified IF NOT EXISTS FOR (n:Memory) ON (n.modified_at)",
    "CREATE INDEX memory_reviewed IF NOT EXISTS FOR (n:Memory) ON (n.last_reviewed_at)",
    "CREATE INDEX memory_tended IF NOT EXISTS FOR (n:Memory) ON (n.last_tended_at)",
    "CREATE INDEX memory_accessed IF NOT EXISTS FOR (n:Memory) ON (n.last_accessed_at)",
    # Version history
    "CREATE INDEX version_memory IF NOT EXISTS FOR (n:MemoryVersion) ON (n.memory_id, n.seq)",
]

_REL_INDEXES = [
    "CREATE INDEX links_type IF NOT EXISTS FOR ()-[r:LINKS]-() ON (r.edge_type)",
    "CREATE INDEX links_key IF NOT EXISTS FOR ()-[r:LINKS]-() ON (r.edge_key)",
]


async def init_schema(driver: AsyncDriver) -> None:
    """Create all indexes and constraints (idempotent).

    Runs each statement in its own transaction to avoid batching issues
    with schema commands in Neo4j.
    """
    all_statements = _CONSTRAINTS + _NODE_INDEXES + _REL_INDEXES
    async with driver.session() as session:
        for stmt in all_statements:
            await session.run(stmt)
