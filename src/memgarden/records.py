"""Memory record store — CRUD on memories with atomic versioning.

Every value change archives the previous value as a ``MemoryVersion``
node in the same write transaction that applies the new value.  The
transaction first takes the write lock on the memory node, so concurrent
updates to one memory serialize and each replaced value is archived
exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction

from memgarden.audit import AuditEventType
from memgarden.audit import AuditLogger
from memgarden.config import RecordConfig
from memgarden.config import StoreConfig
from memgarden.errors import DuplicateIdentifier
from memgarden.errors import InvalidInput
from memgarden.errors import NotFound
from memgarden.errors import ReferentialViolation
from memgarden.graph._tx import Clock
from memgarden.graph._tx import convert_props
from memgarden.graph._tx import LOCK_MEMORY
from memgarden.graph._tx import memory_from_props
from memgarden.graph._tx import run_read
from memgarden.graph._tx import run_write
from memgarden.graph._tx import utcnow
from memgarden.models import Actor
from memgarden.models import encode_key
from memgarden.models import HUMAN
from memgarden.models import Memory
from memgarden.models import MemoryVersion

logger = logging.getLogger(__name__)

_SEQUENCE_NAME = "memory"

_ALLOCATE_ID = (
    "MERGE (s:Sequence {name: $name}) "
    "SET s._lock = true "
    "WITH s "
    "SET s.value = coalesce(s.value, 0) + 1 "
    "REMOVE s._lock "
    "RETURN s.value AS id"
)


def _embedding(value: Sequence[float] | None) -> list[float] | None:
    if value is None:
        return None
    return [float(x) for x in value]


class MemoryRecordStore:
    """Async CRUD interface over ``Memory`` and ``MemoryVersion`` nodes."""

    def __init__(
        self,
        driver: AsyncDriver,
        *,
        config: RecordConfig | None = None,
        store_config: StoreConfig | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._driver = driver
        self._config = config or RecordConfig()
        self._attempts = (store_config or StoreConfig()).max_write_attempts
        self._audit = audit_logger
        self._clock = clock or utcnow

    # ----- validation -----

    def _check_value(self, value: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InvalidInput("memory value must be a non-empty string")
        if len(value) > self._config.max_value_length:
            raise InvalidInput(
                f"memory value exceeds {self._config.max_value_length} characters"
            )
        return value

    def _check_name(self, name: str | None) -> str | None:
        if name is None:
            return None
        normalized = name.strip()
        if not normalized:
            raise InvalidInput("memory name must not be blank")
        if len(normalized) > self._config.max_name_length:
            raise InvalidInput(
                f"memory name exceeds {self._config.max_name_length} characters"
            )
        return normalized

    # ----- create -----

    async def create(
        self,
        value: str,
        embedding: Sequence[float] | None = None,
        name: str | None = None,
        *,
        actor: Actor = HUMAN,
    ) -> Memory:
        """Insert a memory; its ``id`` and derived ``key`` are allocated here."""
        value = self._check_value(value)
        name = self._check_name(name)
        vector = _embedding(embedding)
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> Memory:
            if name is not None:
                result = await tx.run(
                    "MATCH (m:Memory {name: $name}) RETURN m.key AS key", name=name
                )
                clash = await result.single()
                if clash is not None:
                    raise DuplicateIdentifier(
                        f"memory name {name!r} already used by {clash['key']}"
                    )
            result = await tx.run(_ALLOCATE_ID, name=_SEQUENCE_NAME)
            new_id = (await result.single())["id"]
            props: dict = {
                "id": new_id,
                "key": encode_key(new_id),
                "value": value,
                "created_at": now,
                "modified_at": now,
                "version_count": 0,
            }
            if name is not None:
                props["name"] = name
            if vector is not None:
                props["embedding"] = vector
            result = await tx.run(
                "CREATE (m:Memory $props) RETURN properties(m) AS props", props=props
            )
            record = await result.single()
            return memory_from_props(record["props"])

        memory = await run_write(
            self._driver,
            work,
            operation="memory.create",
            max_attempts=self._attempts,
            retry_on_constraint=True,
        )
        if self._audit is not None:
            await self._audit.record(
                AuditEventType.MEMORY_CREATED,
                actor=actor,
                key=memory.key,
                name=memory.name,
            )
        return memory

    # ----- read -----

    async def _get_one(self, field: str, ref: object) -> Memory:
        query = f"MATCH (m:Memory {{{field}: $ref}}) RETURN properties(m) AS props"

        async def work(tx: AsyncManagedTransaction) -> dict | None:
            result = await tx.run(query, ref=ref)
            record = await result.single()
            return None if record is None else record["props"]

        props = await run_read(self._driver, work)
        if props is None:
            raise NotFound("memory", ref)
        return memory_from_props(props)

    async def get_by_key(self, key: str) -> Memory:
        return await self._get_one("key", key)

    async def get_by_name(self, name: str) -> Memory:
        return await self._get_one("name", name.strip())

    async def get_by_id(self, memory_id: int) -> Memory:
        return await self._get_one("id", memory_id)

    async def resolve(self, ref: str) -> Memory:
        """Look *ref* up as a key first, then as a name."""
        try:
            return await self.get_by_key(ref)
        except NotFound:
            return await self.get_by_name(ref)

    async def get_many(self, keys: Sequence[str]) -> list[Memory]:
        """Fetch memories by key, preserving input order and skipping misses."""
        if not keys:
            return []

        async def work(tx: AsyncManagedTransaction) -> list[dict]:
            result = await tx.run(
                "MATCH (m:Memory) WHERE m.key IN $keys RETURN properties(m) AS props",
                keys=list(keys),
            )
            return [record["props"] async for record in result]

        by_key = {
            memory.key: memory
            for memory in map(memory_from_props, await run_read(self._driver, work))
        }
        return [by_key[key] for key in dict.fromkeys(keys) if key in by_key]

    async def count(self) -> int:
        async def work(tx: AsyncManagedTransaction) -> int:
            result = await tx.run("MATCH (m:Memory) RETURN count(m) AS n")
            return (await result.single())["n"]

        return await run_read(self._driver, work)

    # ----- versioned update -----

    async def update_value(
        self,
        key: str,
        new_value: str,
        new_embedding: Sequence[float] | None = None,
        *,
        modified_by: Actor,
        reason: str | None = None,
    ) -> Memory:
        """Replace a memory's value, archiving the previous one.

        Identical values are a no-op: no version is written and
        ``modified_at`` is untouched.  A changed value without a new
        embedding clears the stored embedding, since it described the old
        text.
        """
        new_value = self._check_value(new_value)
        vector = _embedding(new_embedding)
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> tuple[Memory, int | None]:
            result = await tx.run(
                f"MATCH (m:Memory {{key: $key}}) {LOCK_MEMORY} "
                "RETURN properties(m) AS props",
                key=key,
            )
            record = await result.single()
            if record is None:
                raise NotFound("memory", key)
            current = memory_from_props(record["props"])
            if current.value == new_value:
                return current, None

            seq = current.version_count + 1
            version: dict = {
                "memory_id": current.id,
                "seq": seq,
                "value": current.value,
                "modified_at": current.modified_at,
                "superseded_at": now,
                "modified_by": str(modified_by),
            }
            if current.embedding is not None:
                version["embedding"] = current.embedding
            if reason is not None:
                version["modification_reason"] = reason
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) "
                "CREATE (v:MemoryVersion $version)-[:VERSION_OF]->(m) "
                "SET m.value = $value, m.embedding = $embedding, "
                "    m.modified_at = $modified_at, m.version_count = $seq "
                "RETURN properties(m) AS props",
                key=key,
                version=version,
                value=new_value,
                embedding=vector,
                modified_at=max(now, current.modified_at),
                seq=seq,
            )
            record = await result.single()
            return memory_from_props(record["props"]), seq

        memory, seq = await run_write(
            self._driver,
            work,
            operation="memory.update_value",
            max_attempts=self._attempts,
        )
        if seq is not None and self._audit is not None:
            await self._audit.record(
                AuditEventType.MEMORY_UPDATED,
                actor=modified_by,
                key=key,
                version=seq,
                reason=reason,
            )
        return memory

    async def set_embedding(self, key: str, embedding: Sequence[float] | None) -> Memory:
        """Attach or clear the embedding of the current value (not versioned)."""
        vector = _embedding(embedding)

        async def work(tx: AsyncManagedTransaction) -> dict | None:
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) SET m.embedding = $embedding "
                "RETURN properties(m) AS props",
                key=key,
                embedding=vector,
            )
            record = await result.single()
            return None if record is None else record["props"]

        props = await run_write(
            self._driver, work, operation="memory.set_embedding", max_attempts=self._attempts
        )
        if props is None:
            raise NotFound("memory", key)
        return memory_from_props(props)

    async def set_name(self, key: str, name: str | None) -> Memory:
        """Assign, change or clear the human-chosen name of a memory."""
        name = self._check_name(name)

        async def work(tx: AsyncManagedTransaction) -> Memory:
            if name is not None:
                result = await tx.run(
                    "MATCH (m:Memory {name: $name}) WHERE m.key <> $key "
                    "RETURN m.key AS key",
                    name=name,
                    key=key,
                )
                clash = await result.single()
                if clash is not None:
                    raise DuplicateIdentifier(
                        f"memory name {name!r} already used by {clash['key']}"
                    )
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) SET m.name = $name "
                "RETURN properties(m) AS props",
                key=key,
                name=name,
            )
            record = await result.single()
            if record is None:
                raise NotFound("memory", key)
            return memory_from_props(record["props"])

        return await run_write(
            self._driver,
            work,
            operation="memory.set_name",
            max_attempts=self._attempts,
            retry_on_constraint=True,
        )

    async def touch_accessed(self, key: str) -> None:
        """Stamp ``last_accessed_at`` with the current time."""
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> bool:
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) SET m.last_accessed_at = $now "
                "RETURN m.key AS key",
                key=key,
                now=now,
            )
            return (await result.single()) is not None

        found = await run_write(
            self._driver, work, operation="memory.touch_accessed", max_attempts=self._attempts
        )
        if not found:
            raise NotFound("memory", key)

    # ----- history -----

    async def history(self, key: str) -> list[MemoryVersion]:
        """Return archived versions, newest first."""

        async def work(tx: AsyncManagedTransaction) -> tuple[bool, list[dict]]:
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) "
                "OPTIONAL MATCH (v:MemoryVersion)-[:VERSION_OF]->(m) "
                "WITH m, v ORDER BY v.seq DESC "
                "RETURN m.key AS key, collect(properties(v)) AS versions",
                key=key,
            )
            record = await result.single()
            if record is None:
                return False, []
            return True, list(record["versions"])

        found, versions = await run_read(self._driver, work)
        if not found:
            raise NotFound("memory", key)
        return [MemoryVersion.model_validate(convert_props(v)) for v in versions]

    async def version_count(self, key: str) -> int:
        return (await self.get_by_key(key)).version_count

    # ----- delete -----

    async def delete(self, key: str, *, actor: Actor = HUMAN) -> None:
        """Remove a memory and everything hanging off it.

        Versions and ledger rows are deleted explicitly; tag assignments
        and edges are relationships and go with ``DETACH DELETE``.  All of
        it happens in one transaction, so no reader sees a half-deleted
        memory.
        """

        async def work(tx: AsyncManagedTransaction) -> dict:
            result = await tx.run(
                f"MATCH (m:Memory {{key: $key}}) {LOCK_MEMORY} "
                "OPTIONAL MATCH (m)-[t:TAGGED]->(:Tag) "
                "WITH m, count(t) AS tags "
                "OPTIONAL MATCH (m)-[e:LINKS]-(:Memory) "
                "RETURN m.id AS id, tags, count(DISTINCT e) AS edges",
                key=key,
            )
            record = await result.single()
            if record is None:
                raise NotFound("memory", key)
            counts = {"tags": record["tags"], "edges": record["edges"]}
            result = await tx.run(
                "MATCH (v:MemoryVersion)-[:VERSION_OF]->(:Memory {key: $key}) "
                "DETACH DELETE v RETURN count(v) AS n",
                key=key,
            )
            counts["versions"] = (await result.single())["n"]
            result = await tx.run(
                "MATCH (s:AgentMemoryStat)-[:FOR_MEMORY]->(:Memory {key: $key}) "
                "DETACH DELETE s RETURN count(s) AS n",
                key=key,
            )
            counts["stats"] = (await result.single())["n"]
            await tx.run("MATCH (m:Memory {key: $key}) DETACH DELETE m", key=key)
            result = await tx.run(
                "MATCH (v:MemoryVersion {memory_id: $id}) RETURN count(v) AS n",
                id=record["id"],
            )
            if (await result.single())["n"]:
                raise ReferentialViolation(
                    f"memory {key!r} has versions outside its history chain"
                )
            return counts

        counts = await run_write(
            self._driver, work, operation="memory.delete", max_attempts=self._attempts
        )
        logger.info(
            "deleted memory key=%s versions=%d tags=%d edges=%d stats=%d",
            key,
            counts["versions"],
            counts["tags"],
            counts["edges"],
            counts["stats"],
        )
        if self._audit is not None:
            await self._audit.record(
                AuditEventType.MEMORY_DELETED, actor=actor, key=key, **counts
            )
