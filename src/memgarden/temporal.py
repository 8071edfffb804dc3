"""Temporal & attribution tracker — review/tend lifecycle queries.

Each memory carries five timestamps.  ``created_at`` and ``modified_at``
are owned by the record store; this module stamps the review and tend
markers and answers the scheduling queries agent runtimes poll:

- *needing review*: never reviewed, or reviewed longer ago than the
  staleness window; oldest first.
- *needing tending*: reviewed, and not tended since that review; in
  review order.
"""

from __future__ import annotations

from datetime import timedelta

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction

from memgarden.config import StoreConfig
from memgarden.config import TemporalConfig
from memgarden.errors import NotFound
from memgarden.graph._tx import Clock
from memgarden.graph._tx import memory_from_props
from memgarden.graph._tx import run_read
from memgarden.graph._tx import run_write
from memgarden.graph._tx import utcnow
from memgarden.models import Memory

_NEEDING_REVIEW = (
    "MATCH (m:Memory) "
    "WHERE m.last_reviewed_at IS NULL OR m.last_reviewed_at < $cutoff "
    "RETURN properties(m) AS props "
    "ORDER BY coalesce(m.last_reviewed_at, m.created_at) ASC, m.id ASC"
)

_NEEDING_TENDING = (
    "MATCH (m:Memory) "
    "WHERE m.last_reviewed_at IS NOT NULL "
    "  AND (m.last_tended_at IS NULL OR m.last_tended_at < m.last_reviewed_at) "
    "RETURN properties(m) AS props "
    "ORDER BY m.last_reviewed_at ASC, m.id ASC"
)

_ACCESSED_SINCE = (
    "MATCH (m:Memory) "
    "WHERE m.last_accessed_at IS NOT NULL AND m.last_accessed_at > $cutoff "
    "RETURN properties(m) AS props "
    "ORDER BY m.last_accessed_at DESC, m.id ASC"
)

_STALE_UNTENDED = (
    "MATCH (m:Memory) "
    "WHERE m.created_at < $cutoff AND m.last_tended_at IS NULL "
    "RETURN properties(m) AS props "
    "ORDER BY m.created_at ASC, m.id ASC"
)


class TemporalTracker:
    """Review/tend markers and the selection queries built on them."""

    def __init__(
        self,
        driver: AsyncDriver,
        *,
        config: TemporalConfig | None = None,
        store_config: StoreConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._driver = driver
        self._config = config or TemporalConfig()
        self._attempts = (store_config or StoreConfig()).max_write_attempts
        self._clock = clock or utcnow

    @property
    def default_staleness(self) -> timedelta:
        return timedelta(days=self._config.review_staleness_days)

    # ----- queries -----

    async def _select(
        self, query: str, limit: int | None = None, **params: object
    ) -> list[Memory]:
        if limit is not None:
            query += " LIMIT $limit"
            params["limit"] = limit

        async def work(tx: AsyncManagedTransaction) -> list[dict]:
            result = await tx.run(query, **params)
            return [record["props"] async for record in result]

        return [memory_from_props(p) for p in await run_read(self._driver, work)]

    async def needing_review(
        self, staleness: timedelta | None = None, *, limit: int | None = None
    ) -> list[Memory]:
        window = self.default_staleness if staleness is None else staleness
        return await self._select(
            _NEEDING_REVIEW, limit, cutoff=self._clock() - window
        )

    async def needing_tending(self, *, limit: int | None = None) -> list[Memory]:
        return await self._select(_NEEDING_TENDING, limit)

    async def accessed_since(
        self, window: timedelta, *, limit: int | None = None
    ) -> list[Memory]:
        """Memories retrieved within *window*, most recent first."""
        return await self._select(_ACCESSED_SINCE, limit, cutoff=self._clock() - window)

    async def stale_untended(
        self, age: timedelta, *, limit: int | None = None
    ) -> list[Memory]:
        """Memories older than *age* that no agent has ever tended."""
        return await self._select(_STALE_UNTENDED, limit, cutoff=self._clock() - age)

    # ----- markers -----

    async def _stamp(self, key: str, field: str) -> Memory:
        now = self._clock()
        query = (
            f"MATCH (m:Memory {{key: $key}}) SET m.{field} = $now "
            "RETURN properties(m) AS props"
        )

        async def work(tx: AsyncManagedTransaction) -> dict | None:
            result = await tx.run(query, key=key, now=now)
            record = await result.single()
            return None if record is None else record["props"]

        props = await run_write(
            self._driver, work, operation=f"temporal.{field}", max_attempts=self._attempts
        )
        if props is None:
            raise NotFound("memory", key)
        return memory_from_props(props)

    async def mark_reviewed(self, key: str) -> Memory:
        return await self._stamp(key, "last_reviewed_at")

    async def mark_tended(self, key: str) -> Memory:
        return await self._stamp(key, "last_tended_at")
