"""Agent interaction ledger — per-(agent, memory) serve/relevance counters.

Counters only ever go up.  Each record call is an atomic upsert: the stat
node is merged on its unique ``stat_key`` and write-locked before the
increment, so two agents recording the same event at the same instant
both land.
"""

from __future__ import annotations

import logging
import re

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction

from memgarden.config import StoreConfig
from memgarden.errors import InvalidInput
from memgarden.errors import NotFound
from memgarden.graph._tx import Clock
from memgarden.graph._tx import convert_props
from memgarden.graph._tx import run_read
from memgarden.graph._tx import run_write
from memgarden.graph._tx import utcnow
from memgarden.models import Agent
from memgarden.models import AgentMemoryStat

logger = logging.getLogger(__name__)

_AGENT_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,99}$")

# counter property -> timestamp property
_COUNTERS = {
    "times_served": "last_served_at",
    "times_relevant": "last_relevant_at",
}

_STAT_RETURN = (
    "RETURN a.name AS agent, m.key AS memory_key, "
    "s.times_served AS times_served, s.times_relevant AS times_relevant, "
    "s.last_served_at AS last_served_at, s.last_relevant_at AS last_relevant_at"
)

_STAT_MATCH = "MATCH (a:Agent)<-[:OF_AGENT]-(s:AgentMemoryStat)-[:FOR_MEMORY]->(m:Memory) "


def _stat_key(agent: str, memory_key: str) -> str:
    return f"{agent}|{memory_key}"


def _increment_query(counter: str) -> str:
    stamp = _COUNTERS[counter]
    return (
        "MATCH (m:Memory {key: $key}) "
        "MERGE (a:Agent {name: $agent}) ON CREATE SET a.created_at = $now "
        "MERGE (s:AgentMemoryStat {stat_key: $stat_key}) "
        "ON CREATE SET s.times_served = 0, s.times_relevant = 0 "
        "SET s._lock = true "
        "MERGE (s)-[:OF_AGENT]->(a) "
        "MERGE (s)-[:FOR_MEMORY]->(m) "
        "WITH a, s, m "
        f"SET s.{counter} = s.{counter} + 1, s.{stamp} = $now "
        "REMOVE s._lock "
        f"{_STAT_RETURN}"
    )


class AgentLedger:
    """Owns ``Agent`` and ``AgentMemoryStat`` nodes."""

    def __init__(
        self,
        driver: AsyncDriver,
        *,
        store_config: StoreConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._driver = driver
        self._attempts = (store_config or StoreConfig()).max_write_attempts
        self._clock = clock or utcnow

    @staticmethod
    def _check_agent(agent: str) -> str:
        name = agent.strip()
        if not _AGENT_NAME_RE.match(name):
            raise InvalidInput(f"invalid agent name: {agent!r}")
        return name

    # ----- agents -----

    async def register_agent(self, name: str, description: str | None = None) -> Agent:
        """Create an agent identity, or update its description."""
        name = self._check_agent(name)
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> dict:
            result = await tx.run(
                "MERGE (a:Agent {name: $name}) ON CREATE SET a.created_at = $now "
                "SET a.description = coalesce($description, a.description) "
                "RETURN properties(a) AS props",
                name=name,
                now=now,
                description=description,
            )
            return (await result.single())["props"]

        props = await run_write(
            self._driver,
            work,
            operation="ledger.register_agent",
            max_attempts=self._attempts,
            retry_on_constraint=True,
        )
        return Agent.model_validate(convert_props(props))

    async def agents(self) -> list[Agent]:
        async def work(tx: AsyncManagedTransaction) -> list[dict]:
            result = await tx.run(
                "MATCH (a:Agent) RETURN properties(a) AS props ORDER BY a.name"
            )
            return [record["props"] async for record in result]

        return [
            Agent.model_validate(convert_props(p))
            for p in await run_read(self._driver, work)
        ]

    # ----- counters -----

    async def _increment(self, agent: str, memory_key: str, counter: str) -> AgentMemoryStat:
        agent = self._check_agent(agent)
        query = _increment_query(counter)
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> dict | None:
            result = await tx.run(
                query,
                key=memory_key,
                agent=agent,
                stat_key=_stat_key(agent, memory_key),
                now=now,
            )
            record = await result.single()
            return None if record is None else record.data()

        row = await run_write(
            self._driver,
            work,
            operation=f"ledger.{counter}",
            max_attempts=self._attempts,
            retry_on_constraint=True,
        )
        if row is None:
            raise NotFound("memory", memory_key)
        return AgentMemoryStat.model_validate(convert_props(row))

    async def record_served(self, agent: str, memory_key: str) -> AgentMemoryStat:
        """Count one surfacing of *memory_key* to *agent*."""
        return await self._increment(agent, memory_key, "times_served")

    async def record_relevant(self, agent: str, memory_key: str) -> AgentMemoryStat:
        """Count one positive relevance judgment by *agent*."""
        stat = await self._increment(agent, memory_key, "times_relevant")
        if stat.times_relevant > stat.times_served:
            logger.warning(
                "relevance judgments outrun serves agent=%s memory=%s relevant=%d served=%d",
                stat.agent,
                stat.memory_key,
                stat.times_relevant,
                stat.times_served,
            )
        return stat

    # ----- reads -----

    async def _stats(self, where: str, **params: object) -> list[AgentMemoryStat]:
        query = _STAT_MATCH + where + _STAT_RETURN + " ORDER BY a.name, m.id"

        async def work(tx: AsyncManagedTransaction) -> list[dict]:
            result = await tx.run(query, **params)
            return [record.data() async for record in result]

        return [
            AgentMemoryStat.model_validate(convert_props(row))
            for row in await run_read(self._driver, work)
        ]

    async def get_stat(self, agent: str, memory_key: str) -> AgentMemoryStat | None:
        stats = await self._stats(
            "WHERE s.stat_key = $stat_key ",
            stat_key=_stat_key(self._check_agent(agent), memory_key),
        )
        return stats[0] if stats else None

    async def stats_for_memory(self, memory_key: str) -> list[AgentMemoryStat]:
        return await self._stats("WHERE m.key = $key ", key=memory_key)

    async def stats_for_agent(self, agent: str) -> list[AgentMemoryStat]:
        return await self._stats("WHERE a.name = $agent ", agent=self._check_agent(agent))

    async def relevance_anomalies(self) -> list[AgentMemoryStat]:
        """Rows where relevance judgments exceed recorded serves."""
        return await self._stats("WHERE s.times_relevant > s.times_served ")
