"""Root conftest — session-scoped testcontainer fixtures.

Neo4j Community Edition and Redis 7 containers, shared across the entire
test session.  Individual tests clean each database via autouse fixtures.
Component fixtures share one fake clock so timestamps are deterministic.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from datetime import timedelta
from datetime import UTC
from pathlib import Path
import time

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from neo4j import AsyncGraphDatabase
from redis.asyncio import Redis
from testcontainers.core.container import DockerContainer

logger = logging.getLogger(__name__)

# Load repository-root .env for test opt-ins (existing env vars stay authoritative).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)

_SUITES = ("unit", "integration")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Mark each test with its suite directory (`unit` or `integration`)."""
    tests_dir = Path(__file__).resolve().parent
    for item in items:
        try:
            suite = Path(str(item.fspath)).resolve().relative_to(tests_dir).parts[0]
        except (ValueError, IndexError):
            continue
        if suite in _SUITES:
            item.add_marker(getattr(pytest.mark, suite))


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubReasoner:
    """Returns a fixed partition and remembers what it was asked."""

    def __init__(self, proposal: dict[str, list[str]] | None = None) -> None:
        self.proposal = proposal or {}
        self.calls: list[tuple[list[str], list[str]]] = []
        self.delay: float = 0.0
        self.error: Exception | None = None

    async def propose_partition(self, combination, members):
        self.calls.append((list(combination), [m.key for m in members]))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {label: list(keys) for label, keys in self.proposal.items()}


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def reasoner() -> StubReasoner:
    return StubReasoner()


def _wait_until_ready(probe, what: str, attempts: int = 30) -> None:
    """Call *probe* until it stops raising, sleeping a second between tries."""
    for attempt in range(1, attempts + 1):
        try:
            probe()
            return
        except Exception as exc:
            if attempt == attempts:
                raise
            logger.debug("%s not ready (%d/%d): %s", what, attempt, attempts, exc)
            time.sleep(1)


# ---------------------------------------------------------------------------
# Neo4j
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def neo4j_container():
    """One Neo4j Community container for the session; yields its bolt URI."""
    with (
        DockerContainer("neo4j:5-community")
        .with_exposed_ports(7687)
        .with_env("NEO4J_AUTH", "none")
    ) as container:
        uri = (
            f"bolt://{container.get_container_host_ip()}:"
            f"{container.get_exposed_port(7687)}"
        )

        async def _ping() -> None:
            driver = AsyncGraphDatabase.driver(uri)
            try:
                await driver.verify_connectivity()
            finally:
                await driver.close()

        _wait_until_ready(lambda: asyncio.run(_ping()), "neo4j")
        yield uri


@pytest.fixture(scope="session")
def _graph_schema_initialized(neo4j_container):
    """Create constraints and indexes once; node wipes leave them intact."""
    from memgarden.graph.schema import init_schema

    async def _init() -> None:
        driver = AsyncGraphDatabase.driver(neo4j_container)
        try:
            await init_schema(driver)
        finally:
            await driver.close()

    asyncio.run(_init())
    return True


@pytest.fixture()
async def neo4j_driver(neo4j_container, _graph_schema_initialized):
    driver = AsyncGraphDatabase.driver(neo4j_container)
    yield driver
    await driver.close()


@pytest.fixture(autouse=True)
async def clean_neo4j(neo4j_driver):
    """Start every test from an empty graph (the id sequence included)."""
    async with neo4j_driver.session() as session:
        await session.run("MATCH (n) DETACH DELETE n")
    yield


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def redis_container():
    """One Redis 7 container for the session; yields its URL."""
    with DockerContainer("redis:7-alpine").with_exposed_ports(6379) as container:
        host = container.get_container_host_ip()
        port = int(container.get_exposed_port(6379))

        def _ping() -> None:
            client = sync_redis.Redis(host=host, port=port)
            try:
                client.ping()
            finally:
                client.close()

        _wait_until_ready(_ping, "redis")
        yield f"redis://{host}:{port}"


@pytest.fixture()
async def redis_client(redis_container):
    client = Redis.from_url(redis_container)
    yield client
    await client.aclose()


@pytest.fixture(autouse=True)
async def clean_redis(redis_client):
    """Drop refinement claims left by the previous test."""
    await redis_client.flushdb()
    yield
    await redis_client.flushdb()


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


@pytest.fixture()
def audit_logger(tmp_path):
    from memgarden.audit import AuditLogger
    from memgarden.config import AuditConfig

    return AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))


@pytest.fixture()
def core(neo4j_driver, redis_client, reasoner, audit_logger, clock):
    """A MemoryCore on the test containers with K=1 and the stub reasoner."""
    from memgarden.config import TaxonomyConfig
    from memgarden.core import MemoryCore

    return MemoryCore(
        neo4j_driver,
        redis=redis_client,
        taxonomy_config=TaxonomyConfig(k=1),
        reasoner=reasoner,
        audit_logger=audit_logger,
        clock=clock,
    )


@pytest.fixture()
def records(core):
    return core.records


@pytest.fixture()
def taxonomy(core):
    return core.taxonomy


@pytest.fixture()
def graph(core):
    return core.graph


@pytest.fixture()
def tracker(core):
    return core.tracker


@pytest.fixture()
def ledger(core):
    return core.ledger


@pytest.fixture()
def boundary(core):
    return core.boundary
