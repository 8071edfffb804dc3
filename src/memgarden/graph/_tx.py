"""Shared Neo4j plumbing for the store components.

- bounded retry of compound writes that race another writer
- conversion of Neo4j temporal values to stdlib types
- the per-node write-lock idiom used before read-check-write sequences
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from collections.abc import Callable
from datetime import datetime
from datetime import UTC
from typing import TypeVar

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction
from neo4j import time as neo4j_time
from neo4j.exceptions import ConstraintError
from neo4j.exceptions import TransientError

from memgarden.errors import ConcurrentModificationConflict
from memgarden.models.records import Memory

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

# Taking a write lock before reading serializes every compound write on the
# node; the marker property never survives the statement.
LOCK_MEMORY = "SET m._lock = true REMOVE m._lock WITH m"


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _neo4j_to_python(value: object) -> object:
    """Convert Neo4j temporal types to Python stdlib equivalents."""
    if isinstance(value, neo4j_time.DateTime):
        return value.to_native()
    if isinstance(value, neo4j_time.Date):
        return value.to_native()
    return value


def convert_props(props: dict) -> dict:
    """Convert all Neo4j types in a property dict to Python types."""
    return {k: _neo4j_to_python(v) for k, v in props.items()}


def memory_from_props(props: dict) -> Memory:
    return Memory.model_validate(convert_props(props))


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


async def run_read(
    driver: AsyncDriver,
    work: Callable[[AsyncManagedTransaction], Awaitable[T]],
) -> T:
    async with driver.session() as session:
        return await session.execute_read(work)


async def run_write(
    driver: AsyncDriver,
    work: Callable[[AsyncManagedTransaction], Awaitable[T]],
    *,
    operation: str,
    max_attempts: int = 3,
    retry_on_constraint: bool = False,
) -> T:
    """Run *work* in a managed write transaction with bounded retries.

    The driver already retries transient failures inside ``execute_write``;
    this loop adds retries for failures that escape it and, when
    ``retry_on_constraint`` is set, for uniqueness races between concurrent
    ``MERGE`` statements (the retry then matches the winner's node).
    Exhausting the attempts raises ``ConcurrentModificationConflict``.
    """
    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            async with driver.session() as session:
                return await session.execute_write(work)
        except TransientError as exc:
            last_exc = exc
        except ConstraintError as exc:
            if not retry_on_constraint:
                raise
            last_exc = exc
        logger.debug(
            "write conflict operation=%s attempt=%d/%d: %s",
            operation,
            attempt,
            max_attempts,
            last_exc,
        )
    raise ConcurrentModificationConflict(
        f"{operation} still conflicting after {max_attempts} attempts"
    ) from last_exc
