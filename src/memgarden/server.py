"""memgarden — FastMCP server exposing the retrieval boundary as MCP tools.

Tools delegate to a :class:`~memgarden.core.MemoryCore`.  Call
``configure(...)`` before using the server and ``shutdown()`` when done.
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timedelta
from time import perf_counter
from typing import TypeVar

from fastmcp import FastMCP

from memgarden.boundary import VectorIndex
from memgarden.config import AuditConfig
from memgarden.config import GraphConfig
from memgarden.config import ReasonerConfig
from memgarden.config import RecordConfig
from memgarden.config import StoreConfig
from memgarden.config import TaxonomyConfig
from memgarden.config import TemporalConfig
from memgarden.core import MemoryCore
from memgarden.errors import ConcurrentModificationConflict
from memgarden.errors import InvalidEdge
from memgarden.errors import MemgardenError
from memgarden.errors import NotFound
from memgarden.models import Actor
from memgarden.models import GetMemoryResult
from memgarden.models import LedgerResult
from memgarden.models import MemoryEntry
from memgarden.models import MemoryListResult
from memgarden.models import MutationResult
from memgarden.models import RefineResult
from memgarden.models.schemas import ToolStatus
from memgarden.observability import record_latency
from memgarden.taxonomy import Reasoner

logger = logging.getLogger(__name__)

mcp = FastMCP("memgarden")

R = TypeVar("R", bound=ToolStatus)

# ---------------------------------------------------------------------------
# Core instance (set via configure())
# ---------------------------------------------------------------------------

_core: MemoryCore | None = None


async def configure(
    store_config: StoreConfig | None = None,
    *,
    core: MemoryCore | None = None,
    record_config: RecordConfig | None = None,
    taxonomy_config: TaxonomyConfig | None = None,
    temporal_config: TemporalConfig | None = None,
    graph_config: GraphConfig | None = None,
    reasoner: Reasoner | None = None,
    reasoner_config: ReasonerConfig | None = None,
    audit_config: AuditConfig | None = None,
    vector_index: VectorIndex | None = None,
) -> None:
    """Connect the backing stores, or adopt an already built *core*.

    Must be called before the MCP tools can function.  Reconfiguring
    closes the previous core.
    """
    global _core
    if _core is not None and _core is not core:
        try:
            await _core.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
    _core = core or await MemoryCore.connect(
        store_config,
        record_config=record_config,
        taxonomy_config=taxonomy_config,
        temporal_config=temporal_config,
        graph_config=graph_config,
        reasoner=reasoner,
        reasoner_config=reasoner_config,
        audit_config=audit_config,
        vector_index=vector_index,
    )


async def shutdown() -> None:
    """Close backend clients and release server resources."""
    global _core
    if _core is not None:
        await _core.close()
        _core = None


def _get_core() -> MemoryCore:
    """Return the configured core or raise."""
    if _core is None:
        raise RuntimeError("Memory core not configured. Call configure() first.")
    return _core


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error_code(exc: Exception) -> str:
    if isinstance(exc, NotFound):
        return "not_found"
    if isinstance(exc, InvalidEdge):
        return "invalid_edge"
    if isinstance(exc, ValueError):
        return "validation_error"
    if isinstance(exc, ConcurrentModificationConflict):
        return "conflict"
    return "internal_error"


def _failed(result_cls: type[R], exc: Exception) -> R:
    return result_cls(status="error", error_code=_error_code(exc), message=str(exc))


def _record(operation: str, start: float, result: ToolStatus | None) -> None:
    record_latency(
        operation=f"mcp.{operation}",
        duration_ms=(perf_counter() - start) * 1000,
        ok=result is not None and result.status != "error",
    )


# ---------------------------------------------------------------------------
# Read tools
# ---------------------------------------------------------------------------


@mcp.tool
async def get_memory(key: str | None = None, name: str | None = None) -> GetMemoryResult:
    """Fetch one memory by key or by name.

    Args:
        key: Public key of the memory.
        name: Unique human-chosen name (used when key is omitted).
    """
    start = perf_counter()
    result: GetMemoryResult | None = None
    try:
        boundary = _get_core().boundary
        if (key is None) == (name is None):
            result = GetMemoryResult(
                status="error",
                error_code="validation_error",
                message="Provide exactly one of key or name.",
            )
            return result
        try:
            memory = (
                await boundary.get(key) if key is not None else await boundary.get_by_name(name)
            )
        except (MemgardenError, ValueError) as exc:
            result = _failed(GetMemoryResult, exc)
            return result
        result = GetMemoryResult(memory=MemoryEntry.from_memory(memory))
        return result
    finally:
        _record("get_memory", start, result)


@mcp.tool
async def list_memories(
    tags: list[str] | None = None,
    match: str = "all",
    modified_since: datetime | None = None,
    accessed_since: datetime | None = None,
    limit: int = 50,
) -> MemoryListResult:
    """List memories filtered by tags and timestamps, newest change first.

    Args:
        tags: Tag names to filter on.
        match: "all" (every tag present) or "any" (at least one).
        modified_since: Only memories whose value changed at or after this time.
        accessed_since: Only memories retrieved at or after this time.
        limit: Max memories returned.
    """
    start = perf_counter()
    result: MemoryListResult | None = None
    try:
        boundary = _get_core().boundary
        try:
            memories = await boundary.list_memories(
                tags,
                match,  # type: ignore[arg-type]
                modified_since=modified_since,
                accessed_since=accessed_since,
                limit=limit,
            )
        except (MemgardenError, ValueError) as exc:
            result = _failed(MemoryListResult, exc)
            return result
        result = MemoryListResult.of(memories)
        return result
    finally:
        _record("list_memories", start, result)


@mcp.tool
async def neighbors(key: str, edge_type: str | None = None) -> MemoryListResult:
    """Memories one edge away from *key*.

    Args:
        key: Public key of the memory.
        edge_type: Restrict traversal to one edge type.
    """
    start = perf_counter()
    result: MemoryListResult | None = None
    try:
        boundary = _get_core().boundary
        try:
            memories = await boundary.neighbors(key, edge_type)
        except (MemgardenError, ValueError) as exc:
            result = _failed(MemoryListResult, exc)
            return result
        result = MemoryListResult.of(memories)
        return result
    finally:
        _record("neighbors", start, result)


@mcp.tool
async def needing_review(
    staleness_days: float | None = None,
    limit: int | None = None,
) -> MemoryListResult:
    """Memories never reviewed or reviewed before the staleness window.

    Args:
        staleness_days: Window in days; defaults to the configured value.
        limit: Max memories returned.
    """
    start = perf_counter()
    result: MemoryListResult | None = None
    try:
        boundary = _get_core().boundary
        staleness = timedelta(days=staleness_days) if staleness_days is not None else None
        try:
            memories = await boundary.needing_review(staleness, limit=limit)
        except (MemgardenError, ValueError) as exc:
            result = _failed(MemoryListResult, exc)
            return result
        result = MemoryListResult.of(memories)
        return result
    finally:
        _record("needing_review", start, result)


@mcp.tool
async def needing_tending(limit: int | None = None) -> MemoryListResult:
    """Reviewed memories that no agent has tended since the review.

    Args:
        limit: Max memories returned.
    """
    start = perf_counter()
    result: MemoryListResult | None = None
    try:
        boundary = _get_core().boundary
        try:
            memories = await boundary.needing_tending(limit=limit)
        except (MemgardenError, ValueError) as exc:
            result = _failed(MemoryListResult, exc)
            return result
        result = MemoryListResult.of(memories)
        return result
    finally:
        _record("needing_tending", start, result)


# ---------------------------------------------------------------------------
# Mutation tools
# ---------------------------------------------------------------------------


@mcp.tool
async def attach_tag(key: str, tag: str, actor: str = "agent:tagger") -> MutationResult:
    """Attach a tag to a memory.

    Args:
        key: Public key of the memory.
        tag: Tag name (normalized to lowercase).
        actor: "human" or "agent:<role>".
    """
    start = perf_counter()
    result: MutationResult | None = None
    try:
        boundary = _get_core().boundary
        try:
            applied = await boundary.attach(key, tag, Actor.parse(actor))
        except (MemgardenError, ValueError) as exc:
            result = _failed(MutationResult, exc)
            return result
        result = MutationResult(status="applied" if applied else "unchanged")
        return result
    finally:
        _record("attach_tag", start, result)


@mcp.tool
async def link_memories(
    from_key: str,
    to_key: str,
    edge_type: str,
    bidirectional: bool = False,
    actor: str = "agent:linker",
) -> MutationResult:
    """Create a typed edge between two memories.

    Args:
        from_key: Source memory key.
        to_key: Target memory key.
        edge_type: Relation type, e.g. "relates_to" or "contradicts".
        bidirectional: Whether the edge is traversable both ways.
        actor: "human" or "agent:<role>".
    """
    start = perf_counter()
    result: MutationResult | None = None
    try:
        boundary = _get_core().boundary
        try:
            applied = await boundary.link(
                from_key, to_key, edge_type, bidirectional, actor=Actor.parse(actor)
            )
        except (MemgardenError, ValueError) as exc:
            result = _failed(MutationResult, exc)
            return result
        result = MutationResult(status="applied" if applied else "unchanged")
        return result
    finally:
        _record("link_memories", start, result)


async def _ledger_call(operation: str, agent: str, key: str) -> LedgerResult:
    start = perf_counter()
    result: LedgerResult | None = None
    try:
        boundary = _get_core().boundary
        record = getattr(boundary, operation)
        try:
            stat = await record(agent, key)
        except (MemgardenError, ValueError) as exc:
            result = _failed(LedgerResult, exc)
            return result
        result = LedgerResult(status="applied", stat=stat)
        return result
    finally:
        _record(operation, start, result)


@mcp.tool
async def record_served(agent: str, key: str) -> LedgerResult:
    """Count one surfacing of a memory to an agent.

    Args:
        agent: Agent identity.
        key: Public key of the memory.
    """
    return await _ledger_call("record_served", agent, key)


@mcp.tool
async def record_relevant(agent: str, key: str) -> LedgerResult:
    """Count one positive relevance judgment by an agent.

    Args:
        agent: Agent identity.
        key: Public key of the memory.
    """
    return await _ledger_call("record_relevant", agent, key)


@mcp.tool
async def refine_tags(
    tags: list[str],
    k: int | None = None,
    actor: str = "agent:tagger",
) -> RefineResult:
    """Run one refinement pass on a tag combination above the threshold.

    Args:
        tags: The full tag combination.
        k: Threshold override; defaults to the configured K.
        actor: Attribution for attached subtags.
    """
    start = perf_counter()
    result: RefineResult | None = None
    try:
        taxonomy = _get_core().taxonomy
        try:
            outcome = await taxonomy.refine_if_needed(tags, k, actor=Actor.parse(actor))
        except (MemgardenError, ValueError) as exc:
            result = _failed(RefineResult, exc)
            return result
        result = RefineResult(status=outcome.status.value, outcome=outcome)
        return result
    finally:
        _record("refine_tags", start, result)
