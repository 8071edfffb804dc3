"""Unit tests for the relationship graph."""

from __future__ import annotations

import pytest

from memgarden.audit import AuditEventType
from memgarden.errors import InvalidEdge
from memgarden.errors import InvalidInput
from memgarden.errors import NotFound
from memgarden.models import Actor
from memgarden.models import HUMAN

LINKER = Actor.agent("linker")


@pytest.fixture()
async def trio(records):
    return [await records.create(v) for v in ("a", "b", "c")]


class TestLink:
    async def test_link_is_idempotent(self, graph, trio):
        a, b, _ = trio
        assert await graph.link(a.key, b.key, "relates_to", created_by=HUMAN) is True
        assert await graph.link(a.key, b.key, "relates_to", created_by=HUMAN) is False
        assert len(await graph.edges(a.key)) == 1

    async def test_self_loop_rejected(self, graph, trio):
        a, _, _ = trio
        with pytest.raises(InvalidEdge):
            await graph.link(a.key, a.key, "relates_to", created_by=HUMAN)

    async def test_missing_endpoint_rejected(self, graph, trio):
        a, _, _ = trio
        with pytest.raises(InvalidEdge, match="missing memory"):
            await graph.link(a.key, "ZZZ", "supports", created_by=HUMAN)

    async def test_type_normalized(self, graph, trio):
        a, b, _ = trio
        await graph.link(a.key, b.key, " Derived From ", created_by=HUMAN)
        (edge,) = await graph.edges(a.key)
        assert edge.edge_type == "derived_from"

    async def test_blank_type_rejected(self, graph, trio):
        a, b, _ = trio
        with pytest.raises(InvalidInput):
            await graph.link(a.key, b.key, "   ", created_by=HUMAN)

    async def test_symmetric_type_is_bidirectional_in_either_order(self, graph, trio):
        a, b, _ = trio
        assert await graph.link(b.key, a.key, "contradicts", created_by=HUMAN) is True
        assert await graph.link(a.key, b.key, "contradicts", created_by=HUMAN) is False
        (edge,) = await graph.edges(a.key)
        assert edge.bidirectional is True
        assert edge.from_key == a.key

    async def test_directed_edges_in_both_directions_are_distinct(self, graph, trio):
        a, b, _ = trio
        assert await graph.link(a.key, b.key, "supports", created_by=HUMAN)
        assert await graph.link(b.key, a.key, "supports", created_by=HUMAN)
        assert len(await graph.edges(a.key)) == 2

    async def test_relink_as_bidirectional_upgrades(self, graph, trio):
        a, b, _ = trio
        await graph.link(a.key, b.key, "supports", created_by=HUMAN)
        assert await graph.link(a.key, b.key, "supports", True, created_by=HUMAN) is False
        (edge,) = await graph.edges(a.key)
        assert edge.bidirectional is True

    async def test_relink_reverse_edge_as_bidirectional_upgrades(self, graph, trio, clock):
        a, b, _ = trio
        await graph.link(b.key, a.key, "supports", created_by=LINKER)
        created_at = clock.now
        clock.advance(minutes=1)

        assert await graph.link(b.key, a.key, "supports", True, created_by=HUMAN) is False

        (edge,) = await graph.edges(a.key)
        assert edge.bidirectional is True
        assert edge.created_at == created_at
        assert edge.created_by == "agent:linker"
        assert [m.key for m in await graph.neighbors(a.key)] == [b.key]
        assert await graph.unlink(b.key, a.key, "supports") is True
        assert await graph.edges(a.key) == []

    async def test_bidirectional_link_folds_both_directed_edges(self, graph, trio):
        a, b, _ = trio
        await graph.link(a.key, b.key, "supports", created_by=HUMAN)
        await graph.link(b.key, a.key, "supports", created_by=HUMAN)
        assert len(await graph.edges(a.key)) == 2

        assert await graph.link(b.key, a.key, "supports", True, created_by=HUMAN) is False

        (edge,) = await graph.edges(a.key)
        assert edge.bidirectional is True
        assert (edge.from_key, edge.to_key) == (a.key, b.key)

    async def test_agent_link_marks_both_tended(self, graph, records, trio, clock):
        a, b, _ = trio
        clock.advance(minutes=2)
        await graph.link(a.key, b.key, "supports", created_by=LINKER)
        for key in (a.key, b.key):
            assert (await records.get_by_key(key)).last_tended_at == clock.now

    async def test_audited(self, graph, trio, audit_logger):
        a, b, _ = trio
        await graph.link(a.key, b.key, "supports", created_by=LINKER)
        await graph.link(a.key, b.key, "supports", created_by=LINKER)
        events = await audit_logger.read_events(event_type=AuditEventType.EDGE_LINKED)
        assert len(events) == 1
        assert events[0].actor == "agent:linker"


class TestUnlink:
    async def test_unlink_directed(self, graph, trio):
        a, b, _ = trio
        await graph.link(a.key, b.key, "supports", created_by=HUMAN)
        assert await graph.unlink(b.key, a.key, "supports") is False
        assert await graph.unlink(a.key, b.key, "supports") is True
        assert await graph.edges(a.key) == []

    async def test_unlink_bidirectional_either_order(self, graph, trio):
        a, b, _ = trio
        await graph.link(a.key, b.key, "relates_to", created_by=HUMAN)
        assert await graph.unlink(b.key, a.key, "relates_to") is True


class TestTraversal:
    async def test_neighbors_follow_direction(self, graph, trio):
        a, b, c = trio
        await graph.link(a.key, b.key, "supports", created_by=HUMAN)
        await graph.link(c.key, a.key, "supports", created_by=HUMAN)

        assert [m.key for m in await graph.neighbors(a.key)] == [b.key]
        assert [m.key for m in await graph.neighbors(b.key)] == []

    async def test_neighbors_include_bidirectional_either_side(self, graph, trio):
        a, b, c = trio
        await graph.link(a.key, b.key, "relates_to", created_by=HUMAN)
        await graph.link(c.key, b.key, "supports", True, created_by=HUMAN)

        assert [m.key for m in await graph.neighbors(b.key)] == [a.key, c.key]

    async def test_neighbors_filtered_by_type(self, graph, trio):
        a, b, c = trio
        await graph.link(a.key, b.key, "supports", created_by=HUMAN)
        await graph.link(a.key, c.key, "contradicts", created_by=HUMAN)

        assert [m.key for m in await graph.neighbors(a.key, "Contradicts")] == [c.key]

    async def test_cycles_are_fine(self, graph, trio):
        a, b, _ = trio
        await graph.link(a.key, b.key, "supports", created_by=HUMAN)
        await graph.link(b.key, a.key, "supports", created_by=HUMAN)
        assert [m.key for m in await graph.neighbors(a.key)] == [b.key]

    async def test_neighbors_of_missing_memory(self, graph):
        with pytest.raises(NotFound):
            await graph.neighbors("ZZZ")

    async def test_edges_of_missing_memory(self, graph):
        with pytest.raises(NotFound):
            await graph.edges("ZZZ")
