"""End-to-end scenarios across every component."""

from __future__ import annotations

from memgarden.audit import AuditEventType
from memgarden.models import HUMAN
from memgarden.models import RefinementStatus


class TestRentScenario:
    async def test_refinement_splits_confirmed_rent(self, records, taxonomy, reasoner):
        m1 = await records.create("rent due the 1st")
        await taxonomy.attach(m1.key, "finance", HUMAN)
        await taxonomy.attach(m1.key, "recurring", HUMAN)
        m2 = await records.create("rent due the 1st, confirmed")
        await taxonomy.attach(m2.key, "finance", HUMAN)
        await taxonomy.attach(m2.key, "recurring", HUMAN)

        assert await taxonomy.combination_count({"finance", "recurring"}) == 2
        (candidate,) = await taxonomy.refinement_candidates(k=1)
        assert candidate.tags == ("finance", "recurring")

        reasoner.proposal = {"finance:confirmed": [m2.key]}
        outcome = await taxonomy.refine_if_needed({"finance", "recurring"}, k=1)

        assert outcome.status == RefinementStatus.refined
        assert {t.tag for t in await taxonomy.tags_of(m2.key)} == {
            "finance",
            "recurring",
            "finance:confirmed",
        }
        assert {t.tag for t in await taxonomy.tags_of(m1.key)} == {"finance", "recurring"}
        assert (await records.get_by_key(m1.key)).value == "rent due the 1st"
        assert await taxonomy.refinement_candidates(k=1) == []


class TestDeleteCascade:
    async def test_nothing_references_deleted_memory(
        self, records, taxonomy, graph, ledger, boundary, audit_logger
    ):
        a = await records.create("a")
        b = await records.create("b")
        c = await records.create("c")
        await records.update_value(a.key, "a1", modified_by=HUMAN)
        await records.update_value(a.key, "a2", modified_by=HUMAN)
        await taxonomy.attach(a.key, "x", HUMAN)
        await graph.link(a.key, b.key, "relates_to", created_by=HUMAN)
        await graph.link(c.key, a.key, "supports", created_by=HUMAN)
        await boundary.serve("reviewer", [a.key, b.key])
        await ledger.record_relevant("reviewer", a.key)

        await records.delete(a.key)

        assert await graph.neighbors(b.key) == []
        assert await graph.neighbors(c.key) == []
        assert await graph.edges(c.key) == []
        assert await ledger.stats_for_memory(a.key) == []
        assert [s.memory_key for s in await ledger.stats_for_agent("reviewer")] == [b.key]
        assert await taxonomy.members(["x"]) == []
        (event,) = await audit_logger.read_events(event_type=AuditEventType.MEMORY_DELETED)
        assert event.payload == {
            "key": a.key,
            "tags": 1,
            "edges": 2,
            "versions": 2,
            "stats": 1,
        }
