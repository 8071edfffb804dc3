"""Unit tests for review/tend tracking."""

from __future__ import annotations

from datetime import timedelta

import pytest

from memgarden.errors import NotFound
from memgarden.models import HUMAN
from memgarden.models import TAGGER


class TestNeedingReview:
    async def test_never_reviewed_appears(self, records, tracker):
        memory = await records.create("a")
        assert [m.key for m in await tracker.needing_review(timedelta(days=30))] == [memory.key]

    async def test_review_cycle(self, records, tracker, clock):
        memory = await records.create("a")
        await tracker.mark_reviewed(memory.key)
        assert await tracker.needing_review(timedelta(days=30)) == []

        clock.advance(days=29)
        assert await tracker.needing_review(timedelta(days=30)) == []
        clock.advance(days=2)
        assert [m.key for m in await tracker.needing_review(timedelta(days=30))] == [memory.key]

    async def test_default_staleness_from_config(self, records, tracker, clock):
        memory = await records.create("a")
        await tracker.mark_reviewed(memory.key)
        clock.advance(days=31)
        assert [m.key for m in await tracker.needing_review()] == [memory.key]

    async def test_oldest_first_and_limit(self, records, tracker, clock):
        old = await records.create("old")
        clock.advance(days=1)
        new = await records.create("new")
        clock.advance(days=1)
        result = await tracker.needing_review(timedelta(days=30))
        assert [m.key for m in result] == [old.key, new.key]
        assert len(await tracker.needing_review(timedelta(days=30), limit=1)) == 1

    async def test_mark_reviewed_missing(self, tracker):
        with pytest.raises(NotFound):
            await tracker.mark_reviewed("ZZZ")


class TestNeedingTending:
    async def test_reviewed_but_untended(self, records, tracker, clock):
        memory = await records.create("a")
        assert await tracker.needing_tending() == []

        await tracker.mark_reviewed(memory.key)
        assert [m.key for m in await tracker.needing_tending()] == [memory.key]

        clock.advance(minutes=1)
        await tracker.mark_tended(memory.key)
        assert await tracker.needing_tending() == []

    async def test_agent_tag_counts_as_tending(self, records, tracker, taxonomy, clock):
        memory = await records.create("a")
        await tracker.mark_reviewed(memory.key)
        clock.advance(minutes=1)
        await taxonomy.attach(memory.key, "x", TAGGER)
        assert await tracker.needing_tending() == []

    async def test_human_tag_does_not_count(self, records, tracker, taxonomy, clock):
        memory = await records.create("a")
        await tracker.mark_reviewed(memory.key)
        clock.advance(minutes=1)
        await taxonomy.attach(memory.key, "x", HUMAN)
        assert [m.key for m in await tracker.needing_tending()] == [memory.key]

    async def test_mark_tended_sets_only_that_field(self, records, tracker, clock):
        memory = await records.create("a")
        clock.advance(minutes=1)
        tended = await tracker.mark_tended(memory.key)
        assert tended.last_tended_at == clock.now
        assert tended.last_reviewed_at is None
        assert tended.modified_at == memory.modified_at


class TestWindows:
    async def test_accessed_since(self, records, tracker, clock):
        a = await records.create("a")
        b = await records.create("b")
        c = await records.create("c")
        await records.touch_accessed(a.key)
        clock.advance(days=8)
        await records.touch_accessed(b.key)
        clock.advance(hours=1)
        await records.touch_accessed(c.key)

        result = await tracker.accessed_since(timedelta(days=7))
        assert [m.key for m in result] == [c.key, b.key]

    async def test_stale_untended(self, records, tracker, clock):
        a = await records.create("a")
        b = await records.create("b")
        clock.advance(days=10)
        await records.create("fresh")
        await tracker.mark_tended(b.key)

        result = await tracker.stale_untended(timedelta(days=5))
        assert [m.key for m in result] == [a.key]
