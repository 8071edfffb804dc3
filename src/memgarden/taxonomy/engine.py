"""Tag taxonomy engine — tag assignment and threshold-triggered refinement.

A *combination* is the complete tag set of a memory.  When more than K
memories share exactly the same combination it is a refinement
candidate: the member set goes to the external reasoner, and the subtags
it proposes are attached on top of the existing tags.  Refinement is
additive; nothing is renamed or removed, but refined members leave the
original combination because their tag set grew.

``refine_if_needed`` is propose-then-apply.  The reasoner call runs with
no transaction open.  The apply transaction locks every member from the
snapshot and recomputes the membership; if it changed in the meantime
(another worker refined it, tags were edited, a member was deleted) the
proposal is stale and is dropped without writing anything.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from neo4j import AsyncDriver
from neo4j import AsyncManagedTransaction

from memgarden.audit import AuditEventType
from memgarden.audit import AuditLogger
from memgarden.config import StoreConfig
from memgarden.config import TaxonomyConfig
from memgarden.errors import InvalidInput
from memgarden.errors import NotFound
from memgarden.errors import ReasoningUnavailable
from memgarden.graph._tx import Clock
from memgarden.graph._tx import convert_props
from memgarden.graph._tx import LOCK_MEMORY
from memgarden.graph._tx import memory_from_props
from memgarden.graph._tx import run_read
from memgarden.graph._tx import run_write
from memgarden.graph._tx import utcnow
from memgarden.models import Actor
from memgarden.models import Memory
from memgarden.models import RefinementOutcome
from memgarden.models import RefinementStatus
from memgarden.models import TagAssignment
from memgarden.models import TAGGER
from memgarden.taxonomy.claims import RefinementClaims
from memgarden.taxonomy.reasoner import Partition
from memgarden.taxonomy.reasoner import Reasoner

logger = logging.getLogger(__name__)

# Exact-combination membership: memories whose full tag set equals $combo.
_MEMBERS_MATCH = (
    "MATCH (m:Memory)-[:TAGGED]->(:Tag {name: $first}) "
    "MATCH (m)-[:TAGGED]->(t:Tag) "
    "WITH m, collect(t.name) AS names "
    "WHERE size(names) = size($combo) AND all(n IN names WHERE n IN $combo) "
)

_TOUCH_TENDED = (
    "SET m.last_tended_at = CASE WHEN $tended THEN $now ELSE m.last_tended_at END"
)


@dataclass(frozen=True)
class TagCombination:
    """A distinct full tag set and how many memories carry it."""

    tags: tuple[str, ...]
    count: int


class _StaleProposal(Exception):
    """Membership changed between propose and apply."""


class TagTaxonomyEngine:
    """Owns ``Tag`` nodes and ``TAGGED`` assignments."""

    def __init__(
        self,
        driver: AsyncDriver,
        *,
        reasoner: Reasoner | None = None,
        claims: RefinementClaims | None = None,
        config: TaxonomyConfig | None = None,
        store_config: StoreConfig | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._driver = driver
        self._reasoner = reasoner
        self._claims = claims
        self._config = config or TaxonomyConfig()
        self._attempts = (store_config or StoreConfig()).max_write_attempts
        self._audit = audit_logger
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(self, name: str) -> str:
        """Lowercase, trim and collapse whitespace in a tag name."""
        normalized = " ".join(name.split()).lower()
        if not normalized:
            raise InvalidInput("tag name must not be blank")
        if len(normalized) > self._config.max_tag_length:
            raise InvalidInput(
                f"tag name exceeds {self._config.max_tag_length} characters"
            )
        return normalized

    def combination(self, tag_names: Iterable[str]) -> list[str]:
        combo = sorted({self.normalize(name) for name in tag_names})
        if not combo:
            raise InvalidInput("a tag combination needs at least one tag")
        return combo

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    async def attach(self, memory_key: str, tag_name: str, added_by: Actor) -> bool:
        """Attach a tag; return ``False`` when it was already attached."""
        tag = self.normalize(tag_name)
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> bool:
            result = await tx.run(
                f"MATCH (m:Memory {{key: $key}}) {LOCK_MEMORY} "
                "OPTIONAL MATCH (m)-[r:TAGGED]->(:Tag {name: $tag}) "
                "RETURN m.key AS key, count(r) > 0 AS present",
                key=memory_key,
                tag=tag,
            )
            record = await result.single()
            if record is None:
                raise NotFound("memory", memory_key)
            if record["present"]:
                return False
            await tx.run(
                "MATCH (m:Memory {key: $key}) "
                "MERGE (t:Tag {name: $tag}) "
                "CREATE (m)-[:TAGGED {added_at: $now, added_by: $by}]->(t) "
                f"{_TOUCH_TENDED}",
                key=memory_key,
                tag=tag,
                now=now,
                by=str(added_by),
                tended=added_by.is_agent,
            )
            return True

        attached = await run_write(
            self._driver,
            work,
            operation="taxonomy.attach",
            max_attempts=self._attempts,
            retry_on_constraint=True,
        )
        if attached and self._audit is not None:
            await self._audit.record(
                AuditEventType.TAG_ATTACHED, actor=added_by, key=memory_key, tag=tag
            )
        return attached

    async def detach(
        self, memory_key: str, tag_name: str, *, actor: Actor | None = None
    ) -> bool:
        """Remove a tag assignment; return ``False`` when there was none."""
        tag = self.normalize(tag_name)
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> bool:
            result = await tx.run(
                f"MATCH (m:Memory {{key: $key}}) {LOCK_MEMORY} "
                "OPTIONAL MATCH (m)-[r:TAGGED]->(:Tag {name: $tag}) "
                "WITH m, collect(r) AS rels "
                "FOREACH (x IN rels | DELETE x) "
                "WITH m, size(rels) AS removed "
                "SET m.last_tended_at = CASE WHEN $tended AND removed > 0 "
                "    THEN $now ELSE m.last_tended_at END "
                "RETURN removed",
                key=memory_key,
                tag=tag,
                now=now,
                tended=actor is not None and actor.is_agent,
            )
            record = await result.single()
            if record is None:
                raise NotFound("memory", memory_key)
            return record["removed"] > 0

        removed = await run_write(
            self._driver, work, operation="taxonomy.detach", max_attempts=self._attempts
        )
        if removed and self._audit is not None:
            await self._audit.record(
                AuditEventType.TAG_DETACHED, actor=actor, key=memory_key, tag=tag
            )
        return removed

    async def tags_of(self, memory_key: str) -> list[TagAssignment]:
        async def work(tx: AsyncManagedTransaction) -> tuple[bool, list[dict]]:
            result = await tx.run(
                "MATCH (m:Memory {key: $key}) "
                "OPTIONAL MATCH (m)-[r:TAGGED]->(t:Tag) "
                "WITH m, r, t ORDER BY t.name "
                "RETURN m.key AS key, collect(CASE WHEN t IS NULL THEN NULL ELSE "
                "{tag: t.name, added_at: r.added_at, added_by: r.added_by} END) AS tags",
                key=memory_key,
            )
            record = await result.single()
            if record is None:
                return False, []
            return True, list(record["tags"])

        found, rows = await run_read(self._driver, work)
        if not found:
            raise NotFound("memory", memory_key)
        return [
            TagAssignment.model_validate({"memory_key": memory_key, **convert_props(row)})
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Combinations
    # ------------------------------------------------------------------

    async def members(self, tag_names: Iterable[str]) -> list[Memory]:
        """Memories whose complete tag set is exactly *tag_names*."""
        combo = self.combination(tag_names)

        async def work(tx: AsyncManagedTransaction) -> list[dict]:
            result = await tx.run(
                _MEMBERS_MATCH + "RETURN properties(m) AS props ORDER BY m.id",
                first=combo[0],
                combo=combo,
            )
            return [record["props"] async for record in result]

        return [memory_from_props(p) for p in await run_read(self._driver, work)]

    async def combination_count(self, tag_names: Iterable[str]) -> int:
        combo = self.combination(tag_names)

        async def work(tx: AsyncManagedTransaction) -> int:
            result = await tx.run(
                _MEMBERS_MATCH + "RETURN count(m) AS n",
                first=combo[0],
                combo=combo,
            )
            return (await result.single())["n"]

        return await run_read(self._driver, work)

    async def combination_counts(self, min_count: int = 1) -> list[TagCombination]:
        """Every distinct full tag set with at least *min_count* memories."""

        async def work(tx: AsyncManagedTransaction) -> list[TagCombination]:
            result = await tx.run(
                "MATCH (m:Memory)-[:TAGGED]->(t:Tag) "
                "WITH m, t.name AS name ORDER BY name "
                "WITH m, collect(name) AS combo "
                "WITH combo, count(m) AS n WHERE n >= $min_count "
                "RETURN combo, n ORDER BY n DESC, combo",
                min_count=min_count,
            )
            return [
                TagCombination(tags=tuple(record["combo"]), count=record["n"])
                async for record in result
            ]

        return await run_read(self._driver, work)

    async def refinement_candidates(self, k: int | None = None) -> list[TagCombination]:
        """Combinations shared by more than K memories."""
        return await self.combination_counts(min_count=self._k(k) + 1)

    def _k(self, k: int | None) -> int:
        value = self._config.k if k is None else k
        if value < 0:
            raise InvalidInput("K must be >= 0")
        return value

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    async def refine_if_needed(
        self,
        tag_names: Iterable[str],
        k: int | None = None,
        *,
        actor: Actor = TAGGER,
        timeout: float | None = None,
    ) -> RefinementOutcome:
        """Run one refinement pass over a combination if it exceeds K.

        Never retries: a ``partial`` or ``deferred`` outcome is left for the
        caller's next scheduled pass.  Cancelling the calling task while
        the reasoner is working leaves the store untouched.
        """
        combo = self.combination(tag_names)
        k = self._k(k)
        snapshot = await self.members(combo)
        if len(snapshot) <= k:
            return RefinementOutcome(
                status=RefinementStatus.not_needed,
                combination=combo,
                count_before=len(snapshot),
            )

        token: str | None = None
        if self._claims is not None:
            token = await self._claims.acquire(combo)
            if token is None:
                return RefinementOutcome(
                    status=RefinementStatus.superseded,
                    combination=combo,
                    count_before=len(snapshot),
                    reason="refinement already claimed by another worker",
                )
        try:
            outcome = await self._propose_and_apply(
                combo, k, snapshot, actor=actor, timeout=timeout
            )
        finally:
            if token is not None:
                await self._claims.release(combo, token)

        self._log_outcome(outcome)
        if self._audit is not None and outcome.status != RefinementStatus.not_needed:
            await self._audit.record(
                AuditEventType.REFINEMENT_RUN,
                actor=actor,
                combination=combo,
                status=outcome.status.value,
                count_before=outcome.count_before,
                count_after=outcome.count_after,
                applied=outcome.applied,
                members=[m.key for m in snapshot],
            )
        return outcome

    async def _propose_and_apply(
        self,
        combo: list[str],
        k: int,
        snapshot: list[Memory],
        *,
        actor: Actor,
        timeout: float | None,
    ) -> RefinementOutcome:
        base = {"combination": combo, "count_before": len(snapshot)}
        if self._reasoner is None:
            return RefinementOutcome(
                status=RefinementStatus.deferred, reason="no reasoner configured", **base
            )

        limit = timeout if timeout is not None else self._config.refinement_timeout_seconds
        try:
            proposal = await asyncio.wait_for(
                self._reasoner.propose_partition(combo, snapshot), timeout=limit
            )
        except TimeoutError:
            return RefinementOutcome(
                status=RefinementStatus.deferred,
                reason=f"reasoner timed out after {limit}s",
                **base,
            )
        except ReasoningUnavailable as exc:
            return RefinementOutcome(
                status=RefinementStatus.deferred, reason=str(exc), **base
            )
        except Exception as exc:
            # Third-party reasoners raise whatever their transport raises.
            logger.warning("reasoner failed combination=%s", combo, exc_info=True)
            return RefinementOutcome(
                status=RefinementStatus.deferred,
                reason=f"reasoner failed: {type(exc).__name__}: {exc}",
                **base,
            )

        assignments = self._sanitize(proposal, combo, snapshot)
        if not assignments:
            return RefinementOutcome(
                status=RefinementStatus.empty,
                reason="reasoner proposed no applicable subtags",
                **base,
            )

        try:
            count_after = await self._apply(combo, snapshot, assignments, actor=actor)
        except _StaleProposal as exc:
            return RefinementOutcome(
                status=RefinementStatus.superseded, reason=str(exc), **base
            )
        return RefinementOutcome(
            status=(
                RefinementStatus.partial if count_after > k else RefinementStatus.refined
            ),
            count_after=count_after,
            applied=assignments,
            **base,
        )

    def _sanitize(
        self, proposal: Partition, combo: list[str], snapshot: list[Memory]
    ) -> dict[str, list[str]]:
        """Keep only new labels and keys that belong to the snapshot."""
        member_keys = [m.key for m in snapshot]
        allowed = set(member_keys)
        result: dict[str, list[str]] = {}
        for raw_label, keys in proposal.items():
            try:
                label = self.normalize(raw_label)
            except InvalidInput:
                logger.warning("dropping invalid subtag label %r", raw_label)
                continue
            if label in combo:
                continue
            if not isinstance(keys, (list, tuple)):
                logger.warning("dropping subtag %r: keys must be a list", label)
                continue
            picked = set(result.get(label, []))
            picked.update(k for k in keys if isinstance(k, str) and k in allowed)
            if picked:
                # stable order: snapshot order
                result[label] = [k for k in member_keys if k in picked]
        return result

    async def _apply(
        self,
        combo: list[str],
        snapshot: list[Memory],
        assignments: dict[str, list[str]],
        *,
        actor: Actor,
    ) -> int:
        expected = sorted(m.key for m in snapshot)
        rows = [
            {"key": key, "tag": label}
            for label, keys in sorted(assignments.items())
            for key in keys
        ]
        now = self._clock()

        async def work(tx: AsyncManagedTransaction) -> int:
            result = await tx.run(
                "MATCH (m:Memory) WHERE m.key IN $keys "
                "WITH m ORDER BY m.id "
                f"{LOCK_MEMORY} "
                "RETURN count(m) AS locked",
                keys=expected,
            )
            if (await result.single())["locked"] != len(expected):
                raise _StaleProposal("a member was deleted before apply")
            result = await tx.run(
                _MEMBERS_MATCH + "RETURN m.key AS key",
                first=combo[0],
                combo=combo,
            )
            current = sorted([record["key"] async for record in result])
            if current != expected:
                raise _StaleProposal("combination membership changed before apply")
            await tx.run(
                "UNWIND $rows AS row "
                "MATCH (m:Memory {key: row.key}) "
                "MERGE (t:Tag {name: row.tag}) "
                "MERGE (m)-[r:TAGGED]->(t) "
                "ON CREATE SET r.added_at = $now, r.added_by = $by "
                f"{_TOUCH_TENDED}",
                rows=rows,
                now=now,
                by=str(actor),
                tended=actor.is_agent,
            )
            result = await tx.run(
                _MEMBERS_MATCH + "RETURN count(m) AS n",
                first=combo[0],
                combo=combo,
            )
            return (await result.single())["n"]

        return await run_write(
            self._driver,
            work,
            operation="taxonomy.refine",
            max_attempts=self._attempts,
            retry_on_constraint=True,
        )

    @staticmethod
    def _log_outcome(outcome: RefinementOutcome) -> None:
        combo = ",".join(outcome.combination)
        if outcome.status == RefinementStatus.deferred:
            logger.warning(
                "refinement deferred combination=%s reason=%s", combo, outcome.reason
            )
        elif outcome.status in (RefinementStatus.refined, RefinementStatus.partial):
            logger.info(
                "refinement %s combination=%s before=%d after=%s subtags=%s",
                outcome.status.value,
                combo,
                outcome.count_before,
                outcome.count_after,
                sorted(outcome.applied),
            )
        else:
            logger.debug(
                "refinement %s combination=%s reason=%s",
                outcome.status.value,
                combo,
                outcome.reason,
            )
