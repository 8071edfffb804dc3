"""Append-only JSONL audit trail of attributed mutations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from memgarden.audit.schemas import AuditEvent
from memgarden.audit.schemas import AuditEventType
from memgarden.config import AuditConfig

logger = logging.getLogger(__name__)

# Payload fields that name the memories an event touched.
_KEY_FIELDS = ("key", "from_key", "to_key")


def _event_keys(event: AuditEvent) -> set[str]:
    keys = {str(event.payload[f]) for f in _KEY_FIELDS if event.payload.get(f) is not None}
    members = event.payload.get("members")
    if isinstance(members, list):
        keys.update(map(str, members))
    return keys


@dataclass(frozen=True)
class _EventFilter:
    event_type: AuditEventType | None = None
    since: float | None = None
    memory_key: str | None = None
    actor: str | None = None

    def __call__(self, event: AuditEvent) -> bool:
        if self.event_type is not None and event.event_type != self.event_type:
            return False
        if self.since is not None and event.timestamp < self.since:
            return False
        if self.actor is not None and event.actor != self.actor:
            return False
        return self.memory_key is None or self.memory_key in _event_keys(event)


class AuditLogger:
    """Writes one JSON line per event.

    File I/O runs in a worker thread; an ``asyncio.Lock`` keeps lines from
    interleaving between concurrent writers in the same process.
    """

    def __init__(self, config: AuditConfig) -> None:
        self.config = config
        self._path = Path(config.file_path)
        self._lock = asyncio.Lock()

    async def log(self, event: AuditEvent) -> None:
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(self._write_line, line)

    async def record(
        self,
        event_type: AuditEventType,
        *,
        actor: object | None = None,
        **payload: object,
    ) -> None:
        """Build an event from keyword payload and append it."""
        event = AuditEvent(
            event_type=event_type,
            actor=None if actor is None else str(actor),
            payload=payload,
        )
        await self.log(event)

    def _write_line(self, line: str) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        since: float | None = None,
        memory_key: str | None = None,
        actor: str | None = None,
    ) -> list[AuditEvent]:
        """Return logged events in write order, optionally filtered.

        *memory_key* matches any event naming that memory, including
        edge endpoints and refinement members.
        """
        if not self._path.exists():
            return []
        async with self._lock:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")

        keep = _EventFilter(event_type, since, memory_key, actor)
        events: list[AuditEvent] = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                event = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning("skipping malformed audit line %d in %s", line_no, self._path)
                continue
            if keep(event):
                events.append(event)
        return events
