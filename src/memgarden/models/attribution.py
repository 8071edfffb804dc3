"""Actor attribution — who performed a mutation.

Attribution is a closed variant: either the human owner, or an autonomous
agent identified by its role.  The persisted form is a plain string
(``"human"`` or ``"agent:<role>"``) so it stays readable in the graph.
"""

from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel
from pydantic import Field
from pydantic import model_validator


class ActorKind(StrEnum):
    human = "human"
    agent = "agent"


class AgentRole(StrEnum):
    """Well-known maintenance agent roles.  Other roles are allowed."""

    reviewer = "reviewer"
    tagger = "tagger"
    linker = "linker"
    condenser = "condenser"
    corrector = "corrector"
    archiver = "archiver"


_ROLE_RE = re.compile(r"^[a-z][a-z0-9_-]{0,63}$")
_HUMAN_ALIASES = {"human", "user"}


class Actor(BaseModel):
    """Attribution for a mutation."""

    model_config = {"frozen": True}

    kind: ActorKind = Field(description="Human owner or autonomous agent.")
    role: str | None = Field(
        default=None,
        description="Agent role; required for agents, absent for humans.",
    )

    @model_validator(mode="after")
    def _check_role(self) -> Actor:
        if self.kind == ActorKind.human:
            if self.role is not None:
                raise ValueError("human actors carry no role")
            return self
        if self.role is None or not _ROLE_RE.match(self.role):
            raise ValueError(f"invalid agent role: {self.role!r}")
        return self

    @classmethod
    def human(cls) -> Actor:
        return cls(kind=ActorKind.human)

    @classmethod
    def agent(cls, role: str | AgentRole) -> Actor:
        return cls(kind=ActorKind.agent, role=str(role).strip().lower())

    @classmethod
    def parse(cls, value: str | Actor) -> Actor:
        """Parse the persisted string form (``human``/``user``/``agent:<role>``)."""
        if isinstance(value, Actor):
            return value
        text = value.strip().lower()
        if text in _HUMAN_ALIASES:
            return cls.human()
        prefix, sep, role = text.partition(":")
        if sep and prefix == ActorKind.agent.value:
            return cls.agent(role)
        raise ValueError(f"unrecognised actor: {value!r}")

    @property
    def is_agent(self) -> bool:
        return self.kind == ActorKind.agent

    def __str__(self) -> str:
        if self.kind == ActorKind.human:
            return ActorKind.human.value
        return f"{ActorKind.agent.value}:{self.role}"


HUMAN = Actor.human()
TAGGER = Actor.agent(AgentRole.tagger)
