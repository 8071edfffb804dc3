"""Subtag reasoner contract and concrete adapters.

The taxonomy engine never chooses labels itself.  When a tag combination
grows past K it hands the member set to a ``Reasoner`` and applies
whatever partition comes back.  Adapters raise ``ReasonerError`` on any
provider failure; the engine turns that into a deferred refinement.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Mapping
from collections.abc import Sequence
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

from memgarden.config import ReasonerConfig
from memgarden.errors import ReasoningUnavailable
from memgarden.models import Memory

Partition = Mapping[str, Sequence[str]]


class ReasonerError(ReasoningUnavailable):
    """Raised by reasoner adapters when a call fails."""


@runtime_checkable
class Reasoner(Protocol):
    """Proposes subtag labels for the members of an over-full combination.

    Returns a mapping of subtag label to the keys of the members that
    should carry it.  An empty mapping means "no useful split".
    """

    async def propose_partition(
        self,
        combination: Sequence[str],
        members: Sequence[Memory],
    ) -> Partition: ...


class SubtagProposal(BaseModel):
    """Expected JSON shape of a provider response."""

    subtags: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Subtag label -> member keys.",
    )


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_CODE_FENCE_RE = re.compile(
    r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$",
    re.DOTALL,
)


def build_partition_prompt(
    combination: Sequence[str], members: Sequence[Memory]
) -> str:
    """Render the refinement request for a chat-completions model."""
    lines = [
        "The following memories all carry exactly the tags: "
        + ", ".join(sorted(combination)),
        "Too many memories share this combination. Propose more specific",
        "subtags that split them into meaningful groups. Prefer labels of the",
        "form '<parent tag>:<qualifier>'. A memory may receive several",
        "subtags or none.",
        "",
    ]
    for memory in members:
        lines.append(f"--- Memory {memory.key} ---")
        lines.append(f"Value: {memory.value}")
    lines.extend(
        [
            "",
            "Respond with JSON only, matching this schema:",
            json.dumps(SubtagProposal.model_json_schema()),
        ]
    )
    return "\n".join(lines)


def parse_partition(raw: str) -> dict[str, list[str]]:
    """Parse a provider response into a label -> keys mapping."""
    text = raw.strip()
    match = _CODE_FENCE_RE.match(text)
    if match:
        text = match.group(1).strip()
    try:
        return SubtagProposal.model_validate_json(text).subtags
    except ValidationError as exc:
        raise ReasonerError(f"unparseable subtag proposal: {exc}") from exc


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class NoopReasoner:
    """Deterministic reasoner that never proposes a split."""

    async def propose_partition(
        self,
        combination: Sequence[str],
        members: Sequence[Memory],
    ) -> Partition:
        del combination, members
        return {}


class OpenAICompatibleReasoner:
    """OpenAI-compatible chat-completions reasoner."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.2,
        max_tokens: int = 2048,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout_seconds = timeout_seconds

    async def propose_partition(
        self,
        combination: Sequence[str],
        members: Sequence[Memory],
    ) -> Partition:
        prompt = build_partition_prompt(combination, members)
        raw = await asyncio.to_thread(self._complete_sync, prompt)
        return parse_partition(raw)

    def _complete_sync(self, prompt: str) -> str:
        payload = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "response_format": {"type": "json_object"},
        }
        request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise ReasonerError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise ReasonerError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise ReasonerError(f"provider IO error: {exc}") from exc

        try:
            data = json.loads(raw)
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ReasonerError(
                "provider response missing choices[0].message.content"
            ) from exc

        if isinstance(content, str):
            return content
        raise ReasonerError("provider response content must be a string")


def build_reasoner(config: ReasonerConfig) -> Reasoner:
    """Create a concrete reasoner from ``ReasonerConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("reasoner_config.api_key is required when provider='openai'")
        return OpenAICompatibleReasoner(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "noop":
        return NoopReasoner()
    raise ValueError(
        f"Unsupported reasoner_config.provider '{config.provider}'. "
        "Supported providers: openai, noop."
    )
