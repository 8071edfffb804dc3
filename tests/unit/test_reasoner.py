"""Unit tests for reasoner adapters, prompt rendering and response parsing."""

from __future__ import annotations

import io
import json
from datetime import datetime
from datetime import UTC
from urllib.error import URLError

import pytest

from memgarden.config import ReasonerConfig
from memgarden.models import Memory
from memgarden.taxonomy import build_reasoner
from memgarden.taxonomy import NoopReasoner
from memgarden.taxonomy import OpenAICompatibleReasoner
from memgarden.taxonomy import Reasoner
from memgarden.taxonomy import ReasonerError
from memgarden.taxonomy.reasoner import build_partition_prompt
from memgarden.taxonomy.reasoner import parse_partition
import memgarden.taxonomy.reasoner as reasoner_module


def _memory(n: int, value: str) -> Memory:
    now = datetime(2024, 1, 1, tzinfo=UTC)
    return Memory(
        id=n, key=f"K{n}", value=value, created_at=now, modified_at=now
    )


class TestBuildReasoner:
    def test_openai_provider_requires_api_key(self) -> None:
        with pytest.raises(ValueError, match="api_key is required"):
            build_reasoner(ReasonerConfig(provider="openai", api_key=None))

    def test_openai_provider_with_key(self) -> None:
        reasoner = build_reasoner(ReasonerConfig(provider="OpenAI", api_key="k"))
        assert isinstance(reasoner, OpenAICompatibleReasoner)

    def test_noop_provider_is_supported(self) -> None:
        assert isinstance(build_reasoner(ReasonerConfig(provider="noop")), NoopReasoner)

    def test_unsupported_provider_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unsupported reasoner_config.provider"):
            build_reasoner(ReasonerConfig(provider="anthropic"))


class TestNoopReasoner:
    async def test_never_splits(self) -> None:
        reasoner = NoopReasoner()
        assert isinstance(reasoner, Reasoner)
        assert await reasoner.propose_partition(["a"], [_memory(1, "x")]) == {}


class TestPrompt:
    def test_lists_combination_and_members(self) -> None:
        prompt = build_partition_prompt(
            ["recurring", "finance"], [_memory(1, "rent due"), _memory(2, "gym fee")]
        )
        assert "finance, recurring" in prompt
        assert "--- Memory K1 ---" in prompt
        assert "Value: gym fee" in prompt
        assert '"subtags"' in prompt


class TestParsePartition:
    def test_plain_json(self) -> None:
        raw = '{"subtags": {"finance:rent": ["K1"]}}'
        assert parse_partition(raw) == {"finance:rent": ["K1"]}

    def test_code_fenced_json(self) -> None:
        raw = '```json\n{"subtags": {"a": ["K1", "K2"]}}\n```'
        assert parse_partition(raw) == {"a": ["K1", "K2"]}

    def test_missing_subtags_is_empty(self) -> None:
        assert parse_partition("{}") == {}

    def test_garbage_raises_reasoner_error(self) -> None:
        with pytest.raises(ReasonerError, match="unparseable"):
            parse_partition("not json at all")


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class TestOpenAICompatibleReasoner:
    async def test_posts_chat_completion_and_parses(self, monkeypatch) -> None:
        seen = {}

        def _fake_urlopen(request, timeout):
            seen["url"] = request.full_url
            seen["body"] = json.loads(request.data)
            seen["timeout"] = timeout
            content = json.dumps({"subtags": {"finance:rent": ["K1"]}})
            body = {"choices": [{"message": {"content": content}}]}
            return _FakeResponse(json.dumps(body).encode())

        monkeypatch.setattr(reasoner_module, "urlopen", _fake_urlopen)
        reasoner = OpenAICompatibleReasoner(
            model="gpt-4", api_key="test", base_url="http://llm.local/v1/", timeout_seconds=5
        )

        result = await reasoner.propose_partition(["finance"], [_memory(1, "rent")])

        assert result == {"finance:rent": ["K1"]}
        assert seen["url"] == "http://llm.local/v1/chat/completions"
        assert seen["body"]["model"] == "gpt-4"
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert seen["timeout"] == 5

    async def test_network_error_becomes_reasoner_error(self, monkeypatch) -> None:
        def _fail(request, timeout):
            raise URLError("unreachable")

        monkeypatch.setattr(reasoner_module, "urlopen", _fail)
        reasoner = OpenAICompatibleReasoner(model="gpt-4", api_key="test")

        with pytest.raises(ReasonerError, match="network error"):
            await reasoner.propose_partition(["a"], [_memory(1, "x")])

    async def test_malformed_envelope(self, monkeypatch) -> None:
        monkeypatch.setattr(
            reasoner_module,
            "urlopen",
            lambda request, timeout: _FakeResponse(b'{"choices": []}'),
        )
        reasoner = OpenAICompatibleReasoner(model="gpt-4", api_key="test")

        with pytest.raises(ReasonerError, match="missing choices"):
            await reasoner.propose_partition(["a"], [_memory(1, "x")])
