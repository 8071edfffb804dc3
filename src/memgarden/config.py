"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing — just plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StoreConfig:
    """Connection settings for the backing stores."""

    neo4j_url: str = "bolt://localhost:7687"
    neo4j_user: str | None = None
    neo4j_password: str | None = None
    redis_url: str | None = None
    # Attempts for compound writes that race with another writer
    max_write_attempts: int = 3


@dataclass(frozen=True)
class RecordConfig:
    """Limits applied by the memory record store."""

    max_value_length: int = 500
    max_name_length: int = 200


@dataclass(frozen=True)
class TaxonomyConfig:
    """Tag taxonomy and refinement settings."""

    k: int = 10
    max_tag_length: int = 100
    claim_ttl_seconds: int = 300
    refinement_timeout_seconds: float | None = None


@dataclass(frozen=True)
class TemporalConfig:
    """Review/tend eligibility settings."""

    review_staleness_days: int = 30


@dataclass(frozen=True)
class GraphConfig:
    """Relationship graph settings."""

    symmetric_edge_types: frozenset[str] = frozenset({"relates_to", "contradicts"})
    max_edge_type_length: int = 50


@dataclass(frozen=True)
class ReasonerConfig:
    """Provider settings for the external subtag reasoner."""

    provider: str = "openai"
    model: str = "gpt-4"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    max_tokens: int = 2048
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "memgarden_audit.jsonl"
    enabled: bool = True
