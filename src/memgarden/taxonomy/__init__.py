"""Taxonomy domain — tag assignment, combination counts and refinement."""

from memgarden.taxonomy.claims import RefinementClaims
from memgarden.taxonomy.engine import TagCombination
from memgarden.taxonomy.engine import TagTaxonomyEngine
from memgarden.taxonomy.reasoner import build_reasoner
from memgarden.taxonomy.reasoner import NoopReasoner
from memgarden.taxonomy.reasoner import OpenAICompatibleReasoner
from memgarden.taxonomy.reasoner import Reasoner
from memgarden.taxonomy.reasoner import ReasonerError

__all__ = [
    "NoopReasoner",
    "OpenAICompatibleReasoner",
    "Reasoner",
    "ReasonerError",
    "RefinementClaims",
    "TagCombination",
    "TagTaxonomyEngine",
    "build_reasoner",
]
