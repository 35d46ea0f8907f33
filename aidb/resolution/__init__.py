"""
AIDB Resolution

Relationship resolution: semantic search, union fallback and the
run-scoped contexts threaded through draft/resolve/cascade.
"""

from aidb.resolution.search import EmbeddingCache, SearchMatch, SemanticSearch, compute_rrf_score
from aidb.resolution.union import (
    SearchError,
    UnionMatch,
    UnionSearch,
    UnionSearchOptions,
    UnionSearchResult,
)
from aidb.resolution.context import CascadeOptions, EngineContext, GenerationContext, Providers
from aidb.resolution.resolver import RelationshipResolver

__all__ = [
    "EmbeddingCache",
    "SearchMatch",
    "SemanticSearch",
    "compute_rrf_score",
    "SearchError",
    "UnionMatch",
    "UnionSearch",
    "UnionSearchOptions",
    "UnionSearchResult",
    "CascadeOptions",
    "EngineContext",
    "GenerationContext",
    "Providers",
    "RelationshipResolver",
]
