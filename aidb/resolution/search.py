"""
AIDB Semantic Search

Similarity search over existing entities of one type:
- Cosine similarity over semantic-provider embeddings
- Reciprocal Rank Fusion of lexical and vector ranks
- Read-through embedding cache scoped to one resolution run
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Collection, Dict, List, Optional, Sequence

import structlog

from aidb.core.config import ResolutionConfig
from aidb.providers.base import DataProvider, SemanticProvider
from aidb.providers.semantic import cosine_similarity, normalize_text
from aidb.schema.types import TEXT_TYPES, Entity, ParsedSchema

logger = structlog.get_logger(__name__)


def compute_rrf_score(
    fts_rank: Optional[int],
    semantic_rank: Optional[int],
    k: int = 60,
    fts_weight: float = 0.5,
    semantic_weight: float = 0.5,
) -> float:
    """
    Reciprocal Rank Fusion score.

    Ranks are 1-based; a missing rank contributes nothing.
    """
    score = 0.0
    if fts_rank is not None:
        score += fts_weight / (k + fts_rank)
    if semantic_rank is not None:
        score += semantic_weight / (k + semantic_rank)
    return score


@dataclass
class SearchMatch:
    """A scored candidate entity."""
    entity: Entity
    score: float
    type: str = ""
    semantic_rank: Optional[int] = None
    fts_rank: Optional[int] = None
    rrf_score: float = 0.0

    def __post_init__(self):
        if not self.type:
            self.type = self.entity.type

    def to_dict(self) -> dict:
        return {
            "$id": self.entity.id,
            "$type": self.type,
            "$score": self.score,
            "semantic_rank": self.semantic_rank,
            "fts_rank": self.fts_rank,
            "rrf_score": self.rrf_score,
        }


class EmbeddingCache:
    """
    Read-through embedding cache keyed by normalized text.

    Concurrent requests for the same text share one embed call. Create one
    per run; never share across top-level cascades.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._vectors: Dict[str, List[float]] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.hits = 0
        self.misses = 0

    async def get_or_embed(
        self,
        text: str,
        embed: Callable[[str], "asyncio.Future[List[float]]"],
    ) -> List[float]:
        if not self.enabled:
            self.misses += 1
            return await embed(text)

        key = normalize_text(text)
        async with self._locks[key]:
            cached = self._vectors.get(key)
            if cached is not None:
                self.hits += 1
                return cached

            self.misses += 1
            vector = await embed(text)
            self._vectors[key] = vector
            return vector

    def __len__(self) -> int:
        return len(self._vectors)

    def clear(self) -> None:
        self._vectors.clear()
        self._locks.clear()

    def get_stats(self) -> dict:
        return {"size": len(self._vectors), "hits": self.hits, "misses": self.misses}


class SemanticSearch:
    """
    Similarity search for fuzzy resolution.

    Scores are cosine similarities, deterministic for a fixed provider.
    Ties go to the most recently created entity.
    """

    def __init__(
        self,
        schema: ParsedSchema,
        data: DataProvider,
        semantic: SemanticProvider,
        config: Optional[ResolutionConfig] = None,
        cache: Optional[EmbeddingCache] = None,
    ):
        self.schema = schema
        self.data = data
        self.semantic = semantic
        self.config = config or ResolutionConfig()
        self.cache = cache if cache is not None else EmbeddingCache()

    def entity_text(self, entity: Entity) -> str:
        """Text used to embed an entity: its text scalars in schema order."""
        entity_def = self.schema.get(entity.type)
        parts: List[str] = []

        if entity_def is not None:
            for parsed in entity_def.scalar_fields:
                if parsed.type not in TEXT_TYPES:
                    continue
                value = entity.data.get(parsed.name)
                if isinstance(value, str) and value:
                    parts.append(value)
                elif isinstance(value, list):
                    parts.extend(v for v in value if isinstance(v, str))
            relation_names = {f.name for f in entity_def.relation_fields}
        else:
            relation_names = set()

        if not parts:
            parts = [
                v for k, v in entity.data.items()
                if isinstance(v, str) and k not in relation_names
            ]

        return " ".join(parts)

    async def embed(self, text: str) -> List[float]:
        async def call(t: str) -> List[float]:
            return await asyncio.wait_for(
                self.semantic.embed(t),
                timeout=self.config.search_timeout,
            )

        return await self.cache.get_or_embed(text, call)

    async def search(
        self,
        type_name: str,
        query: str,
        limit: Optional[int] = None,
        exclude: Collection[str] = (),
        min_score: Optional[float] = None,
    ) -> List[SearchMatch]:
        """
        Score every existing entity of a type against the query.

        Args:
            type_name: Entity type to search
            query: Hint text
            limit: Maximum results (config search_limit by default)
            exclude: Entity IDs to skip
            min_score: Drop candidates scoring below this

        Returns:
            Matches sorted by similarity, newest first among equal scores
        """
        limit = limit or self.config.search_limit
        candidates = [
            e for e in await self.data.list(type_name) if e.id not in exclude
        ]
        if not candidates or not query.strip():
            return []

        query_vector = await self.embed(query)

        scored = []
        for index, entity in enumerate(candidates):
            text = self.entity_text(entity)
            if not text:
                continue
            vector = await self.embed(text)
            scored.append((index, SearchMatch(
                entity=entity,
                score=cosine_similarity(query_vector, vector),
                type=type_name,
            )))

        # Newest first, then a stable sort by score keeps recency as tie-break
        scored.sort(key=lambda pair: pair[0], reverse=True)
        matches = [m for _, m in scored]
        matches.sort(key=lambda m: m.score, reverse=True)

        for rank, match in enumerate(matches, start=1):
            match.semantic_rank = rank

        if min_score is not None:
            matches = [m for m in matches if m.score >= min_score]

        logger.debug(
            "Semantic search",
            type=type_name,
            candidates=len(candidates),
            best=matches[0].score if matches else None,
        )
        return matches[:limit]

    async def hybrid_search(
        self,
        type_name: str,
        query: str,
        limit: Optional[int] = None,
        exclude: Collection[str] = (),
        min_score: Optional[float] = None,
    ) -> List[SearchMatch]:
        """
        Semantic search re-ordered by Reciprocal Rank Fusion.

        `score` stays the cosine similarity so thresholds keep their meaning.
        """
        limit = limit or self.config.search_limit
        matches = await self.search(type_name, query, limit=max(limit, 100), exclude=exclude)
        lexical = await self.data.search(type_name, query, limit=max(limit, 100))
        return self.fuse(matches, lexical, min_score=min_score)[:limit]

    def fuse(
        self,
        matches: Sequence[SearchMatch],
        lexical: Sequence[tuple],
        min_score: Optional[float] = None,
    ) -> List[SearchMatch]:
        """Attach lexical ranks and order by RRF score."""
        fts_ranks = {entity.id: rank for rank, (entity, _) in enumerate(lexical, start=1)}

        fused = []
        for match in matches:
            if min_score is not None and match.score < min_score:
                continue
            match.fts_rank = fts_ranks.get(match.entity.id)
            match.rrf_score = compute_rrf_score(
                match.fts_rank,
                match.semantic_rank,
                k=self.config.rrf_k,
                fts_weight=self.config.fts_weight,
                semantic_weight=self.config.semantic_weight,
            )
            fused.append(match)

        fused.sort(key=lambda m: m.rrf_score, reverse=True)
        return fused
