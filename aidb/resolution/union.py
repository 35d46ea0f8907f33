"""
AIDB Union-Type Fallback Search

Searches a list of candidate types for the best match:
- ordered: types in declaration order, first qualifying match wins
- parallel: all types concurrently, best ranking wins
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Literal, Optional

import structlog

from aidb.schema.types import Entity

logger = structlog.get_logger(__name__)


# =============================================================================
# Types
# =============================================================================

@dataclass
class UnionMatch:
    """A candidate found in one member type of a union."""
    entity: Entity
    score: float
    type: str
    rank: Optional[float] = None  # searcher ordering key, e.g. an RRF score

    @property
    def sort_key(self) -> float:
        return self.rank if self.rank is not None else self.score

    def to_dict(self) -> dict:
        return {"$id": self.entity.id, "$type": self.type, "$score": self.score}


@dataclass
class SearchError:
    """A member type whose search failed."""
    type: str
    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message}


@dataclass
class UnionSearchOptions:
    """Options for union fallback search."""
    mode: Literal["ordered", "parallel"] = "ordered"
    threshold: float = 0.75
    thresholds: Dict[str, float] = field(default_factory=dict)
    on_error: Literal["continue", "throw"] = "continue"
    limit: int = 10
    return_all: bool = False
    include_below_threshold: bool = False

    def threshold_for(self, type_name: str) -> float:
        return self.thresholds.get(type_name, self.threshold)


@dataclass
class UnionSearchResult:
    """Outcome of a union search with per-type diagnostics."""
    matches: List[UnionMatch] = field(default_factory=list)
    searched_types: List[str] = field(default_factory=list)
    search_order: List[str] = field(default_factory=list)
    fallback_triggered: bool = False
    all_types_exhausted: bool = False
    matched_type: Optional[str] = None
    confidence: Optional[float] = None
    below_threshold_matches: List[UnionMatch] = field(default_factory=list)
    errors: List[SearchError] = field(default_factory=list)

    @property
    def best(self) -> Optional[UnionMatch]:
        return self.matches[0] if self.matches else None

    @property
    def best_below_threshold(self) -> Optional[UnionMatch]:
        if not self.below_threshold_matches:
            return None
        return max(self.below_threshold_matches, key=lambda m: m.score)

    def to_dict(self) -> dict:
        return {
            "matches": [m.to_dict() for m in self.matches],
            "searched_types": list(self.searched_types),
            "search_order": list(self.search_order),
            "fallback_triggered": self.fallback_triggered,
            "all_types_exhausted": self.all_types_exhausted,
            "matched_type": self.matched_type,
            "confidence": self.confidence,
            "below_threshold_matches": [m.to_dict() for m in self.below_threshold_matches],
            "errors": [e.to_dict() for e in self.errors],
        }


# Searcher contract: (type_name, query, limit) -> [(entity, score[, rank]), ...] best first.
# `score` is compared with thresholds; `rank`, when given, orders candidates
# across member types in parallel mode.
TypeSearcher = Callable[[str, str, int], Awaitable[List[tuple]]]


# =============================================================================
# Union Search
# =============================================================================

class UnionSearch:
    """
    Fallback search across the member types of a union.

    The searcher is supplied per call so the same instance works with
    any scoring backend.
    """

    async def search(
        self,
        types: List[str],
        query: str,
        searcher: TypeSearcher,
        options: Optional[UnionSearchOptions] = None,
    ) -> UnionSearchResult:
        """
        Search the candidate types.

        Args:
            types: Member types in declaration order
            query: Hint text
            searcher: Per-type scored search
            options: Mode, thresholds and error policy

        Returns:
            UnionSearchResult; `matches` is empty when nothing qualified
        """
        options = options or UnionSearchOptions()
        result = UnionSearchResult(search_order=list(types))

        if not types:
            result.all_types_exhausted = True
            return result

        if options.mode == "parallel":
            await self._search_parallel(types, query, searcher, options, result)
        else:
            await self._search_ordered(types, query, searcher, options, result)

        if result.matches:
            best = result.matches[0]
            result.matched_type = best.type
            result.confidence = best.score
        else:
            result.all_types_exhausted = True

        logger.debug(
            "Union search",
            mode=options.mode,
            types=types,
            matched_type=result.matched_type,
            confidence=result.confidence,
            errors=len(result.errors),
        )
        return result

    async def _search_ordered(
        self,
        types: List[str],
        query: str,
        searcher: TypeSearcher,
        options: UnionSearchOptions,
        result: UnionSearchResult,
    ) -> None:
        for index, type_name in enumerate(types):
            if index > 0:
                result.fallback_triggered = True

            result.searched_types.append(type_name)
            try:
                scored = await searcher(type_name, query, options.limit)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if options.on_error == "throw":
                    raise
                self._record_error(result, type_name, e)
                continue

            qualifying = self._partition(type_name, scored, options, result)
            if qualifying:
                result.matches = qualifying if options.return_all else qualifying[:1]
                return

    async def _search_parallel(
        self,
        types: List[str],
        query: str,
        searcher: TypeSearcher,
        options: UnionSearchOptions,
        result: UnionSearchResult,
    ) -> None:
        outcomes = await asyncio.gather(
            *[searcher(type_name, query, options.limit) for type_name in types],
            return_exceptions=True,
        )
        result.searched_types = list(types)

        ranked = []
        for index, (type_name, outcome) in enumerate(zip(types, outcomes)):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception) or options.on_error == "throw":
                    raise outcome
                self._record_error(result, type_name, outcome)
                continue

            for match in self._partition(type_name, outcome, options, result):
                ranked.append((index, match))

        # Best rank first; ties go to the earlier member type, then searcher order
        ranked.sort(key=lambda pair: (-pair[1].sort_key, pair[0]))
        matches = [m for _, m in ranked]
        result.matches = matches if options.return_all else matches[:1]

    def _partition(
        self,
        type_name: str,
        scored: List[tuple],
        options: UnionSearchOptions,
        result: UnionSearchResult,
    ) -> List[UnionMatch]:
        threshold = options.threshold_for(type_name)
        qualifying = []

        for entity, score, *rank in scored:
            match = UnionMatch(entity=entity, score=score, type=type_name, rank=rank[0] if rank else None)
            if score >= threshold:
                qualifying.append(match)
            elif options.include_below_threshold:
                result.below_threshold_matches.append(match)

        return qualifying

    @staticmethod
    def _record_error(result: UnionSearchResult, type_name: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        result.errors.append(SearchError(type=type_name, message=message))
        logger.warning("Union member search failed", type=type_name, error=message)
