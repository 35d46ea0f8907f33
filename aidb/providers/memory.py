"""
AIDB In-Memory Data Provider

Fast in-memory storage for tests and small datasets.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
import re
from typing import Any, Dict, List, Optional, Set, Tuple
import uuid

import structlog

from aidb.providers.base import DataProvider
from aidb.schema.types import Entity

logger = structlog.get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")

EdgeKey = Tuple[str, str, str]  # (from_type, from_id, relation)


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(text.lower())


def entity_text(entity: Entity) -> str:
    """Concatenated string values of an entity, used for lexical matching."""
    parts = []
    for value in entity.data.values():
        if isinstance(value, str):
            parts.append(value)
    return " ".join(parts)


class MemoryDataProvider(DataProvider):
    """
    In-memory data provider.

    Features:
    - O(1) lookup by (type, id)
    - Creation-ordered listing per type
    - Token-overlap lexical search
    - Edge storage for relate/related/unrelate
    """

    def __init__(self):
        self._entities: Dict[str, Dict[str, Entity]] = defaultdict(dict)
        self._edges: Dict[EdgeKey, List[Tuple[str, str]]] = defaultdict(list)
        self._edge_metadata: Dict[Tuple[str, str, str, str], Dict[str, Any]] = {}

    # ==========================================================================
    # Entity Operations
    # ==========================================================================

    async def get(self, type_name: str, entity_id: str) -> Optional[Entity]:
        return self._entities.get(type_name, {}).get(entity_id)

    async def list(
        self,
        type_name: str,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Entity]:
        results = []

        for entity in self._entities.get(type_name, {}).values():
            if where and not self._matches(entity, where):
                continue
            results.append(entity)

        end = None if limit is None else offset + limit
        return results[offset:end]

    @staticmethod
    def _matches(entity: Entity, where: Dict[str, Any]) -> bool:
        for key, expected in where.items():
            actual = entity.id if key in ("$id", "id") else entity.data.get(key)
            if isinstance(actual, list):
                if expected not in actual:
                    return False
            elif actual != expected:
                return False
        return True

    async def search(
        self,
        type_name: str,
        query: str,
        limit: int = 10,
        min_score: float = 0.0,
    ) -> List[Tuple[Entity, float]]:
        """Score by the share of query tokens present in the entity text."""
        query_tokens = set(tokenize(query))
        if not query_tokens:
            return []

        scored: List[Tuple[Entity, float]] = []
        for entity in self._entities.get(type_name, {}).values():
            tokens = set(tokenize(entity_text(entity)))
            if not tokens:
                continue
            score = len(query_tokens & tokens) / len(query_tokens)
            if score > 0 and score >= min_score:
                scored.append((entity, score))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    async def create(
        self,
        type_name: str,
        data: Dict[str, Any],
        entity_id: Optional[str] = None,
    ) -> Entity:
        entity_id = entity_id or str(uuid.uuid4())
        if entity_id in self._entities[type_name]:
            raise ValueError(f"{type_name} {entity_id} already exists")

        entity = Entity(type=type_name, data=dict(data), id=entity_id)
        self._entities[type_name][entity_id] = entity
        return entity

    async def update(self, type_name: str, entity_id: str, data: Dict[str, Any]) -> Entity:
        entity = self._entities.get(type_name, {}).get(entity_id)
        if entity is None:
            raise KeyError(f"{type_name} {entity_id} not found")

        entity.data.update(data)
        entity.updated_at = datetime.now()
        return entity

    async def delete(self, type_name: str, entity_id: str) -> bool:
        entity = self._entities.get(type_name, {}).pop(entity_id, None)
        if entity is None:
            return False

        # Drop edges touching the entity
        for key in list(self._edges):
            if key[0] == type_name and key[1] == entity_id:
                del self._edges[key]
                continue
            self._edges[key] = [
                target for target in self._edges[key] if target != (type_name, entity_id)
            ]
        return True

    # ==========================================================================
    # Relationship Operations
    # ==========================================================================

    async def related(self, type_name: str, entity_id: str, relation: str) -> List[Entity]:
        results = []
        for to_type, to_id in self._edges.get((type_name, entity_id, relation), []):
            entity = await self.get(to_type, to_id)
            if entity is not None:
                results.append(entity)
        return results

    async def relate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        targets = self._edges[(from_type, from_id, relation)]
        if (to_type, to_id) not in targets:
            targets.append((to_type, to_id))
        if metadata:
            self._edge_metadata[(from_id, relation, to_type, to_id)] = dict(metadata)

    async def unrelate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
    ) -> None:
        key = (from_type, from_id, relation)
        if key in self._edges:
            self._edges[key] = [t for t in self._edges[key] if t != (to_type, to_id)]
        self._edge_metadata.pop((from_id, relation, to_type, to_id), None)

    def edge_metadata(self, from_id: str, relation: str, to_type: str, to_id: str) -> Dict[str, Any]:
        return dict(self._edge_metadata.get((from_id, relation, to_type, to_id), {}))

    # ==========================================================================
    # Statistics
    # ==========================================================================

    def count(self, type_name: Optional[str] = None) -> int:
        if type_name is not None:
            return len(self._entities.get(type_name, {}))
        return sum(len(bucket) for bucket in self._entities.values())

    def types(self) -> Set[str]:
        return {name for name, bucket in self._entities.items() if bucket}

    def clear(self) -> None:
        self._entities.clear()
        self._edges.clear()
        self._edge_metadata.clear()
