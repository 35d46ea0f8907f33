"""
AIDB Providers - Abstract Base

Interfaces for the three injected capabilities:
- DataProvider: entity CRUD, listing, lexical search and edges
- SemanticProvider: text embeddings
- GenerationProvider: the AI value generator's delegate
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from aidb.generation.base import GenerationRequest
from aidb.schema.types import Entity


class DataProvider(ABC):
    """
    Abstract storage backend.

    The engine only calls these methods; it never manages persistence
    details.
    """

    # ==========================================================================
    # Entity Operations
    # ==========================================================================

    @abstractmethod
    async def get(self, type_name: str, entity_id: str) -> Optional[Entity]:
        """Get an entity by type and ID, or None."""
        pass

    @abstractmethod
    async def list(
        self,
        type_name: str,
        where: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Entity]:
        """
        List entities of a type in creation order.

        Args:
            type_name: Entity type
            where: Field filters; a list-valued field matches when it
                contains the filter value
            limit: Maximum results
            offset: Results to skip
        """
        pass

    @abstractmethod
    async def search(
        self,
        type_name: str,
        query: str,
        limit: int = 10,
        min_score: float = 0.0,
    ) -> List[Tuple[Entity, float]]:
        """Lexical search, best first."""
        pass

    @abstractmethod
    async def create(
        self,
        type_name: str,
        data: Dict[str, Any],
        entity_id: Optional[str] = None,
    ) -> Entity:
        """Create an entity, generating an ID when none is given."""
        pass

    @abstractmethod
    async def update(self, type_name: str, entity_id: str, data: Dict[str, Any]) -> Entity:
        """Merge `data` into an existing entity."""
        pass

    @abstractmethod
    async def delete(self, type_name: str, entity_id: str) -> bool:
        """Delete an entity."""
        pass

    # ==========================================================================
    # Relationship Operations
    # ==========================================================================

    @abstractmethod
    async def related(self, type_name: str, entity_id: str, relation: str) -> List[Entity]:
        """Entities linked from an entity through a relation."""
        pass

    @abstractmethod
    async def relate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record an edge."""
        pass

    @abstractmethod
    async def unrelate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
    ) -> None:
        """Remove an edge."""
        pass


class SemanticProvider(ABC):
    """Produces embedding vectors for text."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed one text."""
        pass

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts."""
        return [await self.embed(text) for text in texts]


class GenerationProvider(ABC):
    """Delegate behind AI-backed value generation."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> Any:
        """Return a raw value for the request."""
        pass
