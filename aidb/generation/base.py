"""
AIDB Value Generation - Abstract Base

Strategy interface for producing scalar field values.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class GenerationRequest:
    """Everything a generator may use to produce one field value."""
    field: str
    type: str
    entity_type: str
    prompt: Optional[str] = None
    hint: Optional[str] = None
    instructions: Optional[str] = None
    parent: Dict[str, Any] = field(default_factory=dict)
    context_values: Dict[str, Any] = field(default_factory=dict)
    seed: Optional[str] = None

    def describe(self) -> str:
        """Short natural-language description of what is being generated."""
        return self.prompt or self.hint or f"{self.field} for a {self.entity_type}"

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "type": self.type,
            "entity_type": self.entity_type,
            "prompt": self.prompt,
            "hint": self.hint,
            "instructions": self.instructions,
            "parent": dict(self.parent),
            "context_values": dict(self.context_values),
            "seed": self.seed,
        }


@dataclass
class GenerationResult:
    """A generated value plus provenance metadata."""
    value: Any
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return bool(self.metadata.get("fallback"))


class ValueGenerator(ABC):
    """Produces a value for a field given its request context."""

    name: str = "base"

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Generate a value.

        Args:
            request: Field name, declared type, prompt and context

        Returns:
            The value and metadata describing how it was produced
        """
        pass
