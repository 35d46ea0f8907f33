"""
AIDB Value Generation

Strategies for producing scalar field values. The AI-backed generator
lives in `aidb.generation.ai`.
"""

from aidb.generation.base import GenerationRequest, GenerationResult, ValueGenerator
from aidb.generation.placeholder import PlaceholderValueGenerator

__all__ = [
    "GenerationRequest",
    "GenerationResult",
    "ValueGenerator",
    "PlaceholderValueGenerator",
]
