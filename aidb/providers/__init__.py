"""
AIDB Providers

Pluggable backends for storage, embeddings and generation. The LLM
generation delegate lives in `aidb.providers.generation`.
"""

from aidb.providers.base import DataProvider, GenerationProvider, SemanticProvider
from aidb.providers.memory import MemoryDataProvider
from aidb.providers.semantic import (
    HashingSemanticProvider,
    SentenceTransformerSemanticProvider,
    StaticSemanticProvider,
    cosine_similarity,
    create_semantic_provider,
)

__all__ = [
    "DataProvider",
    "GenerationProvider",
    "SemanticProvider",
    "MemoryDataProvider",
    "HashingSemanticProvider",
    "SentenceTransformerSemanticProvider",
    "StaticSemanticProvider",
    "cosine_similarity",
    "create_semantic_provider",
]
