"""
AIDB Semantic Providers

Embedding backends for fuzzy resolution:
- HashingSemanticProvider: deterministic token hashing, no model download
- StaticSemanticProvider: fixed text -> vector table (tests, fixtures)
- SentenceTransformerSemanticProvider: sentence-transformers models
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from typing import Dict, List, Optional, Sequence

import numpy as np
import structlog

from aidb.core.config import EmbeddingConfig
from aidb.providers.base import SemanticProvider

logger = structlog.get_logger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def normalize_text(text: str) -> str:
    """Lower-case and collapse whitespace; used as the cache fingerprint."""
    return " ".join(text.lower().split())


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 when either vector is all zeros."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape} vs {vb.shape}")

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(va, vb) / (norm_a * norm_b))


class HashingSemanticProvider(SemanticProvider):
    """
    Deterministic bag-of-words embeddings.

    Each token maps to a pseudo-random unit vector seeded from its hash, so
    texts sharing words are similar and identical texts score 1.0 across
    processes.
    """

    def __init__(self, dimension: int = 256):
        self.dimension = dimension
        self._token_vectors: Dict[str, np.ndarray] = {}

    def _token_vector(self, token: str) -> np.ndarray:
        vector = self._token_vectors.get(token)
        if vector is None:
            seed = int.from_bytes(hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest(), "big")
            rng = np.random.default_rng(seed)
            vector = rng.standard_normal(self.dimension)
            vector /= np.linalg.norm(vector)
            self._token_vectors[token] = vector
        return vector

    async def embed(self, text: str) -> List[float]:
        tokens = _TOKEN_RE.findall(text.lower())
        if not tokens:
            return [0.0] * self.dimension

        total = np.zeros(self.dimension)
        for token in tokens:
            total += self._token_vector(token)

        norm = np.linalg.norm(total)
        if norm > 0:
            total /= norm
        return total.tolist()


class StaticSemanticProvider(SemanticProvider):
    """
    Fixed text -> vector table.

    Lookup is by normalized text; unknown texts go to the delegate, or map
    to a zero vector when there is none.
    """

    def __init__(
        self,
        vectors: Dict[str, Sequence[float]],
        delegate: Optional[SemanticProvider] = None,
    ):
        self.vectors = {normalize_text(k): list(v) for k, v in vectors.items()}
        self.delegate = delegate
        self.calls: List[str] = []

        dimensions = {len(v) for v in self.vectors.values()}
        self.dimension = dimensions.pop() if len(dimensions) == 1 else None

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        key = normalize_text(text)
        if key in self.vectors:
            return list(self.vectors[key])
        if self.delegate is not None:
            return await self.delegate.embed(text)
        return [0.0] * (self.dimension or 1)


class SentenceTransformerSemanticProvider(SemanticProvider):
    """
    sentence-transformers backed embeddings.

    The model loads lazily in an executor so the event loop is never
    blocked. Requires the `embeddings` extra.
    """

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        device: str = "cpu",
        normalize: bool = True,
    ):
        self.model_name = model_name
        self.device = device
        self.normalize = normalize

        self._model = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Load the model."""
        async with self._lock:
            if self._model is not None:
                return
            logger.info("Loading embedding model", model=self.model_name)
            loop = asyncio.get_running_loop()
            self._model = await loop.run_in_executor(None, self._load_model)

    def _load_model(self):
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(self.model_name, device=self.device)

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        await self.initialize()
        loop = asyncio.get_running_loop()
        vectors = await loop.run_in_executor(
            None,
            lambda: self._model.encode(
                list(texts),
                normalize_embeddings=self.normalize,
                convert_to_numpy=True,
            ),
        )
        return [np.asarray(v, dtype=np.float64).tolist() for v in vectors]


def create_semantic_provider(config: Optional[EmbeddingConfig] = None) -> SemanticProvider:
    """Build the semantic provider named in the embedding config."""
    config = config or EmbeddingConfig()

    if config.provider == "sentence-transformers":
        return SentenceTransformerSemanticProvider(
            model_name=config.model,
            device=config.device,
        )
    return HashingSemanticProvider(dimension=config.dimension)
