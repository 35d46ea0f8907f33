"""
AIDB Placeholder Generation

Deterministic values derived from field name, type, hint and seed. No
external calls; used in tests and as the fallback for AI generation.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
import hashlib
from typing import Any, Optional

from aidb.generation.base import GenerationRequest, GenerationResult, ValueGenerator

_EPOCH = date(2024, 1, 1)


class PlaceholderValueGenerator(ValueGenerator):
    """
    Deterministic value generator.

    The same request (including seed) always yields the same value, which
    keeps draft/resolve runs reproducible.
    """

    name = "placeholder"

    def __init__(self, seed: Optional[str] = None):
        self.seed = seed

    def _digest(self, request: GenerationRequest) -> str:
        seed = request.seed if request.seed is not None else (self.seed or "")
        key = "|".join([seed, request.entity_type, request.field, request.hint or ""])
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def value_for(self, request: GenerationRequest) -> Any:
        digest = self._digest(request)
        number = int(digest[:8], 16)
        kind = request.type

        if kind == "number":
            return number % 1000
        if kind == "boolean":
            return number % 2 == 0
        if kind == "date":
            return (_EPOCH + timedelta(days=number % 365)).isoformat()
        if kind == "datetime":
            moment = datetime(2024, 1, 1) + timedelta(days=number % 365, seconds=number % 86400)
            return moment.isoformat()
        if kind == "url":
            return f"https://example.com/{request.entity_type.lower()}/{digest[:8]}"
        if kind == "json":
            return {"field": request.field}

        # string, markdown, prompt and unknown scalar types
        if request.hint:
            return request.hint
        text = f"Generated {request.field} for {request.entity_type}"
        if request.context_values:
            summary = ", ".join(
                f"{k}={v}" for k, v in sorted(request.context_values.items())
                if isinstance(v, (str, int, float, bool))
            )
            if summary:
                text = f"{text} ({summary})"
        return text

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        return GenerationResult(
            value=self.value_for(request),
            metadata={"generator": self.name, "fallback": False},
        )
