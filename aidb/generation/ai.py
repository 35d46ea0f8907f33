"""
AIDB AI Value Generation

Delegates to a GenerationProvider and degrades to placeholder values on
timeout, provider error or malformed output.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime
import json
from typing import Any, Literal, Optional

import httpx
import structlog

from aidb.generation.base import GenerationRequest, GenerationResult, ValueGenerator
from aidb.generation.placeholder import PlaceholderValueGenerator
from aidb.providers.base import GenerationProvider
from aidb.schema.errors import GenerationError, GenerationFallbackWarning

logger = structlog.get_logger(__name__)


def coerce_value(raw: Any, type_name: str) -> Any:
    """
    Coerce a raw provider value to the declared field type.

    Raises:
        ValueError: If the value cannot represent the type
    """
    if raw is None:
        raise ValueError("provider returned no value")

    if type_name == "number":
        if isinstance(raw, bool):
            raise ValueError("boolean is not a number")
        if isinstance(raw, (int, float)):
            return raw
        text = str(raw).strip()
        value = float(text)
        return int(value) if value.is_integer() and "." not in text else value

    if type_name == "boolean":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ("true", "yes", "1"):
            return True
        if text in ("false", "no", "0"):
            return False
        raise ValueError(f"not a boolean: {raw!r}")

    if type_name == "json":
        if isinstance(raw, (dict, list)):
            return raw
        return json.loads(str(raw))

    text = raw if isinstance(raw, str) else str(raw)
    text = text.strip()
    if not text:
        raise ValueError("provider returned an empty string")

    if type_name == "date":
        return date.fromisoformat(text).isoformat()

    if type_name == "datetime":
        return datetime.fromisoformat(text).isoformat()

    if type_name == "url":
        try:
            url = httpx.URL(text)
        except httpx.InvalidURL as e:
            raise ValueError(f"not a url: {text!r}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"not an absolute url: {text!r}")
        return str(url)

    return text


class AIValueGenerator(ValueGenerator):
    """
    AI-backed value generator with placeholder fallback.

    With on_failure="fallback" (default) a failed call yields the placeholder
    value and `metadata["fallback"] = True`. With on_failure="raise" the
    failure surfaces as GenerationError so callers can tell grounded data
    from placeholder data.
    """

    name = "ai"

    def __init__(
        self,
        provider: GenerationProvider,
        fallback: Optional[ValueGenerator] = None,
        timeout: float = 30.0,
        on_failure: Literal["fallback", "raise"] = "fallback",
    ):
        self.provider = provider
        self.fallback = fallback or PlaceholderValueGenerator()
        self.timeout = timeout
        self.on_failure = on_failure

        self._call_count = 0
        self._fallback_count = 0

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self._call_count += 1

        try:
            raw = await asyncio.wait_for(self.provider.generate(request), timeout=self.timeout)
            value = coerce_value(raw, request.type)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = "timeout" if isinstance(e, asyncio.TimeoutError) else str(e) or type(e).__name__

            if self.on_failure == "raise":
                raise GenerationError(request.field, reason) from e

            self._fallback_count += 1
            logger.warning(
                "AI generation failed, using placeholder",
                entity_type=request.entity_type,
                field=request.field,
                error=reason,
            )

            result = await self.fallback.generate(request)
            result.metadata.update({
                "generator": self.fallback.name,
                "fallback": True,
                "error": reason,
                "warning": GenerationFallbackWarning(request.field, reason),
            })
            return result

        return GenerationResult(
            value=value,
            metadata={"generator": self.name, "fallback": False},
        )

    def get_stats(self) -> dict:
        return {
            "call_count": self._call_count,
            "fallback_count": self._fallback_count,
        }
