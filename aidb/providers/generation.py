"""
AIDB LLM Generation Provider

GenerationProvider that prompts an LLM adapter for a single field value.
"""

from __future__ import annotations

import json
from typing import Any, List, Optional

import structlog

from aidb.core.config import GenerationConfig
from aidb.core.llm import LLMAdapter, Message
from aidb.generation.ai import AIValueGenerator
from aidb.generation.base import GenerationRequest, ValueGenerator
from aidb.generation.placeholder import PlaceholderValueGenerator
from aidb.providers.base import GenerationProvider

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You generate realistic field values for database records. "
    "Reply with the value only: no quotes, no labels, no explanation."
)

_TYPE_GUIDANCE = {
    "number": "Reply with a single number.",
    "boolean": "Reply with true or false.",
    "date": "Reply with an ISO 8601 date (YYYY-MM-DD).",
    "datetime": "Reply with an ISO 8601 datetime.",
    "json": "Reply with a single JSON value.",
    "url": "Reply with a single absolute URL.",
    "markdown": "Reply with markdown.",
}


def build_messages(request: GenerationRequest) -> List[Message]:
    """Render a generation request as chat messages."""
    lines = [f"Entity type: {request.entity_type}", f"Field: {request.field}"]

    if request.instructions:
        lines.append(f"Instructions: {request.instructions}")
    if request.parent:
        lines.append("Parent record: " + json.dumps(request.parent, default=str, sort_keys=True))
    if request.context_values:
        lines.append("Context: " + json.dumps(request.context_values, default=str, sort_keys=True))
    if request.hint:
        lines.append(f"Description: {request.hint}")

    lines.append(f"Task: {request.prompt or f'Write the {request.field} of this {request.entity_type}.'}")

    guidance = _TYPE_GUIDANCE.get(request.type)
    if guidance:
        lines.append(guidance)

    return [
        Message(role="system", content=SYSTEM_PROMPT),
        Message(role="user", content="\n".join(lines)),
    ]


class LLMGenerationProvider(GenerationProvider):
    """Generation delegate backed by an LLMAdapter, initialized on first call."""

    def __init__(self, adapter: LLMAdapter, max_tokens: Optional[int] = None):
        self.adapter = adapter
        self.max_tokens = max_tokens

    async def generate(self, request: GenerationRequest) -> Any:
        kwargs = {}
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens

        response = await self.adapter.complete(build_messages(request), **kwargs)
        content = response.content.strip()

        # Models like to wrap short answers in quotes
        if len(content) >= 2 and content[0] == content[-1] and content[0] in "\"'":
            content = content[1:-1]

        logger.debug(
            "LLM value generated",
            entity_type=request.entity_type,
            field=request.field,
            latency_ms=response.latency_ms,
        )
        return content


def create_value_generator(
    adapter: Optional[LLMAdapter] = None,
    config: Optional[GenerationConfig] = None,
) -> ValueGenerator:
    """
    Build the configured value generator.

    Without an adapter the deterministic placeholder generator is used.
    """
    config = config or GenerationConfig()
    placeholder = PlaceholderValueGenerator(seed=config.seed)

    if adapter is None:
        return placeholder

    return AIValueGenerator(
        provider=LLMGenerationProvider(adapter),
        fallback=placeholder,
        timeout=config.timeout,
        on_failure=config.on_failure,
    )
