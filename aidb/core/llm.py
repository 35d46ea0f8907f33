"""
AIDB LLM Adapter

Thin multi-provider completion client used by AI-backed value generation:
- OpenAI (and OpenAI-compatible local servers)
- Anthropic
- Mock provider (for testing)
"""

from __future__ import annotations

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import httpx
import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from aidb.core.config import LLMProviderConfig

logger = structlog.get_logger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    LOCAL = "local"
    MOCK = "mock"


@dataclass
class Message:
    """A chat message."""
    role: str  # "system", "user", "assistant"
    content: str


@dataclass
class LLMResponse:
    """Response from an LLM call."""
    content: str
    model: str
    provider: LLMProvider
    finish_reason: str
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0.0


@dataclass
class LLMConfig:
    """Configuration for an LLM provider."""
    provider: LLMProvider
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: int = 512
    temperature: float = 0.7
    timeout: float = 60.0
    max_retries: int = 3
    retry_wait: float = 1.0  # base of the exponential backoff, seconds

    @classmethod
    def from_settings(cls, settings: LLMProviderConfig, api_key: Optional[str] = None) -> "LLMConfig":
        """Build from the pydantic settings block."""
        return cls(
            provider=LLMProvider(settings.provider),
            model=settings.model,
            api_key=api_key or settings.api_key,
            base_url=settings.base_url,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            timeout=settings.timeout,
            max_retries=settings.max_retries,
        )


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the provider."""
        pass

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload, retrying with exponential backoff up to max_retries attempts."""
        if not self._client:
            raise RuntimeError("Provider not initialized")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=wait_exponential(multiplier=self.config.retry_wait, max=10),
            reraise=True,
        ):
            with attempt:
                response = await self._client.post(path, json=payload)
                response.raise_for_status()
                return response.json()

        raise RuntimeError("unreachable")  # pragma: no cover

    @abstractmethod
    async def complete(self, messages: list[Message], **kwargs) -> LLMResponse:
        """Generate a completion."""
        pass


class OpenAIProvider(BaseLLMProvider):
    """OpenAI chat completions provider."""

    async def initialize(self) -> None:
        api_key = self.config.api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key and self.config.provider != LLMProvider.LOCAL:
            raise ValueError("OpenAI API key not provided")

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url or "https://api.openai.com/v1",
            headers=headers,
            timeout=self.config.timeout,
        )

    async def complete(self, messages: list[Message], **kwargs) -> LLMResponse:
        """Generate a completion using OpenAI."""
        start_time = time.monotonic()

        request_data = {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
        }

        data = await self._post("/chat/completions", request_data)

        choice = data["choices"][0]
        return LLMResponse(
            content=choice["message"].get("content") or "",
            model=data.get("model", self.config.model),
            provider=self.config.provider,
            finish_reason=choice.get("finish_reason", "stop"),
            usage=data.get("usage", {}),
            latency_ms=(time.monotonic() - start_time) * 1000,
        )


class AnthropicProvider(BaseLLMProvider):
    """Anthropic messages API provider."""

    async def initialize(self) -> None:
        api_key = self.config.api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("Anthropic API key not provided")

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url or "https://api.anthropic.com",
            headers={
                "x-api-key": api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout,
        )

    async def complete(self, messages: list[Message], **kwargs) -> LLMResponse:
        """Generate a completion using Anthropic."""
        start_time = time.monotonic()

        system_message = None
        formatted_messages = []
        for msg in messages:
            if msg.role == "system":
                system_message = msg.content
            else:
                formatted_messages.append({"role": msg.role, "content": msg.content})

        request_data: dict[str, Any] = {
            "model": self.config.model,
            "messages": formatted_messages,
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
        }
        if system_message:
            request_data["system"] = system_message

        data = await self._post("/v1/messages", request_data)

        content = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

        return LLMResponse(
            content=content,
            model=data.get("model", self.config.model),
            provider=LLMProvider.ANTHROPIC,
            finish_reason=data.get("stop_reason", "end_turn"),
            usage=data.get("usage", {}),
            latency_ms=(time.monotonic() - start_time) * 1000,
        )


class MockProvider(BaseLLMProvider):
    """Mock provider for testing."""

    def __init__(self, config: LLMConfig):
        super().__init__(config)
        self._responses: list[str] = []
        self._response_index = 0
        self.calls: list[list[Message]] = []

    def set_responses(self, responses: list[str]) -> None:
        """Set mock responses, returned round-robin."""
        self._responses = responses
        self._response_index = 0

    async def initialize(self) -> None:
        pass

    async def complete(self, messages: list[Message], **kwargs) -> LLMResponse:
        """Generate a mock completion."""
        self.calls.append(messages)

        if self._responses:
            content = self._responses[self._response_index % len(self._responses)]
            self._response_index += 1
        else:
            last_msg = messages[-1].content if messages else ""
            content = f"Mock response to: {last_msg[:100]}"

        return LLMResponse(
            content=content,
            model=self.config.model,
            provider=LLMProvider.MOCK,
            finish_reason="stop",
            usage={"prompt_tokens": 10, "completion_tokens": 20},
            latency_ms=1.0,
        )


class LLMAdapter:
    """
    Unified LLM adapter.

    Wraps one provider, initializes it on first use and keeps call
    statistics. Retries happen inside the provider.
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._provider: Optional[BaseLLMProvider] = None
        self._call_count = 0
        self._total_latency_ms = 0.0
        self._error_count = 0

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def provider(self) -> Optional[BaseLLMProvider]:
        return self._provider

    async def initialize(self) -> None:
        """Create and initialize the configured provider."""
        provider = self._create_provider(self.config)
        await provider.initialize()
        self._provider = provider
        logger.info(
            "LLM adapter initialized",
            provider=self.config.provider.value,
            model=self.config.model,
        )

    async def close(self) -> None:
        """Close the provider."""
        if self._provider:
            await self._provider.close()
            self._provider = None

    def _create_provider(self, config: LLMConfig) -> BaseLLMProvider:
        providers = {
            LLMProvider.OPENAI: OpenAIProvider,
            LLMProvider.ANTHROPIC: AnthropicProvider,
            LLMProvider.LOCAL: OpenAIProvider,  # OpenAI-compatible API
            LLMProvider.MOCK: MockProvider,
        }

        provider_class = providers.get(config.provider)
        if not provider_class:
            raise ValueError(f"Unknown provider: {config.provider}")

        return provider_class(config)

    async def complete(self, messages: list[Message], **kwargs) -> LLMResponse:
        """Generate a completion, initializing the provider on first use."""
        if not self._provider:
            await self.initialize()

        try:
            response = await self._provider.complete(messages, **kwargs)
        except Exception as e:
            self._error_count += 1
            logger.warning(
                "LLM completion failed",
                provider=self.config.provider.value,
                error=str(e),
            )
            raise

        self._call_count += 1
        self._total_latency_ms += response.latency_ms
        return response

    def get_stats(self) -> dict[str, Any]:
        """Get adapter statistics."""
        return {
            "call_count": self._call_count,
            "error_count": self._error_count,
            "total_latency_ms": self._total_latency_ms,
            "avg_latency_ms": (
                self._total_latency_ms / self._call_count
                if self._call_count > 0
                else 0
            ),
        }


async def create_llm_adapter(
    provider: Union[str, LLMProvider] = LLMProvider.OPENAI,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    **kwargs,
) -> LLMAdapter:
    """Create and initialize an LLM adapter."""
    if isinstance(provider, str):
        provider = LLMProvider(provider)

    default_models = {
        LLMProvider.OPENAI: "gpt-4o-mini",
        LLMProvider.ANTHROPIC: "claude-3-5-haiku-latest",
        LLMProvider.LOCAL: "local-model",
        LLMProvider.MOCK: "mock-model",
    }

    config = LLMConfig(
        provider=provider,
        model=model or default_models[provider],
        api_key=api_key,
        **kwargs,
    )

    adapter = LLMAdapter(config)
    await adapter.initialize()
    return adapter
