"""
AIDB Value Generation Tests

Placeholder determinism, AI fallback versus raise, and the LLM delegate.
"""

import asyncio

import pytest

from aidb.generation.base import GenerationRequest


# === Test Fixtures ===

class StaticProvider:
    """GenerationProvider stub returning a fixed value."""

    def __init__(self, value):
        self.value = value
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        return self.value


class FailingProvider:
    """GenerationProvider stub that always fails."""

    async def generate(self, request):
        raise ConnectionError("provider unavailable")


class SlowProvider:
    """GenerationProvider stub that never answers in time."""

    async def generate(self, request):
        await asyncio.sleep(5)
        return "too late"


def make_request(**kwargs):
    defaults = {"field": "title", "type": "string", "entity_type": "Post"}
    defaults.update(kwargs)
    return GenerationRequest(**defaults)


class TestPlaceholderGenerator:
    """Test the deterministic placeholder generator."""

    @pytest.mark.asyncio
    async def test_deterministic(self):
        """Test that identical requests give identical values."""
        from aidb.generation.placeholder import PlaceholderValueGenerator

        generator = PlaceholderValueGenerator(seed="s1")
        request = make_request(type="number")

        first = await generator.generate(request)
        second = await PlaceholderValueGenerator(seed="s1").generate(request)

        assert first.value == second.value
        assert 0 <= first.value < 1000
        assert first.metadata == {"generator": "placeholder", "fallback": False}

    @pytest.mark.asyncio
    async def test_text_uses_hint(self):
        """Test that a hint becomes the text value."""
        from aidb.generation.placeholder import PlaceholderValueGenerator

        result = await PlaceholderValueGenerator().generate(make_request(hint="Databases"))

        assert result.value == "Databases"

    @pytest.mark.asyncio
    async def test_text_without_hint(self):
        """Test the default text and context summary."""
        from aidb.generation.placeholder import PlaceholderValueGenerator

        generator = PlaceholderValueGenerator()
        plain = await generator.generate(make_request())
        with_context = await generator.generate(make_request(context_values={"topic": "AI"}))

        assert plain.value == "Generated title for Post"
        assert with_context.value == "Generated title for Post (topic=AI)"

    @pytest.mark.asyncio
    async def test_typed_values(self):
        """Test values for non-text primitives."""
        from aidb.generation.placeholder import PlaceholderValueGenerator

        generator = PlaceholderValueGenerator(seed="s")

        boolean = await generator.generate(make_request(field="published", type="boolean"))
        day = await generator.generate(make_request(field="date", type="date"))
        link = await generator.generate(make_request(field="link", type="url"))
        blob = await generator.generate(make_request(field="meta", type="json"))

        assert isinstance(boolean.value, bool)
        assert day.value.startswith("2024-") or day.value.startswith("2025-")
        assert link.value.startswith("https://example.com/post/")
        assert blob.value == {"field": "meta"}

    @pytest.mark.asyncio
    async def test_seed_changes_value(self):
        """Test that the request seed feeds the digest."""
        from aidb.generation.placeholder import PlaceholderValueGenerator

        generator = PlaceholderValueGenerator()
        values = {
            (await generator.generate(make_request(type="url", seed=seed))).value
            for seed in ("a", "b", "c")
        }

        assert len(values) == 3


class TestAIValueGenerator:
    """Test AI generation with fallback."""

    @pytest.mark.asyncio
    async def test_success_is_coerced(self):
        """Test that provider output is coerced to the field type."""
        from aidb.generation.ai import AIValueGenerator

        generator = AIValueGenerator(StaticProvider("42"))
        result = await generator.generate(make_request(field="views", type="number"))

        assert result.value == 42
        assert result.metadata == {"generator": "ai", "fallback": False}
        assert not result.is_fallback

    @pytest.mark.asyncio
    async def test_fallback_on_error(self):
        """Test that a provider error yields the placeholder value."""
        from aidb.generation.ai import AIValueGenerator
        from aidb.schema.errors import GenerationFallbackWarning

        generator = AIValueGenerator(FailingProvider())
        result = await generator.generate(make_request(hint="Fallback title"))

        assert result.value == "Fallback title"
        assert result.is_fallback
        assert "provider unavailable" in result.metadata["error"]
        assert isinstance(result.metadata["warning"], GenerationFallbackWarning)
        assert generator.get_stats() == {"call_count": 1, "fallback_count": 1}

    @pytest.mark.asyncio
    async def test_fallback_on_malformed_value(self):
        """Test that an uncoercible value falls back."""
        from aidb.generation.ai import AIValueGenerator

        generator = AIValueGenerator(StaticProvider("lots"))
        result = await generator.generate(make_request(field="views", type="number"))

        assert result.is_fallback
        assert isinstance(result.value, int)

    @pytest.mark.asyncio
    async def test_fallback_on_timeout(self):
        """Test that a slow provider times out into the fallback."""
        from aidb.generation.ai import AIValueGenerator

        generator = AIValueGenerator(SlowProvider(), timeout=0.01)
        result = await generator.generate(make_request())

        assert result.is_fallback
        assert result.metadata["error"] == "timeout"

    @pytest.mark.asyncio
    async def test_raise_mode(self):
        """Test that on_failure='raise' surfaces GenerationError."""
        from aidb.generation.ai import AIValueGenerator
        from aidb.schema.errors import GenerationError

        generator = AIValueGenerator(FailingProvider(), on_failure="raise")

        with pytest.raises(GenerationError) as exc_info:
            await generator.generate(make_request())

        assert exc_info.value.field == "title"


class TestCoercion:
    """Test raw value coercion."""

    def test_coerce_values(self):
        """Test coercion per declared type."""
        from aidb.generation.ai import coerce_value

        assert coerce_value("3.5", "number") == 3.5
        assert coerce_value("7", "number") == 7
        assert coerce_value("Yes", "boolean") is True
        assert coerce_value('{"a": 1}', "json") == {"a": 1}
        assert coerce_value("  hello ", "string") == "hello"

    def test_coerce_rejects(self):
        """Test malformed values."""
        from aidb.generation.ai import coerce_value

        with pytest.raises(ValueError):
            coerce_value(True, "number")
        with pytest.raises(ValueError):
            coerce_value("maybe", "boolean")
        with pytest.raises(ValueError):
            coerce_value("   ", "string")

    def test_coerce_dates_and_urls(self):
        """Test ISO dates, datetimes and absolute URLs."""
        from aidb.generation.ai import coerce_value

        assert coerce_value(" 2024-03-05 ", "date") == "2024-03-05"
        assert coerce_value("2024-03-05T10:30:00+00:00", "datetime") == "2024-03-05T10:30:00+00:00"
        assert coerce_value("https://example.com/docs", "url") == "https://example.com/docs"

        for raw, type_name in [
            ("yesterday", "date"),
            ("2024-13-01", "date"),
            ("next tuesday at noon", "datetime"),
            ("not a url", "url"),
            ("/relative/path", "url"),
            ("ftp://example.com/file", "url"),
        ]:
            with pytest.raises(ValueError):
                coerce_value(raw, type_name)

    @pytest.mark.asyncio
    async def test_malformed_date_falls_back(self):
        """Test that free text for a date field yields the placeholder date."""
        from aidb.generation.ai import AIValueGenerator

        generator = AIValueGenerator(StaticProvider("yesterday"))
        day = await generator.generate(make_request(field="published", type="date"))
        link = await AIValueGenerator(StaticProvider("not a url")).generate(
            make_request(field="link", type="url")
        )

        assert day.is_fallback
        assert day.value.startswith("2024-") or day.value.startswith("2025-")
        assert link.is_fallback
        assert link.value.startswith("https://example.com/post/")


class TestLLMGenerationProvider:
    """Test the LLM-backed generation delegate."""

    @pytest.mark.asyncio
    async def test_prompts_adapter(self):
        """Test message rendering and quote stripping with the mock LLM."""
        from aidb.core.llm import create_llm_adapter
        from aidb.providers.generation import LLMGenerationProvider

        adapter = await create_llm_adapter("mock")
        adapter.provider.set_responses(['"Rust in production"'])

        provider = LLMGenerationProvider(adapter)
        value = await provider.generate(make_request(
            instructions="Keep it short",
            hint="Systems programming",
            parent={"name": "Languages"},
        ))

        assert value == "Rust in production"
        messages = adapter.provider.calls[0]
        assert messages[0].role == "system"
        assert "Instructions: Keep it short" in messages[1].content
        assert "Description: Systems programming" in messages[1].content
        assert '"name": "Languages"' in messages[1].content

    @pytest.mark.asyncio
    async def test_create_value_generator(self):
        """Test generator selection with and without an adapter."""
        from aidb.core.config import GenerationConfig
        from aidb.core.llm import create_llm_adapter
        from aidb.generation.ai import AIValueGenerator
        from aidb.generation.placeholder import PlaceholderValueGenerator
        from aidb.providers.generation import create_value_generator

        assert isinstance(create_value_generator(), PlaceholderValueGenerator)

        adapter = await create_llm_adapter("mock")
        generator = create_value_generator(adapter, GenerationConfig(on_failure="raise"))

        assert isinstance(generator, AIValueGenerator)
        assert generator.on_failure == "raise"


class TestLLMAdapter:
    """Test provider retries and adapter construction from settings."""

    @staticmethod
    def flaky_openai(max_retries, failures):
        import httpx

        from aidb.core.llm import LLMConfig, LLMProvider, OpenAIProvider

        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) <= failures:
                return httpx.Response(500, json={"error": "overloaded"})
            return httpx.Response(200, json={
                "model": "gpt-test",
                "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 1},
            })

        provider = OpenAIProvider(LLMConfig(
            provider=LLMProvider.OPENAI,
            model="gpt-test",
            api_key="sk-test",
            max_retries=max_retries,
            retry_wait=0,
        ))
        provider._client = httpx.AsyncClient(
            base_url="https://llm.test/v1",
            transport=httpx.MockTransport(handler),
        )
        return provider, calls

    @pytest.mark.asyncio
    async def test_retries_up_to_max_retries(self):
        """Test that transient server errors are retried."""
        from aidb.core.llm import Message

        provider, calls = self.flaky_openai(max_retries=3, failures=2)

        response = await provider.complete([Message(role="user", content="hi")])
        await provider.close()

        assert response.content == "hello"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        """Test that max_retries bounds the attempts."""
        import httpx

        from aidb.core.llm import Message

        provider, calls = self.flaky_openai(max_retries=2, failures=2)

        with pytest.raises(httpx.HTTPStatusError):
            await provider.complete([Message(role="user", content="hi")])
        await provider.close()

        assert len(calls) == 2

    def test_config_from_settings(self):
        """Test the settings block maps onto the adapter config."""
        from aidb.core.config import LLMProviderConfig
        from aidb.core.llm import LLMConfig, LLMProvider

        settings = LLMProviderConfig(provider="anthropic", model="claude-test", max_retries=5)
        config = LLMConfig.from_settings(settings, api_key="sk-env")

        assert config.provider == LLMProvider.ANTHROPIC
        assert config.model == "claude-test"
        assert config.max_retries == 5
        assert config.api_key == "sk-env"

    @pytest.mark.asyncio
    async def test_lazy_initialization(self):
        """Test that the first completion initializes the provider."""
        from aidb.core.llm import LLMAdapter, LLMConfig, LLMProvider, Message

        adapter = LLMAdapter(LLMConfig(provider=LLMProvider.MOCK, model="mock-model"))
        assert adapter.provider is None

        response = await adapter.complete([Message(role="user", content="ping")])

        assert response.content == "Mock response to: ping"
        assert adapter.get_stats()["call_count"] == 1
        await adapter.close()

    @pytest.mark.asyncio
    async def test_providers_from_enabled_config(self):
        """Test that llm.enabled switches the pipeline to AI generation."""
        from aidb.core.config import AIDBConfig
        from aidb.generation.ai import AIValueGenerator
        from aidb.generation.placeholder import PlaceholderValueGenerator
        from aidb.resolution.context import Providers

        disabled = Providers.from_config(AIDBConfig(llm={"provider": "mock"}))
        enabled = Providers.from_config(AIDBConfig(llm={"enabled": True, "provider": "mock"}))

        assert isinstance(disabled.generator, PlaceholderValueGenerator)
        assert isinstance(enabled.generator, AIValueGenerator)

        result = await enabled.generator.generate(make_request())

        assert not result.is_fallback
        assert result.value.startswith("Mock response to:")
