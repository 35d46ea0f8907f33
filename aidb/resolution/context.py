"""
AIDB Resolution Context

Run-scoped state passed explicitly through draft/resolve/cascade:
- Providers: data, semantic and generation backends
- CascadeOptions: per-call overrides of the configuration
- EngineContext: one per top-level run (cache, semaphore, counters)
- GenerationContext: immutable per-entity view (depth, parent chain)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union
import uuid

import structlog

from aidb.core.config import AIDBConfig, get_config
from aidb.core.llm import LLMAdapter, LLMConfig
from aidb.generation.base import GenerationRequest, GenerationResult, ValueGenerator
from aidb.generation.placeholder import PlaceholderValueGenerator
from aidb.providers.base import DataProvider, SemanticProvider
from aidb.providers.generation import create_value_generator
from aidb.providers.memory import MemoryDataProvider
from aidb.providers.semantic import HashingSemanticProvider, create_semantic_provider
from aidb.resolution.search import EmbeddingCache, SemanticSearch
from aidb.resolution.union import UnionSearch
from aidb.schema.types import CascadeProgress, Entity, ParsedEntity, ParsedField, ParsedSchema

logger = structlog.get_logger(__name__)

# Namespace for deterministic (seeded) entity ids
AIDB_NAMESPACE = uuid.UUID("6f1c2a0e-9b1d-5d3e-8a47-0c2f6a1b7e55")

ProgressCallback = Callable[[CascadeProgress], Union[None, Awaitable[None]]]


# =============================================================================
# Providers & Options
# =============================================================================

@dataclass
class Providers:
    """The backends a run talks to."""
    data: DataProvider = field(default_factory=MemoryDataProvider)
    semantic: SemanticProvider = field(default_factory=HashingSemanticProvider)
    generator: ValueGenerator = field(default_factory=PlaceholderValueGenerator)

    @classmethod
    def from_config(
        cls,
        config: Optional[AIDBConfig] = None,
        data: Optional[DataProvider] = None,
        adapter: Optional[LLMAdapter] = None,
    ) -> "Providers":
        """
        Build providers from configuration.

        An explicit adapter, or `llm.enabled` in the configuration, switches
        value generation to the AI generator.
        """
        config = config or get_config()
        if adapter is None and config.llm.enabled:
            adapter = LLMAdapter(
                LLMConfig.from_settings(config.llm, api_key=config.get_llm_api_key())
            )
        return cls(
            data=data or MemoryDataProvider(),
            semantic=create_semantic_provider(config.embedding),
            generator=create_value_generator(adapter, config.generation),
        )


@dataclass
class CascadeOptions:
    """
    Per-call options. Unset values fall back to the configuration.
    """
    max_depth: Optional[int] = None
    threshold: Optional[float] = None
    search_mode: Optional[str] = None
    union_on_error: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None
    cascade_types: Optional[Set[str]] = None
    seed: Optional[str] = None
    max_concurrency: Optional[int] = None
    ranking: Optional[str] = None

    def with_defaults(self, config: AIDBConfig) -> "CascadeOptions":
        """Copy with every unset option taken from the configuration."""
        return replace(
            self,
            max_depth=self.max_depth if self.max_depth is not None else config.cascade.max_depth,
            search_mode=self.search_mode or config.resolution.search_mode,
            union_on_error=self.union_on_error or config.resolution.union_on_error,
            seed=self.seed if self.seed is not None else config.generation.seed,
            max_concurrency=self.max_concurrency or config.cascade.max_concurrency,
            ranking=self.ranking or config.resolution.ranking,
            cascade_types=set(self.cascade_types) if self.cascade_types is not None else None,
        )

    @classmethod
    def from_config(cls, config: Optional[AIDBConfig] = None, **overrides: Any) -> "CascadeOptions":
        return cls(**overrides).with_defaults(config or get_config())


# =============================================================================
# Engine Context
# =============================================================================

class EngineContext:
    """
    State for one top-level resolve or cascade run.

    Holds the embedding cache, the concurrency semaphore and the counters
    reported in progress events. Never shared between runs.
    """

    def __init__(
        self,
        schema: ParsedSchema,
        providers: Providers,
        options: Optional[CascadeOptions] = None,
        config: Optional[AIDBConfig] = None,
    ):
        self.schema = schema
        self.providers = providers
        self.config = config or get_config()
        self.options = (options or CascadeOptions()).with_defaults(self.config)

        self.max_depth = max(0, min(self.options.max_depth, self.config.cascade.hard_max_depth))
        self.cache = EmbeddingCache(enabled=self.config.embedding.cache_enabled)
        self.search = SemanticSearch(
            schema,
            providers.data,
            providers.semantic,
            config=self.config.resolution,
            cache=self.cache,
        )
        self.union = UnionSearch()
        self.semaphore = asyncio.Semaphore(self.options.max_concurrency)

        # Set by the pipeline: (type, spec, parent, field, context, index) -> Entity
        self.spawn: Optional[Callable[..., Awaitable[Entity]]] = None

        self.created: List[Entity] = []
        self.types_generated: List[str] = []

    @property
    def data(self) -> DataProvider:
        return self.providers.data

    @property
    def total_entities_created(self) -> int:
        return len(self.created)

    # ==========================================================================
    # Identity & Thresholds
    # ==========================================================================

    def make_id(self, *parts: Any) -> str:
        """UUIDv5 over the seed and parts when seeded, else UUIDv4."""
        if self.options.seed is None:
            return str(uuid.uuid4())
        name = ":".join([str(self.options.seed), *(str(p) for p in parts)])
        return str(uuid.uuid5(AIDB_NAMESPACE, name))

    def threshold_for(
        self,
        entity: Optional[ParsedEntity],
        parsed: ParsedField,
        member: Optional[str] = None,
    ) -> float:
        """
        Resolve the similarity threshold for a field.

        Precedence: union member, field, call option, entity directive,
        configuration.
        """
        if member is not None and member in parsed.union_thresholds:
            return parsed.union_thresholds[member]
        if parsed.threshold is not None:
            return parsed.threshold
        if self.options.threshold is not None:
            return self.options.threshold
        if entity is not None and entity.fuzzy_threshold is not None:
            return entity.fuzzy_threshold
        return self.config.resolution.fuzzy_threshold

    # ==========================================================================
    # Provider Calls
    # ==========================================================================

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate one value; bounded by the run semaphore."""
        async with self.semaphore:
            return await self.providers.generator.generate(request)

    # ==========================================================================
    # Progress
    # ==========================================================================

    async def record_created(self, entity: Entity, depth: int) -> None:
        self.created.append(entity)
        if entity.type not in self.types_generated:
            self.types_generated.append(entity.type)

        await self.emit(CascadeProgress(
            phase="generating",
            depth=depth,
            current_type=entity.type,
            total_entities_created=self.total_entities_created,
            types_generated=list(self.types_generated),
            entity_id=entity.id,
        ))

    async def emit(self, progress: CascadeProgress) -> None:
        callback = self.options.on_progress
        if callback is None:
            return

        try:
            outcome = callback(progress)
            if inspect.isawaitable(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Progress callback failed", phase=progress.phase, error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_entities_created": self.total_entities_created,
            "types_generated": list(self.types_generated),
            "max_depth": self.max_depth,
            "cache": self.cache.get_stats(),
        }


# =============================================================================
# Generation Context
# =============================================================================

@dataclass(frozen=True)
class GenerationContext:
    """
    Immutable per-entity view of a run: depth, ancestry and directives.

    `instructions` and `context_values` hold the rendered `$instructions`
    and resolved `$context` of the nearest entity that declares them; child
    contexts inherit both.
    """
    engine: EngineContext
    depth: int = 0
    parent: Optional[Entity] = None
    parent_chain: Tuple[Entity, ...] = ()  # ancestors, root first
    source_field: Optional[str] = None
    instructions: Optional[str] = None
    context_values: Mapping[str, Any] = field(default_factory=dict)

    def child(self, parent: Entity, source_field: str) -> "GenerationContext":
        """Context for an entity created through `parent.source_field`."""
        return GenerationContext(
            engine=self.engine,
            depth=self.depth + 1,
            parent=parent,
            parent_chain=self.parent_chain + (parent,),
            source_field=source_field,
            instructions=self.instructions,
            context_values=dict(self.context_values),
        )

    def with_directives(
        self,
        instructions: Optional[str],
        context_values: Mapping[str, Any],
    ) -> "GenerationContext":
        """Copy carrying an entity's own directives, falling back to the inherited ones."""
        return replace(
            self,
            instructions=instructions if instructions is not None else self.instructions,
            context_values={**self.context_values, **context_values},
        )

    def can_generate(self, type_name: str) -> bool:
        """Whether a related entity of this type may be created from here."""
        if self.depth >= self.engine.max_depth:
            return False
        allowed = self.engine.options.cascade_types
        return allowed is None or type_name in allowed

    @property
    def parent_data(self) -> Dict[str, Any]:
        if self.parent is None:
            return {}
        return {"$id": self.parent.id, "$type": self.parent.type, **self.parent.data}
