"""
AIDB Cascade Orchestrator

Depth-bounded generation of an entity and its owned relations, plus the
SchemaEngine facade and module-level draft/resolve/cascade helpers.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Optional, Union

import structlog

from aidb.core.config import AIDBConfig, get_config
from aidb.generation.base import ValueGenerator
from aidb.pipeline import ResolutionPipeline
from aidb.providers.base import DataProvider, SemanticProvider
from aidb.resolution.context import CascadeOptions, EngineContext, GenerationContext, Providers
from aidb.schema.graph import build_dependency_graph, get_parallel_groups, topological_sort
from aidb.schema.parser import RawSchema, parse_schema
from aidb.schema.types import CascadeProgress, Draft, ParsedSchema, Resolved

logger = structlog.get_logger(__name__)

SchemaLike = Union[RawSchema, ParsedSchema]


class CascadeOrchestrator:
    """
    Generates an entity tree from one root type.

    The generation order is computed up front so a forward-exact cycle is
    reported before anything is persisted.
    """

    def __init__(self, schema: ParsedSchema, pipeline: Optional[ResolutionPipeline] = None):
        self.schema = schema
        self.pipeline = pipeline or ResolutionPipeline(schema)
        self.graph = build_dependency_graph(schema)

    async def cascade(
        self,
        type_name: str,
        data: Optional[Mapping[str, Any]],
        providers: Providers,
        options: Optional[CascadeOptions] = None,
        config: Optional[AIDBConfig] = None,
    ) -> Resolved:
        """
        Generate `type_name` and everything it owns.

        Args:
            type_name: Root entity type
            data: Root input values and relation hints
            providers: Data, semantic and generation backends
            options: Depth, threshold, seed and progress overrides
            config: Configuration (global config by default)

        Returns:
            The resolved root entity

        Raises:
            SchemaValidationError: Unknown root type
            SchemaCycleError: Required forward-exact relations form a cycle
        """
        order = topological_sort(self.graph, type_name)
        groups = get_parallel_groups(self.graph, type_name)

        engine = EngineContext(self.schema, providers, options, config)
        engine.spawn = self.pipeline.create_child

        draft = self.pipeline.draft(
            type_name,
            data,
            cascade=True,
            seed=engine.options.seed,
            default_array_count=engine.config.generation.default_array_count,
        )

        logger.info(
            "Cascade started",
            type=type_name,
            order=order,
            max_depth=engine.max_depth,
        )
        start = time.monotonic()

        await engine.emit(CascadeProgress(
            phase="generating",
            depth=0,
            current_type=type_name,
            order=list(order),
        ))

        resolved = await self.pipeline.resolve(draft, GenerationContext(engine=engine))
        resolved.notes["$order"] = " -> ".join(order)
        resolved.notes["$groups"] = " | ".join(", ".join(group) for group in groups)

        await engine.emit(CascadeProgress(
            phase="complete",
            depth=0,
            current_type=type_name,
            total_entities_created=engine.total_entities_created,
            types_generated=list(engine.types_generated),
            entity_id=resolved.id,
            order=list(order),
        ))

        logger.info(
            "Cascade complete",
            type=type_name,
            entity_id=resolved.id,
            total_entities_created=engine.total_entities_created,
            errors=len(resolved.errors),
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return resolved


# =============================================================================
# Facade
# =============================================================================

class SchemaEngine:
    """
    Entry point bundling a parsed schema with its providers.

    Usage:
        engine = SchemaEngine({"Blog": {"title": "string", "topics": "[->Topic]"}, ...})
        blog = await engine.cascade("Blog", {"title": "AI weekly"})
    """

    def __init__(
        self,
        schema: SchemaLike,
        data: Optional[DataProvider] = None,
        semantic: Optional[SemanticProvider] = None,
        generator: Optional[ValueGenerator] = None,
        config: Optional[AIDBConfig] = None,
    ):
        self.schema = parse_schema(schema)
        self.config = config or get_config()

        defaults = Providers.from_config(self.config, data=data)
        self.providers = Providers(
            data=defaults.data,
            semantic=semantic or defaults.semantic,
            generator=generator or defaults.generator,
        )

        self.pipeline = ResolutionPipeline(self.schema)
        self.orchestrator = CascadeOrchestrator(self.schema, self.pipeline)

    @property
    def data(self) -> DataProvider:
        return self.providers.data

    def draft(self, type_name: str, data: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Draft:
        kwargs.setdefault("seed", self.config.generation.seed)
        kwargs.setdefault("default_array_count", self.config.generation.default_array_count)
        return self.pipeline.draft(type_name, data, **kwargs)

    async def resolve(self, draft: Draft, options: Optional[CascadeOptions] = None) -> Resolved:
        engine = EngineContext(self.schema, self.providers, options, self.config)
        engine.spawn = self.pipeline.create_child
        return await self.pipeline.resolve(draft, GenerationContext(engine=engine))

    async def cascade(
        self,
        type_name: str,
        data: Optional[Mapping[str, Any]] = None,
        options: Optional[CascadeOptions] = None,
    ) -> Resolved:
        return await self.orchestrator.cascade(type_name, data, self.providers, options, self.config)


# =============================================================================
# Module-level API
# =============================================================================

def draft(schema: SchemaLike, type_name: str, data: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Draft:
    """Draft an entity against a schema (no provider calls)."""
    return ResolutionPipeline(parse_schema(schema)).draft(type_name, data, **kwargs)


async def resolve(
    schema: SchemaLike,
    draft: Draft,
    providers: Optional[Providers] = None,
    options: Optional[CascadeOptions] = None,
    config: Optional[AIDBConfig] = None,
) -> Resolved:
    """Resolve a draft with explicit providers."""
    parsed = parse_schema(schema)
    pipeline = ResolutionPipeline(parsed)
    engine = EngineContext(parsed, providers or Providers(), options, config)
    engine.spawn = pipeline.create_child
    return await pipeline.resolve(draft, GenerationContext(engine=engine))


async def cascade(
    schema: SchemaLike,
    type_name: str,
    data: Optional[Mapping[str, Any]] = None,
    providers: Optional[Providers] = None,
    options: Optional[CascadeOptions] = None,
    config: Optional[AIDBConfig] = None,
) -> Resolved:
    """Cascade-generate an entity tree with explicit providers."""
    parsed = parse_schema(schema)
    return await CascadeOrchestrator(parsed).cascade(
        type_name, data, providers or Providers(), options, config,
    )
