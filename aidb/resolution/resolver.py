"""
AIDB Relationship Resolver

Resolves one relationship field to concrete entities. One strategy per
operator:
- ->  create new related entities
- ~>  link the most similar existing entity, else create
- <-  entities whose backref points at the source
- <~  ground against existing entities, never create
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

import structlog

from aidb.resolution.context import GenerationContext
from aidb.resolution.union import UnionSearchOptions, UnionSearchResult
from aidb.schema.errors import FieldResolutionError
from aidb.schema.types import (
    Entity,
    ParsedField,
    ParsedSchema,
    ReferenceResult,
    ReferenceSpec,
    RelationOperator,
)

logger = structlog.get_logger(__name__)


def default_hint(parsed: ParsedField, index: int = 0, count: int = 1) -> str:
    """Hint used when the caller supplied none for a relation."""
    if parsed.prompt:
        return parsed.prompt
    target = (parsed.target_types or [parsed.type])[0]
    hint = f"A {target.lower()} for {parsed.name}"
    return f"{hint} #{index + 1}" if count > 1 else hint


class RelationshipResolver:
    """
    Dispatches a relation field to its operator's strategy.

    Stateless apart from the schema; all run state travels in the
    GenerationContext.
    """

    def __init__(self, schema: ParsedSchema):
        self.schema = schema

    async def resolve(
        self,
        parsed: ParsedField,
        source: Entity,
        context: GenerationContext,
        specs: Optional[List[ReferenceSpec]] = None,
    ) -> ReferenceResult:
        """
        Resolve a relationship field.

        Args:
            parsed: The relation field being resolved
            source: The (persisted) entity that owns the field
            context: Generation context of the source entity
            specs: Reference specs from the draft; one default spec if None

        Returns:
            ReferenceResult with the linked or created entities

        Raises:
            FieldResolutionError: If the field cannot be resolved
        """
        if specs is None:
            specs = [self.default_spec(parsed)]

        direct = [s for s in specs if s.entity_id]
        pending = [s for s in specs if not s.entity_id]

        result = ReferenceResult()
        for spec in direct:
            entity = await self._get_direct(parsed, spec, context)
            result.entities.append(entity)
            result.details.append({"$linked": True})
            spec.resolved = True

        if direct and not pending:
            result.matched_type = result.entities[0].type
            return result

        operator = parsed.operator
        if operator is RelationOperator.FORWARD_EXACT:
            outcome = await self._forward_exact(parsed, source, context, pending)
        elif operator is RelationOperator.FORWARD_FUZZY:
            outcome = await self._forward_fuzzy(parsed, source, context, pending)
        elif operator is RelationOperator.BACKWARD_EXACT:
            outcome = await self._backward_exact(parsed, source, context)
        elif operator is RelationOperator.BACKWARD_FUZZY:
            outcome = await self._backward_fuzzy(parsed, source, context, pending)
        else:
            raise AssertionError(f"Unhandled relation operator: {operator!r}")

        for spec in pending:
            spec.resolved = True

        if not direct:
            return outcome

        result.entities.extend(outcome.entities)
        result.details.extend(outcome.details)
        result.generated = outcome.generated
        result.note = outcome.note
        result.errors.extend(outcome.errors)
        if outcome.scores:
            result.scores = list(outcome.scores)
        result.matched_type = outcome.matched_type or result.entities[0].type
        return result

    def default_spec(self, parsed: ParsedField) -> ReferenceSpec:
        hint = "" if parsed.operator is RelationOperator.BACKWARD_EXACT else default_hint(parsed)
        return ReferenceSpec(
            field=parsed.name,
            operator=parsed.operator,
            target_type=parsed.target_types[0],
            hint=hint,
            union_types=list(parsed.union_types),
            threshold=parsed.threshold,
            prompt=parsed.prompt,
        )

    # ==========================================================================
    # Strategies
    # ==========================================================================

    async def _forward_exact(
        self,
        parsed: ParsedField,
        source: Entity,
        context: GenerationContext,
        specs: List[ReferenceSpec],
    ) -> ReferenceResult:
        target = parsed.target_types[0]
        blocked = self._generation_blocked(target, context)
        if blocked:
            return ReferenceResult(note=blocked)

        outcomes = await asyncio.gather(
            *[
                self._spawn(spec.target_type or target, spec, source, parsed, context, index)
                for index, spec in enumerate(specs)
            ],
            return_exceptions=True,
        )

        result = ReferenceResult(generated=True, matched_type=target)
        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                result.errors.append(error_message(outcome))
                continue
            result.entities.append(outcome)
            result.details.append({"$generated": True})

        return self._check_partial(parsed, result)

    async def _forward_fuzzy(
        self,
        parsed: ParsedField,
        source: Entity,
        context: GenerationContext,
        specs: List[ReferenceSpec],
    ) -> ReferenceResult:
        result = ReferenceResult()
        scores: List[float] = []
        exclude: Set[str] = set()

        # Sequential so later hints never reuse an earlier match
        for index, spec in enumerate(specs):
            try:
                search = await self._search(parsed, source, context, spec.hint, exclude)
            except Exception as e:
                result.errors.append(error_message(e))
                continue
            best = search.best

            if best is not None:
                exclude.add(best.entity.id)
                result.entities.append(best.entity)
                result.details.append({"$matched": True, "$score": best.score})
                result.matched_type = result.matched_type or best.type
                scores.append(best.score)
                logger.debug(
                    "Fuzzy match linked",
                    field=parsed.name,
                    type=best.type,
                    entity_id=best.entity.id,
                    score=best.score,
                )
                continue

            target = spec.target_type or parsed.target_types[0]
            blocked = self._generation_blocked(target, context)
            if blocked:
                result.note = blocked
                continue

            try:
                entity = await self._spawn(target, spec, source, parsed, context, index)
            except Exception as e:
                result.errors.append(error_message(e))
                continue
            exclude.add(entity.id)
            result.entities.append(entity)
            result.details.append({"$generated": True})
            result.generated = True
            result.matched_type = result.matched_type or target

        result.scores = scores or None
        return self._check_partial(parsed, result)

    async def _backward_exact(
        self,
        parsed: ParsedField,
        source: Entity,
        context: GenerationContext,
    ) -> ReferenceResult:
        parent = context.parent
        if (
            parent is not None
            and parent.type in parsed.target_types
            and (parsed.backref is None or parsed.backref == context.source_field)
        ):
            return ReferenceResult(
                entities=[parent],
                matched_type=parent.type,
                details=[{}],
            )

        data = context.engine.data
        found: List[Entity] = []
        seen: Set[str] = set()

        for type_name in parsed.target_types:
            for field_name in self._pointing_fields(parsed, type_name, source.type):
                for entity in await data.list(type_name, where={field_name: source.id}):
                    if entity.id not in seen and entity.id != source.id:
                        seen.add(entity.id)
                        found.append(entity)

        return ReferenceResult(
            entities=found,
            matched_type=found[0].type if found else None,
            details=[{} for _ in found],
        )

    async def _backward_fuzzy(
        self,
        parsed: ParsedField,
        source: Entity,
        context: GenerationContext,
        specs: List[ReferenceSpec],
    ) -> ReferenceResult:
        result = ReferenceResult()
        scores: List[float] = []
        exclude: Set[str] = {source.id}
        notes: List[str] = []
        entity_def = self.schema.get(source.type)

        for spec in specs:
            query = spec.hint or parsed.prompt or context.engine.search.entity_text(source)
            search = await self._search(
                parsed, source, context, query, exclude, include_below_threshold=True,
            )
            best = search.best

            if best is not None:
                exclude.add(best.entity.id)
                result.entities.append(best.entity)
                result.details.append({"$matched": True, "$score": best.score})
                result.matched_type = result.matched_type or best.type
                scores.append(best.score)
                continue

            below = search.best_below_threshold
            if below is None:
                notes.append("no candidates")
            else:
                threshold = context.engine.threshold_for(entity_def, parsed, below.type)
                notes.append(f"best score {below.score:.2f} below threshold {threshold:.2f}")

        if notes:
            result.note = "; ".join(notes)
            logger.info("Low-confidence grounding", field=parsed.name, note=result.note)

        result.scores = scores or None
        return result

    # ==========================================================================
    # Helpers
    # ==========================================================================

    async def _search(
        self,
        parsed: ParsedField,
        source: Entity,
        context: GenerationContext,
        query: str,
        exclude: Set[str],
        include_below_threshold: bool = False,
    ) -> UnionSearchResult:
        engine = context.engine
        entity_def = self.schema.get(source.type)
        types = parsed.target_types

        hybrid = engine.options.ranking == "hybrid"

        async def searcher(type_name: str, text: str, limit: int) -> List[tuple]:
            async with engine.semaphore:
                if hybrid:
                    matches = await engine.search.hybrid_search(
                        type_name, text, limit=limit, exclude=exclude,
                    )
                else:
                    matches = await engine.search.search(
                        type_name, text, limit=limit, exclude=exclude,
                    )
            if hybrid:
                return [(m.entity, m.score, m.rrf_score) for m in matches]
            return [(m.entity, m.score) for m in matches]

        options = UnionSearchOptions(
            mode=engine.options.search_mode,
            threshold=engine.threshold_for(entity_def, parsed),
            thresholds={t: engine.threshold_for(entity_def, parsed, t) for t in types},
            on_error=engine.options.union_on_error,
            limit=engine.config.resolution.search_limit,
            include_below_threshold=include_below_threshold,
        )
        result = await engine.union.search(types, query, searcher, options)

        if result.errors and len(result.errors) == len(types):
            raise FieldResolutionError(
                parsed.name,
                "; ".join(f"{e.type}: {e.message}" for e in result.errors),
            )
        return result

    async def _get_direct(
        self,
        parsed: ParsedField,
        spec: ReferenceSpec,
        context: GenerationContext,
    ) -> Entity:
        for type_name in [spec.target_type, *parsed.target_types]:
            entity = await context.engine.data.get(type_name, spec.entity_id)
            if entity is not None:
                return entity
        raise FieldResolutionError(
            parsed.name,
            f"{'|'.join(parsed.target_types)} {spec.entity_id} not found",
        )

    def _pointing_fields(self, parsed: ParsedField, type_name: str, source_type: str) -> List[str]:
        """Fields on `type_name` that hold ids of the source entity."""
        related = self.schema.get(type_name)
        if related is None:
            return []

        if parsed.backref:
            candidate = related.get(parsed.backref)
            if candidate is not None and candidate.is_relation and candidate.operator.is_forward:
                return [parsed.backref]

        return [
            f.name for f in related.relation_fields
            if f.operator.is_forward and source_type in f.target_types
        ]

    @staticmethod
    def _check_partial(parsed: ParsedField, result: ReferenceResult) -> ReferenceResult:
        """Fail the field only when every spec failed."""
        if result.errors and not result.entities:
            raise FieldResolutionError(parsed.name, "; ".join(result.errors))
        if result.errors:
            logger.warning(
                "Related entities partially created",
                field=parsed.name,
                created=len(result.entities),
                failed=len(result.errors),
            )
        return result

    @staticmethod
    def _generation_blocked(type_name: str, context: GenerationContext) -> Optional[str]:
        if context.depth >= context.engine.max_depth:
            return "max depth reached"
        if not context.can_generate(type_name):
            return f"{type_name} not in cascade types"
        return None

    @staticmethod
    async def _spawn(
        type_name: str,
        spec: ReferenceSpec,
        source: Entity,
        parsed: ParsedField,
        context: GenerationContext,
        index: int,
    ) -> Entity:
        spawn = context.engine.spawn
        if spawn is None:
            raise FieldResolutionError(parsed.name, "no pipeline attached to create related entities")
        return await spawn(type_name, spec, source, parsed.name, context, index)


def error_message(error: Exception) -> str:
    """Readable message for a failed reference."""
    if isinstance(error, FieldResolutionError):
        return error.message
    return str(error) or type(error).__name__


def reference_metadata(details: Dict[str, Any]) -> Dict[str, Any]:
    """Edge metadata recorded with `relate()` for a resolved reference."""
    metadata: Dict[str, Any] = {}
    if details.get("$matched"):
        metadata["matched"] = True
        metadata["score"] = details["$score"]
    if details.get("$generated"):
        metadata["generated"] = True
    if details.get("$linked"):
        metadata["linked"] = True
    return metadata
