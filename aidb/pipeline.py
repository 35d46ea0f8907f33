"""
AIDB Two-Phase Resolution Pipeline

draft():   synchronous; scalars copied, relations left as ReferenceSpecs
resolve(): asynchronous; scalars generated, shell persisted, references
           resolved, shell patched with relation ids
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple
import uuid

import structlog

from aidb.generation.base import GenerationRequest
from aidb.resolution.context import AIDB_NAMESPACE, GenerationContext
from aidb.resolution.resolver import RelationshipResolver, default_hint, error_message, reference_metadata
from aidb.schema.errors import DraftStateError, FieldResolutionError, SchemaValidationError
from aidb.schema.verbs import lower_camel
from aidb.schema.types import (
    TEXT_TYPES,
    CascadeProgress,
    Draft,
    Entity,
    FieldError,
    ParsedEntity,
    ParsedField,
    ParsedSchema,
    ReferenceResult,
    ReferenceSpec,
    RelationOperator,
    Resolved,
)

logger = structlog.get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([\w.]+)\}")


def lookup_path(values: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path through nested mappings; None when a step is missing."""
    value: Any = values
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute `{field}` and `{relation.field}` placeholders.

    Unknown names are left as written.
    """

    def substitute(match: "re.Match[str]") -> str:
        value = lookup_path(values, match.group(1))
        if value is None:
            return match.group(0)
        return value if isinstance(value, str) else json.dumps(value, default=str)

    return _PLACEHOLDER_RE.sub(substitute, template)


def canonical_json(data: Mapping[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def primary_text_field(entity_def: ParsedEntity) -> Optional[str]:
    """First free-text scalar; receives the hint of a generated entity."""
    for parsed in entity_def.scalar_fields:
        if parsed.type in TEXT_TYPES and not parsed.is_array:
            return parsed.name
    return None


class ResolutionPipeline:
    """
    Draft/resolve pipeline over a parsed schema.

    The pipeline is stateless; run state lives in the GenerationContext
    passed to `resolve()`.
    """

    def __init__(self, schema: ParsedSchema, resolver: Optional[RelationshipResolver] = None):
        self.schema = schema
        self.resolver = resolver or RelationshipResolver(schema)

    # ==========================================================================
    # Draft
    # ==========================================================================

    def draft(
        self,
        type_name: str,
        data: Optional[Mapping[str, Any]] = None,
        *,
        cascade: bool = False,
        relations: bool = True,
        seed: Optional[str] = None,
        hint: Optional[str] = None,
        parent_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        default_array_count: int = 1,
    ) -> Draft:
        """
        Build a draft for an entity without calling any provider.

        Args:
            type_name: Entity type
            data: Input values; relation values may be hints, lists of
                hints, inline child data, `{"$id": ...}` links or entities
            cascade: Mark reference specs for cascade generation
            relations: Create default specs for unsupplied forward relations
            seed: Seed for a deterministic id
            hint: Text for the entity's primary text field
            parent_id: Id of the entity this one is created for
            entity_id: Explicit id
            default_array_count: Default specs for an unsupplied array relation

        Raises:
            SchemaValidationError: Unknown type or unsupported relation value
        """
        entity_def = self.schema.get(type_name)
        if entity_def is None:
            raise SchemaValidationError([f"Unknown entity type: {type_name}"])

        raw = dict(data or {})
        explicit_id = entity_id or raw.pop("$id", None)
        if explicit_id is None and "id" in raw and "id" not in entity_def.fields:
            explicit_id = raw.pop("id")

        values: Dict[str, Any] = {}
        supplied: Dict[str, Any] = {}
        for key, value in raw.items():
            if key.startswith("$"):
                continue
            if key.endswith("Hint") and key not in entity_def.fields:
                target = entity_def.get(key[:-4])
                if target is not None and target.is_relation:
                    supplied.setdefault(target.name, value)
                    continue
            parsed = entity_def.get(key)
            if parsed is not None and parsed.is_relation:
                if value is not None:
                    supplied[key] = value
            else:
                values[key] = value

        refs = {}
        for parsed in entity_def.relation_fields:
            specs = self._specs_for(
                type_name,
                parsed,
                supplied.get(parsed.name),
                cascade=cascade,
                relations=relations,
                count=default_array_count if parsed.is_array else 1,
            )
            if specs is None:
                continue
            refs[parsed.name] = specs if parsed.is_array or len(specs) > 1 else specs[0]

        seed = seed if seed is not None else entity_def.seed
        if explicit_id is not None:
            draft_id = str(explicit_id)
        elif seed is not None:
            draft_id = str(uuid.uuid5(AIDB_NAMESPACE, f"{seed}:{type_name}:{canonical_json(raw)}"))
        else:
            draft_id = str(uuid.uuid4())

        return Draft(
            type=type_name,
            id=draft_id,
            data=values,
            refs=refs,
            parent_id=parent_id,
            hint=hint,
        )

    def _specs_for(
        self,
        type_name: str,
        parsed: ParsedField,
        value: Any,
        cascade: bool,
        relations: bool,
        count: int,
    ) -> Optional[List[ReferenceSpec]]:
        if value is not None:
            return self._specs_from_input(type_name, parsed, value, cascade)

        operator = parsed.operator
        if operator is RelationOperator.BACKWARD_EXACT:
            return [self._spec(parsed, "", cascade)]
        if parsed.is_optional:
            return None
        if operator is RelationOperator.BACKWARD_FUZZY:
            return [self._spec(parsed, parsed.prompt or "", cascade)]
        if not relations:
            return None
        return [self._spec(parsed, default_hint(parsed, i, count), cascade) for i in range(count)]

    def _specs_from_input(
        self,
        type_name: str,
        parsed: ParsedField,
        value: Any,
        cascade: bool,
    ) -> List[ReferenceSpec]:
        items = list(value) if isinstance(value, (list, tuple)) else [value]
        specs = []

        for index, item in enumerate(items):
            if isinstance(item, str):
                specs.append(self._spec(parsed, item, cascade))
            elif isinstance(item, Entity):
                specs.append(self._spec(parsed, "", cascade, entity_id=item.id, target_type=item.type))
            elif isinstance(item, Mapping):
                if item.get("$id"):
                    specs.append(self._spec(
                        parsed, "", cascade,
                        entity_id=str(item["$id"]),
                        target_type=item.get("$type"),
                    ))
                else:
                    inline = dict(item)
                    hint = inline.pop("$hint", None) or default_hint(parsed, index, len(items))
                    specs.append(self._spec(
                        parsed, hint, cascade,
                        data=inline,
                        target_type=inline.pop("$type", None),
                    ))
            else:
                raise SchemaValidationError([
                    f"{type_name}.{parsed.name}: unsupported relation value of type "
                    f"{type(item).__name__}"
                ])

        return specs

    @staticmethod
    def _spec(
        parsed: ParsedField,
        hint: str,
        cascade: bool,
        entity_id: Optional[str] = None,
        target_type: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> ReferenceSpec:
        if target_type not in parsed.target_types:
            target_type = parsed.target_types[0]
        return ReferenceSpec(
            field=parsed.name,
            operator=parsed.operator,
            target_type=target_type,
            hint=hint,
            union_types=list(parsed.union_types),
            threshold=parsed.threshold,
            cascade=cascade,
            prompt=parsed.prompt,
            data=data,
            entity_id=entity_id,
        )

    # ==========================================================================
    # Resolve
    # ==========================================================================

    async def resolve(self, draft: Draft, context: GenerationContext) -> Resolved:
        """
        Resolve a draft into a persisted entity.

        Field failures are recorded in `Resolved.errors`; resolution never
        stops at the first failing field.

        Raises:
            DraftStateError: If `draft` is not a draft
        """
        resolved, _ = await self._resolve(draft, context)
        return resolved

    async def _resolve(self, draft: Draft, context: GenerationContext) -> Tuple[Resolved, Optional[Entity]]:
        if not isinstance(draft, Draft) or draft.phase != "draft":
            phase = getattr(draft, "phase", type(draft).__name__)
            raise DraftStateError(f"resolve() expects a draft, got phase {phase!r}")

        engine = context.engine
        if engine.spawn is None:
            engine.spawn = self.create_child

        entity_def = self.schema[draft.type]
        errors: List[FieldError] = []
        generated: Dict[str, Dict[str, Any]] = {}
        notes: Dict[str, str] = {}

        data = dict(draft.data)
        await self._generate_scalars(entity_def, draft, data, context, errors, generated)
        context = context.with_directives(*self._directives(entity_def, self._template_values(data, context)))

        try:
            entity, created = await self._persist_shell(draft, data, context)
        except Exception as e:
            logger.warning("Entity persist failed", type=draft.type, entity_id=draft.id, error=str(e))
            errors.append(FieldError(field="$entity", error=str(e) or type(e).__name__))
            return Resolved(type=draft.type, id=draft.id, data=data, errors=errors, generated=generated), None

        if created:
            await engine.record_created(entity, context.depth)

        outcomes = await self._resolve_relations(entity_def, draft, entity, context)

        relation_values: Dict[str, Any] = {}
        linked: List[Tuple[ParsedField, ReferenceResult]] = []
        for parsed in entity_def.relation_fields:
            if parsed.name not in outcomes:
                continue
            outcome = outcomes[parsed.name]

            if isinstance(outcome, Exception):
                message = error_message(outcome)
                logger.warning("Field resolution failed", type=draft.type, field=parsed.name, error=message)
                errors.append(FieldError(field=parsed.name, error=message))
                relation_values[parsed.name] = [] if parsed.is_array else None
                continue

            ids = outcome.ids
            relation_values[parsed.name] = ids if parsed.is_array else (ids[0] if ids else None)
            if outcome.errors:
                message = "; ".join(outcome.errors)
                logger.warning("Field partially resolved", type=draft.type, field=parsed.name, error=message)
                errors.append(FieldError(field=parsed.name, error=message))
            if outcome.note:
                notes[parsed.name] = outcome.note
            if parsed.operator.is_forward:
                linked.append((parsed, outcome))

        if relation_values:
            try:
                entity = await engine.data.update(draft.type, entity.id, relation_values)
            except Exception as e:
                logger.warning("Relation patch failed", type=draft.type, entity_id=entity.id, error=str(e))
                errors.append(FieldError(field="$entity", error=str(e) or type(e).__name__))

        for parsed, outcome in linked:
            try:
                await self._relate(entity, parsed, outcome, context)
            except Exception as e:
                errors.append(FieldError(field=parsed.name, error=str(e) or type(e).__name__))

        await engine.emit(CascadeProgress(
            phase="resolving",
            depth=context.depth,
            current_type=draft.type,
            total_entities_created=engine.total_entities_created,
            types_generated=list(engine.types_generated),
            entity_id=entity.id,
        ))

        resolved = Resolved(
            type=draft.type,
            id=entity.id,
            data={**data, **relation_values},
            errors=errors,
            notes=notes,
            generated=generated,
        )
        return resolved, entity

    async def _generate_scalars(
        self,
        entity_def: ParsedEntity,
        draft: Draft,
        data: Dict[str, Any],
        context: GenerationContext,
        errors: List[FieldError],
        generated: Dict[str, Dict[str, Any]],
    ) -> None:
        """Fill missing required scalars in schema order."""
        parent = context.parent_data
        primary = primary_text_field(entity_def)

        for parsed in entity_def.scalar_fields:
            if parsed.name in data or parsed.is_optional:
                continue

            known = self._template_values(data, context)
            instructions, own_values = self._directives(entity_def, known)
            if instructions is None:
                instructions = context.instructions
            context_values = {**context.context_values, **own_values}

            request = GenerationRequest(
                field=parsed.name,
                type=parsed.type,
                entity_type=entity_def.name,
                prompt=render_template(parsed.prompt, known) if parsed.prompt else None,
                hint=draft.hint if parsed.name == primary else None,
                instructions=instructions,
                parent=parent,
                context_values=context_values,
                seed=context.engine.options.seed,
            )

            try:
                result = await context.engine.generate(request)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                message = getattr(e, "message", None) or str(e) or type(e).__name__
                logger.warning("Value generation failed", type=entity_def.name, field=parsed.name, error=message)
                errors.append(FieldError(field=parsed.name, error=message))
                continue

            value = result.value
            if parsed.is_array and not isinstance(value, list):
                value = [value]
            data[parsed.name] = value
            generated[parsed.name] = dict(result.metadata)

    def _template_values(self, data: Mapping[str, Any], context: GenerationContext) -> Dict[str, Any]:
        """
        Values visible to `$instructions`, `$context` and prompt templates.

        The parent's fields appear bare and under the parent's lowerCamel type
        name and the backref field that points at it; every ancestor appears
        under its type name, so `{company.name}` works from a grandchild.
        Own values win.
        """
        known: Dict[str, Any] = dict(context.context_values)
        for ancestor in context.parent_chain:
            known[lower_camel(ancestor.type)] = {"$id": ancestor.id, **ancestor.data}

        parent = context.parent
        if parent is not None:
            known.update({k: v for k, v in parent.data.items() if not k.startswith("$")})
            parent_values = {"$id": parent.id, **parent.data}
            known[lower_camel(parent.type)] = parent_values
            parent_def = self.schema.get(parent.type)
            source = parent_def.get(context.source_field) if parent_def and context.source_field else None
            if source is not None and source.backref:
                known[source.backref] = parent_values

        known.update(data)
        return known

    @staticmethod
    def _directives(entity_def: ParsedEntity, known: Mapping[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
        """Rendered `$instructions` (None when undeclared) and resolved `$context` values."""
        instructions = render_template(entity_def.instructions, known) if entity_def.instructions else None
        context_values = {name: known[name] for name in entity_def.context_fields if name in known}
        return instructions, context_values

    async def _persist_shell(
        self,
        draft: Draft,
        data: Dict[str, Any],
        context: GenerationContext,
    ) -> Tuple[Entity, bool]:
        """Create the entity before its references so children can point at it."""
        store = context.engine.data
        existing = await store.get(draft.type, draft.id)
        if existing is not None:
            return await store.update(draft.type, draft.id, data), False
        return await store.create(draft.type, data, entity_id=draft.id), True

    async def _resolve_relations(
        self,
        entity_def: ParsedEntity,
        draft: Draft,
        entity: Entity,
        context: GenerationContext,
    ) -> Dict[str, Any]:
        """Forward-exact fields first, then the rest; siblings run concurrently."""
        pending = [entity_def.fields[name] for name in entity_def.fields if name in draft.refs]
        first = [p for p in pending if p.operator is RelationOperator.FORWARD_EXACT]
        rest = [p for p in pending if p.operator is not RelationOperator.FORWARD_EXACT]

        outcomes: Dict[str, Any] = {}
        for group in (first, rest):
            if not group:
                continue
            results = await asyncio.gather(
                *[
                    self.resolver.resolve(parsed, entity, context, self._draft_specs(draft, parsed.name))
                    for parsed in group
                ],
                return_exceptions=True,
            )
            for parsed, result in zip(group, results):
                if isinstance(result, BaseException) and not isinstance(result, Exception):
                    raise result
                outcomes[parsed.name] = result

        return outcomes

    @staticmethod
    def _draft_specs(draft: Draft, name: str) -> List[ReferenceSpec]:
        entry = draft.refs[name]
        return list(entry) if isinstance(entry, list) else [entry]

    async def _relate(
        self,
        entity: Entity,
        parsed: ParsedField,
        outcome: ReferenceResult,
        context: GenerationContext,
    ) -> None:
        details = outcome.details or [{} for _ in outcome.entities]
        for target, detail in zip(outcome.entities, details):
            await context.engine.data.relate(
                entity.type,
                entity.id,
                parsed.name,
                target.type,
                target.id,
                metadata=reference_metadata(detail),
            )

    # ==========================================================================
    # Child Creation
    # ==========================================================================

    async def create_child(
        self,
        type_name: str,
        spec: ReferenceSpec,
        parent: Entity,
        field_name: str,
        context: GenerationContext,
        index: int = 0,
    ) -> Entity:
        """Draft and resolve a related entity one level below `context`."""
        engine = context.engine
        child_context = context.child(parent, field_name)

        draft = self.draft(
            type_name,
            spec.data or {},
            cascade=spec.cascade,
            relations=spec.cascade,
            hint=spec.hint or None,
            parent_id=parent.id,
            entity_id=engine.make_id(parent.id, field_name, index),
            default_array_count=engine.config.generation.default_array_count,
        )

        resolved, entity = await self._resolve(draft, child_context)
        if entity is None:
            raise FieldResolutionError(
                field_name,
                "; ".join(f"{e.field}: {e.error}" for e in resolved.errors),
            )

        for error in resolved.errors:
            logger.warning(
                "Child entity resolved with errors",
                type=type_name,
                entity_id=entity.id,
                field=error.field,
                error=error.error,
            )
        return entity
