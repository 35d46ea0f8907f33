"""
AIDB Schema Types

Dataclasses for the schema engine:
- Relationship operators as a closed enum
- Parsed schema, entity and field descriptors
- Materialized entities
- Draft / Resolved pipeline records and reference results
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Union
import uuid


PRIMITIVE_TYPES = frozenset({
    "string",
    "number",
    "boolean",
    "date",
    "datetime",
    "json",
    "markdown",
    "url",
})

# Scalar types whose values are free text
TEXT_TYPES = frozenset({"string", "markdown", "prompt"})


# =============================================================================
# Operators
# =============================================================================

class RelationOperator(str, Enum):
    """
    The four relationship operators.

    - FORWARD_EXACT (->): always create a new, owned related entity
    - FORWARD_FUZZY (~>): link an existing entity by similarity, else create
    - BACKWARD_EXACT (<-): entities whose backref points at the source
    - BACKWARD_FUZZY (<~): ground against existing entities, never create
    """
    FORWARD_EXACT = "->"
    FORWARD_FUZZY = "~>"
    BACKWARD_EXACT = "<-"
    BACKWARD_FUZZY = "<~"

    @property
    def symbol(self) -> str:
        return self.value

    @property
    def is_forward(self) -> bool:
        return self in (RelationOperator.FORWARD_EXACT, RelationOperator.FORWARD_FUZZY)

    @property
    def is_backward(self) -> bool:
        return not self.is_forward

    @property
    def is_fuzzy(self) -> bool:
        return self in (RelationOperator.FORWARD_FUZZY, RelationOperator.BACKWARD_FUZZY)

    @property
    def match_mode(self) -> str:
        return "fuzzy" if self.is_fuzzy else "exact"

    @classmethod
    def from_symbol(cls, symbol: str) -> "RelationOperator":
        for op in cls:
            if op.value == symbol:
                return op
        raise ValueError(f"Unknown relation operator: {symbol!r}")


# Parse order matters: fuzzy operators share a character with exact ones
OPERATOR_PARSE_ORDER = (
    RelationOperator.FORWARD_FUZZY,
    RelationOperator.BACKWARD_FUZZY,
    RelationOperator.FORWARD_EXACT,
    RelationOperator.BACKWARD_EXACT,
)


# =============================================================================
# Parsed Schema
# =============================================================================

@dataclass
class ParsedField:
    """A normalized field descriptor."""
    name: str
    type: str
    is_array: bool = False
    is_optional: bool = False
    is_relation: bool = False
    operator: Optional[RelationOperator] = None
    related_type: Optional[str] = None
    union_types: List[str] = field(default_factory=list)
    union_thresholds: Dict[str, float] = field(default_factory=dict)
    backref: Optional[str] = None
    threshold: Optional[float] = None
    prompt: Optional[str] = None
    derived: bool = False
    definition: Optional[str] = None

    @property
    def is_union(self) -> bool:
        return len(self.union_types) > 1

    @property
    def target_types(self) -> List[str]:
        """Candidate related types in declaration order."""
        if self.union_types:
            return list(self.union_types)
        return [self.related_type] if self.related_type else []

    @property
    def is_prompt(self) -> bool:
        return not self.is_relation and self.type == "prompt"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "is_array": self.is_array,
            "is_optional": self.is_optional,
            "is_relation": self.is_relation,
            "operator": self.operator.value if self.operator else None,
            "related_type": self.related_type,
            "union_types": list(self.union_types),
            "union_thresholds": dict(self.union_thresholds),
            "backref": self.backref,
            "threshold": self.threshold,
            "prompt": self.prompt,
            "derived": self.derived,
        }


@dataclass
class ParsedEntity:
    """A parsed entity type with its fields and directives."""
    name: str
    fields: Dict[str, ParsedField] = field(default_factory=dict)
    fuzzy_threshold: Optional[float] = None
    instructions: Optional[str] = None
    context_fields: List[str] = field(default_factory=list)
    seed: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def relation_fields(self) -> List[ParsedField]:
        return [f for f in self.fields.values() if f.is_relation]

    @property
    def scalar_fields(self) -> List[ParsedField]:
        return [f for f in self.fields.values() if not f.is_relation]

    def get(self, name: str) -> Optional[ParsedField]:
        return self.fields.get(name)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "fields": {name: f.to_dict() for name, f in self.fields.items()},
            "fuzzy_threshold": self.fuzzy_threshold,
            "instructions": self.instructions,
            "context_fields": list(self.context_fields),
            "seed": self.seed,
        }


@dataclass
class ParsedSchema:
    """Ordered mapping from entity type name to parsed entity."""
    entities: Dict[str, ParsedEntity] = field(default_factory=dict)

    def get(self, name: str) -> Optional[ParsedEntity]:
        return self.entities.get(name)

    def __getitem__(self, name: str) -> ParsedEntity:
        return self.entities[name]

    def __contains__(self, name: object) -> bool:
        return name in self.entities

    def __iter__(self) -> Iterator[str]:
        return iter(self.entities)

    def __len__(self) -> int:
        return len(self.entities)

    @property
    def type_names(self) -> List[str]:
        return list(self.entities)

    def to_dict(self) -> dict:
        return {name: e.to_dict() for name, e in self.entities.items()}


# =============================================================================
# Entities
# =============================================================================

@dataclass
class Entity:
    """A materialized record: stable id, type tag and field values."""
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.data[name]

    def to_dict(self) -> dict:
        return {
            "$id": self.id,
            "$type": self.type,
            **self.data,
            **self.metadata,
        }


# =============================================================================
# Pipeline Records
# =============================================================================

@dataclass
class ReferenceSpec:
    """An unresolved reference produced by the draft phase."""
    field: str
    operator: RelationOperator
    target_type: str
    hint: str = ""
    union_types: List[str] = field(default_factory=list)
    threshold: Optional[float] = None
    cascade: bool = False
    prompt: Optional[str] = None
    instructions: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    entity_id: Optional[str] = None
    resolved: bool = False

    @property
    def match_mode(self) -> str:
        return self.operator.match_mode

    def to_dict(self) -> dict:
        result = {
            "field": self.field,
            "operator": self.operator.value,
            "type": self.target_type,
            "matchMode": self.match_mode,
            "hint": self.hint,
            "cascade": self.cascade,
            "resolved": self.resolved,
        }
        if self.union_types:
            result["unionTypes"] = list(self.union_types)
        if self.threshold is not None:
            result["threshold"] = self.threshold
        if self.prompt:
            result["prompt"] = self.prompt
        if self.instructions:
            result["instructions"] = self.instructions
        if self.data is not None:
            result["data"] = dict(self.data)
        if self.entity_id:
            result["entityId"] = self.entity_id
        return result


RefEntry = Union[ReferenceSpec, List[ReferenceSpec]]


@dataclass
class Draft:
    """An entity with scalars populated and relations left as reference specs."""
    type: str
    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    refs: Dict[str, RefEntry] = field(default_factory=dict)
    phase: str = "draft"
    parent_id: Optional[str] = None
    hint: Optional[str] = None

    def iter_specs(self) -> Iterator[ReferenceSpec]:
        for entry in self.refs.values():
            if isinstance(entry, list):
                yield from entry
            else:
                yield entry

    def to_dict(self) -> dict:
        return {
            "$id": self.id,
            "$type": self.type,
            "phase": self.phase,
            **self.data,
            "refs": {
                name: (
                    [spec.to_dict() for spec in entry]
                    if isinstance(entry, list)
                    else entry.to_dict()
                )
                for name, entry in self.refs.items()
            },
        }


@dataclass
class FieldError:
    """A per-field failure recorded during resolution."""
    field: str
    error: str

    def to_dict(self) -> dict:
        return {"field": self.field, "error": self.error}


@dataclass
class Resolved:
    """
    Terminal output of the resolve phase.

    An entity with errors is still usable; callers check `errors` (or `ok`)
    to detect degraded results.
    """
    type: str
    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[FieldError] = field(default_factory=list)
    notes: Dict[str, str] = field(default_factory=dict)
    generated: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    phase: str = "resolved"

    @property
    def ok(self) -> bool:
        return not self.errors

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.data[name]

    def error_for(self, name: str) -> Optional[FieldError]:
        for error in self.errors:
            if error.field == name:
                return error
        return None

    def to_dict(self) -> dict:
        result = {
            "$id": self.id,
            "$type": self.type,
            "phase": self.phase,
            **self.data,
        }
        if self.errors:
            result["errors"] = [e.to_dict() for e in self.errors]
        return result


@dataclass
class ReferenceResult:
    """Outcome of resolving one relationship field."""
    entities: List[Entity] = field(default_factory=list)
    generated: bool = False
    scores: Optional[List[float]] = None
    note: Optional[str] = None
    matched_type: Optional[str] = None
    details: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)  # failed specs; siblings are kept

    @property
    def ids(self) -> List[str]:
        return [e.id for e in self.entities]

    def to_dict(self) -> dict:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "generated": self.generated,
            "scores": self.scores,
            "note": self.note,
            "matched_type": self.matched_type,
            "errors": list(self.errors),
        }


@dataclass
class CascadeProgress:
    """Progress event emitted during cascade generation."""
    phase: str  # "generating", "resolving", "complete"
    depth: int = 0
    current_type: Optional[str] = None
    total_entities_created: int = 0
    types_generated: List[str] = field(default_factory=list)
    entity_id: Optional[str] = None
    order: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "depth": self.depth,
            "current_type": self.current_type,
            "total_entities_created": self.total_entities_created,
            "types_generated": list(self.types_generated),
            "entity_id": self.entity_id,
            "order": list(self.order),
        }
