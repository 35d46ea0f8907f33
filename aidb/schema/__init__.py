"""
AIDB Schema

Schema parsing, validation, relationship operators and the dependency
graph used to order cascade generation.

Usage:
    from aidb.schema import parse_schema, build_dependency_graph, topological_sort

    schema = parse_schema({
        "Blog": {"title": "string", "topics": "[Topic.blog]"},
        "Topic": {"name": "string"},
    })
    order = topological_sort(build_dependency_graph(schema), "Blog")
"""

from aidb.schema.types import (
    PRIMITIVE_TYPES,
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
from aidb.schema.errors import (
    AIDBError,
    DraftStateError,
    FieldResolutionError,
    GenerationError,
    GenerationFallbackWarning,
    SchemaCycleError,
    SchemaValidationError,
)
from aidb.schema.parser import (
    parse_entity,
    parse_field,
    parse_schema,
    parse_union_thresholds,
    parse_union_types,
    validate_schema,
)
from aidb.schema.graph import (
    DependencyEdge,
    SchemaDependencyGraph,
    build_dependency_graph,
    detect_cycles,
    get_parallel_groups,
    topological_sort,
)
from aidb.schema.verbs import derive_backref_name, derive_reverse_verb

__all__ = [
    # Types
    "PRIMITIVE_TYPES",
    "CascadeProgress",
    "Draft",
    "Entity",
    "FieldError",
    "ParsedEntity",
    "ParsedField",
    "ParsedSchema",
    "ReferenceResult",
    "ReferenceSpec",
    "RelationOperator",
    "Resolved",
    # Errors
    "AIDBError",
    "DraftStateError",
    "FieldResolutionError",
    "GenerationError",
    "GenerationFallbackWarning",
    "SchemaCycleError",
    "SchemaValidationError",
    # Parser
    "parse_entity",
    "parse_field",
    "parse_schema",
    "parse_union_thresholds",
    "parse_union_types",
    "validate_schema",
    # Graph
    "DependencyEdge",
    "SchemaDependencyGraph",
    "build_dependency_graph",
    "detect_cycles",
    "get_parallel_groups",
    "topological_sort",
    # Verbs
    "derive_backref_name",
    "derive_reverse_verb",
]
