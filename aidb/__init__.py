"""
AIDB - AI-native Database Schema Engine

Declarative schemas with four relationship operators and AI-backed
generation:
- Schema parsing with derived backrefs (->, ~>, <-, <~)
- Two-phase draft/resolve pipeline
- Semantic fuzzy linking with union-type fallback
- Depth-bounded cascade generation
"""

__version__ = "1.0.0"
__author__ = "AIDB Team"

from aidb.core.config import AIDBConfig, get_config
from aidb.schema import (
    CascadeProgress,
    Draft,
    Entity,
    RelationOperator,
    Resolved,
    SchemaCycleError,
    SchemaValidationError,
    parse_schema,
)
from aidb.resolution import CascadeOptions, Providers
from aidb.cascade import CascadeOrchestrator, SchemaEngine

__all__ = [
    "AIDBConfig",
    "get_config",
    "CascadeProgress",
    "Draft",
    "Entity",
    "RelationOperator",
    "Resolved",
    "SchemaCycleError",
    "SchemaValidationError",
    "parse_schema",
    "CascadeOptions",
    "Providers",
    "CascadeOrchestrator",
    "SchemaEngine",
    "__version__",
]
