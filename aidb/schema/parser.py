"""
AIDB Schema Parser

Parses raw field-definition strings into normalized field descriptors.

Grammar (checked in order):
- `[...]` or a one-element list marks an array
- `<prompt> <op> <TypeExpr>` where op is one of ~> <~ -> <-
- `TypeExpr` is `Type`, `Type(0.9)`, `Type.backref` or `A|B(0.8)|C`,
  optionally suffixed with `[]` and/or `?`
- Bare primitives (`string`, `number?`, ...) are scalar fields
- Bare PascalCase types (`Author.posts`) are forward-exact relations
- Anything else with a space, `/` or `?` is a generation prompt
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import structlog

from aidb.schema.errors import SchemaValidationError
from aidb.schema.types import (
    OPERATOR_PARSE_ORDER,
    PRIMITIVE_TYPES,
    ParsedEntity,
    ParsedField,
    ParsedSchema,
    RelationOperator,
)
from aidb.schema.verbs import derive_backref_name

logger = structlog.get_logger(__name__)

RawSchema = Mapping[str, Mapping[str, Any]]

_MEMBER_RE = re.compile(
    r"^(?P<type>[A-Za-z_][A-Za-z0-9_]*)"
    r"(?:\((?P<threshold>[^)]*)\))?"
    r"(?:\.(?P<backref>[A-Za-z_][A-Za-z0-9_]*))?$"
)
_PASCAL_RE = re.compile(r"^[A-Z][A-Za-z0-9_]*$")
_TYPE_TOKEN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.()|\[\]]*$")

ENTITY_DIRECTIVES = ("$fuzzyThreshold", "$instructions", "$context", "$seed")


# =============================================================================
# Validation results
# =============================================================================

@dataclass
class SchemaIssue:
    """A problem found while parsing or validating a schema."""
    location: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


@dataclass
class ValidationResult:
    """Result of schema validation."""
    valid: bool = True
    errors: List[SchemaIssue] = field(default_factory=list)
    warnings: List[SchemaIssue] = field(default_factory=list)

    def add_error(self, location: str, message: str) -> None:
        self.errors.append(SchemaIssue(location, message, "error"))
        self.valid = False

    def add_warning(self, location: str, message: str) -> None:
        self.warnings.append(SchemaIssue(location, message, "warning"))

    def raise_if_invalid(self) -> None:
        if not self.valid:
            raise SchemaValidationError([str(e) for e in self.errors])


# =============================================================================
# Field parsing
# =============================================================================

def parse_threshold(raw: str, location: str) -> float:
    """Parse a `(0.9)` threshold; only values in [0, 1] are accepted."""
    try:
        value = float(raw)
    except ValueError:
        raise SchemaValidationError(f"{location}: invalid threshold {raw!r}") from None
    if not 0.0 <= value <= 1.0:
        raise SchemaValidationError(
            f"{location}: threshold must be between 0 and 1, got {value}"
        )
    return value


def parse_union_types(type_spec: str) -> List[str]:
    """`A|B(0.8)|C` -> ['A', 'B', 'C']"""
    types = []
    for part in type_spec.split("|"):
        part = part.strip()
        if not part:
            continue
        types.append(part.split("(", 1)[0].split(".", 1)[0].strip())
    return types


def parse_union_thresholds(type_spec: str) -> Dict[str, float]:
    """`A|B(0.8)` -> {'B': 0.8}"""
    thresholds: Dict[str, float] = {}
    for part in type_spec.split("|"):
        match = _MEMBER_RE.match(part.strip())
        if match and match.group("threshold"):
            thresholds[match.group("type")] = parse_threshold(
                match.group("threshold"), type_spec
            )
    return thresholds


def _strip_modifiers(text: str) -> Tuple[str, bool, bool]:
    """Strip trailing `[]` and `?` in any order."""
    is_array = False
    is_optional = False
    while True:
        if text.endswith("?"):
            is_optional = True
            text = text[:-1].rstrip()
        elif text.endswith("[]"):
            is_array = True
            text = text[:-2].rstrip()
        else:
            return text, is_array, is_optional


def _parse_type_expression(
    name: str,
    expression: str,
) -> Tuple[List[str], Dict[str, float], Optional[float], Optional[str]]:
    """Return (types, member thresholds, field threshold, backref)."""
    location = name
    members = [p.strip() for p in expression.split("|")]
    if not members or any(not m for m in members):
        raise SchemaValidationError(f"{location}: empty type in {expression!r}")

    types: List[str] = []
    thresholds: Dict[str, float] = {}
    backref: Optional[str] = None

    for member in members:
        match = _MEMBER_RE.match(member)
        if not match:
            raise SchemaValidationError(f"{location}: cannot parse type {member!r}")
        types.append(match.group("type"))
        if match.group("threshold"):
            thresholds[match.group("type")] = parse_threshold(
                match.group("threshold"), location
            )
        if match.group("backref"):
            if len(members) > 1:
                raise SchemaValidationError(
                    f"{location}: backrefs are not supported on union types"
                )
            backref = match.group("backref")

    field_threshold = None
    if len(types) == 1:
        field_threshold = thresholds.pop(types[0], None)

    return types, thresholds, field_threshold, backref


def _relation_field(
    name: str,
    operator: RelationOperator,
    expression: str,
    prompt: Optional[str],
    is_array: bool,
    definition: str,
) -> ParsedField:
    expression, array_suffix, is_optional = _strip_modifiers(expression.strip())
    types, union_thresholds, threshold, backref = _parse_type_expression(name, expression)

    return ParsedField(
        name=name,
        type=types[0],
        is_array=is_array or array_suffix,
        is_optional=is_optional,
        is_relation=True,
        operator=operator,
        related_type=types[0],
        union_types=types if len(types) > 1 else [],
        union_thresholds=union_thresholds,
        backref=backref,
        threshold=threshold,
        prompt=prompt or None,
        definition=definition,
    )


def _is_relation_expression(text: str) -> bool:
    for member in text.split("|"):
        match = _MEMBER_RE.match(member.strip())
        if not match:
            return False
        type_name = match.group("type")
        if not _PASCAL_RE.match(type_name) or type_name.lower() in PRIMITIVE_TYPES:
            return False
    return True


def parse_field(name: str, definition: Any) -> ParsedField:
    """
    Parse one field definition.

    Args:
        name: Field name
        definition: Definition string, or a one-element list for arrays

    Returns:
        The normalized field descriptor

    Raises:
        SchemaValidationError: If the definition cannot be parsed
    """
    is_array = False

    if isinstance(definition, (list, tuple)):
        if len(definition) != 1 or not isinstance(definition[0], str):
            raise SchemaValidationError(
                f"{name}: array definitions must hold exactly one string"
            )
        is_array = True
        definition = definition[0]

    if isinstance(definition, Mapping):
        # Nested object literal, stored as a json scalar
        return ParsedField(name=name, type="json", is_array=is_array, definition=str(definition))

    if not isinstance(definition, str):
        raise SchemaValidationError(
            f"{name}: unsupported definition {definition!r}"
        )

    raw = definition
    text = definition.strip()
    if not text:
        raise SchemaValidationError(f"{name}: empty definition")

    if text.startswith("[") and text.endswith("]"):
        is_array = True
        text = text[1:-1].strip()

    for operator in OPERATOR_PARSE_ORDER:
        index = text.find(operator.value)
        if index != -1:
            prompt = text[:index].strip()
            expression = text[index + len(operator.value):]
            return _relation_field(name, operator, expression, prompt, is_array, raw)

    bare, array_suffix, is_optional = _strip_modifiers(text)
    has_type_token = bool(_TYPE_TOKEN_RE.match(bare))

    if has_type_token and bare in PRIMITIVE_TYPES:
        return ParsedField(
            name=name,
            type=bare,
            is_array=is_array or array_suffix,
            is_optional=is_optional,
            definition=raw,
        )

    if has_type_token and _is_relation_expression(bare):
        # No operator: a plain reference is an owned, forward-exact relation
        return _relation_field(
            name, RelationOperator.FORWARD_EXACT, text, None, is_array, raw
        )

    if any(ch in text for ch in (" ", "/", "?")):
        return ParsedField(
            name=name,
            type="prompt",
            is_array=is_array,
            prompt=text,
            definition=raw,
        )

    # Unknown lower-case token: keep as a named scalar type
    return ParsedField(
        name=name,
        type=bare,
        is_array=is_array or array_suffix,
        is_optional=is_optional,
        definition=raw,
    )


# =============================================================================
# Entity and schema parsing
# =============================================================================

def parse_entity(name: str, raw: Mapping[str, Any]) -> ParsedEntity:
    """Parse one entity definition, including `$` directives."""
    entity = ParsedEntity(name=name)

    for key, value in raw.items():
        if key.startswith("$"):
            _apply_directive(entity, key, value)
            continue
        entity.fields[key] = parse_field(key, value)

    return entity


def _apply_directive(entity: ParsedEntity, key: str, value: Any) -> None:
    location = f"{entity.name}.{key}"

    if key == "$fuzzyThreshold":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SchemaValidationError(f"{location}: must be a number")
        entity.fuzzy_threshold = parse_threshold(str(value), location)
    elif key == "$instructions":
        entity.instructions = str(value)
    elif key == "$context":
        if isinstance(value, str):
            value = [value]
        entity.context_fields = [str(v) for v in value]
    elif key == "$seed":
        entity.seed = str(value)
    else:
        entity.metadata[key] = value


def validate_schema(schema: ParsedSchema) -> ValidationResult:
    """
    Check that every relation points at a declared type.

    Union members that do not exist are dropped with a warning as long as
    one member remains.
    """
    result = ValidationResult()

    for entity in schema.entities.values():
        for parsed in entity.fields.values():
            if not parsed.is_relation:
                continue
            location = f"{entity.name}.{parsed.name}"

            if parsed.is_union:
                known = [t for t in parsed.union_types if t in schema]
                missing = [t for t in parsed.union_types if t not in schema]
                if not known:
                    result.add_error(
                        location,
                        f"none of the union types {parsed.union_types} are defined",
                    )
                    continue
                if missing:
                    result.add_warning(location, f"dropping undefined union types {missing}")
                    parsed.union_types = known
                    parsed.union_thresholds = {
                        t: v for t, v in parsed.union_thresholds.items() if t in known
                    }
                    parsed.related_type = known[0]
                    parsed.type = known[0]
                    if len(known) == 1:
                        parsed.threshold = parsed.union_thresholds.pop(known[0], parsed.threshold)
                        parsed.union_types = []
            elif parsed.related_type not in schema:
                result.add_error(
                    location,
                    f"references undefined type '{parsed.related_type}'",
                )

    for warning in result.warnings:
        logger.warning("Schema warning", location=warning.location, message=warning.message)

    return result


def _points_back(candidate: ParsedField, source_type: str) -> bool:
    return (
        candidate.is_relation
        and candidate.operator is not None
        and candidate.operator.is_backward
        and source_type in candidate.target_types
    )


def _inverse_field(source_type: str, source: ParsedField, name: str) -> ParsedField:
    return ParsedField(
        name=name,
        type=source_type,
        is_array=not source.is_array,
        is_optional=True,
        is_relation=True,
        operator=RelationOperator.BACKWARD_EXACT,
        related_type=source_type,
        backref=source.name,
        derived=True,
    )


def derive_backrefs(schema: ParsedSchema) -> ValidationResult:
    """
    Attach inverse fields for forward relations.

    Explicit `Type.backref` names must not collide; auto-derived names that
    would collide are dropped with a warning.
    """
    result = ValidationResult()
    claimed: Dict[Tuple[str, str], str] = {}
    paired: set = set()

    # Explicit backrefs first so they win over derived names
    for entity in list(schema.entities.values()):
        for parsed in list(entity.fields.values()):
            if not (parsed.is_relation and parsed.operator.is_forward and parsed.backref):
                continue
            target = schema.get(parsed.related_type)
            if target is None:
                continue
            location = f"{entity.name}.{parsed.name}"
            key = (target.name, parsed.backref)

            if key in claimed:
                result.add_error(
                    location,
                    f"backref '{target.name}.{parsed.backref}' already claimed by {claimed[key]}",
                )
                continue

            existing = target.fields.get(parsed.backref)
            if existing is not None and not existing.derived:
                if not (existing.is_relation and entity.name in existing.target_types):
                    result.add_error(
                        location,
                        f"backref '{target.name}.{parsed.backref}' collides with a declared field",
                    )
                    continue
                paired.add((target.name, existing.name))
            else:
                target.fields[parsed.backref] = _inverse_field(entity.name, parsed, parsed.backref)

            claimed[key] = location

    # Derived backrefs for the remaining forward relations
    for entity in list(schema.entities.values()):
        for parsed in list(entity.fields.values()):
            if not (parsed.is_relation and parsed.operator.is_forward):
                continue
            if parsed.backref or parsed.is_union or parsed.derived:
                continue
            target = schema.get(parsed.related_type)
            if target is None:
                continue

            declared = next(
                (
                    f for f in target.fields.values()
                    if not f.derived
                    and _points_back(f, entity.name)
                    and (target.name, f.name) not in paired
                ),
                None,
            )
            if declared is not None:
                parsed.backref = declared.name
                if declared.backref is None:
                    declared.backref = parsed.name
                paired.add((target.name, declared.name))
                claimed[(target.name, declared.name)] = f"{entity.name}.{parsed.name}"
                continue

            name = derive_backref_name(entity.name, parsed.name, inverse_is_array=not parsed.is_array)
            key = (target.name, name)
            if name in target.fields or key in claimed:
                result.add_warning(
                    f"{entity.name}.{parsed.name}",
                    f"derived backref '{target.name}.{name}' would collide; skipped",
                )
                continue

            target.fields[name] = _inverse_field(entity.name, parsed, name)
            parsed.backref = name
            claimed[key] = f"{entity.name}.{parsed.name}"

    for warning in result.warnings:
        logger.warning("Backref skipped", location=warning.location, message=warning.message)

    return result


def parse_schema(raw: Union[RawSchema, ParsedSchema]) -> ParsedSchema:
    """
    Parse and validate a raw schema.

    Args:
        raw: Mapping of entity name to field definitions, or an already
            parsed schema (returned unchanged)

    Returns:
        The parsed schema with backrefs attached

    Raises:
        SchemaValidationError: On unparseable definitions, undefined related
            types or colliding explicit backrefs
    """
    if isinstance(raw, ParsedSchema):
        return raw

    if not isinstance(raw, Mapping):
        raise SchemaValidationError("schema must be a mapping of entity definitions")

    schema = ParsedSchema()
    problems: List[str] = []

    for name, definition in raw.items():
        if not isinstance(definition, Mapping):
            problems.append(f"{name}: entity definition must be a mapping")
            continue
        try:
            schema.entities[name] = parse_entity(name, definition)
        except SchemaValidationError as e:
            problems.extend(f"{name}.{err}" for err in e.errors)

    if problems:
        raise SchemaValidationError(problems)

    validate_schema(schema).raise_if_invalid()
    derive_backrefs(schema).raise_if_invalid()

    logger.debug("Schema parsed", entities=schema.type_names)
    return schema
