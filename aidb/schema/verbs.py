"""
AIDB Verb Derivation

Derives inverse field names for auto-generated backrefs:
- Known verbs map to their passive form (manages -> managedBy)
- Role-like field names map to verbs first (manager -> manages)
- Everything else falls back to the source type name
"""

from __future__ import annotations

import re
from typing import Dict


FORWARD_TO_REVERSE: Dict[str, str] = {
    "manages": "managedBy",
    "owns": "ownedBy",
    "creates": "createdBy",
    "reviews": "reviewedBy",
    "employs": "employedBy",
    "contains": "containedBy",
    "assigns": "assignedBy",
}

REVERSE_TO_FORWARD: Dict[str, str] = {v: k for k, v in FORWARD_TO_REVERSE.items()}

BIDIRECTIONAL_PAIRS: Dict[str, str] = {
    "parentOf": "childOf",
    "childOf": "parentOf",
}

FIELD_TO_VERB: Dict[str, str] = {
    "manager": "manages",
    "owner": "owns",
    "creator": "creates",
    "reviewer": "reviews",
    "employer": "employs",
    "assignee": "assigns",
}


def derive_reverse_verb(verb: str) -> str:
    """Return the inverse of a relationship verb."""
    if verb in BIDIRECTIONAL_PAIRS:
        return BIDIRECTIONAL_PAIRS[verb]
    if verb in FORWARD_TO_REVERSE:
        return FORWARD_TO_REVERSE[verb]
    if verb in REVERSE_TO_FORWARD:
        return REVERSE_TO_FORWARD[verb]

    if verb.endswith("By") and len(verb) > 2:
        return verb[:-2]

    if verb.endswith("s") and len(verb) > 2:
        base = verb[:-1]
        return f"{base}dBy" if base.endswith("e") else f"{base}edBy"

    return f"{verb}By"


def field_name_to_verb(field_name: str) -> str:
    return FIELD_TO_VERB.get(field_name, field_name)


def is_known_verb(name: str) -> bool:
    """True when the name reads as a relationship verb we can invert."""
    return (
        name in FORWARD_TO_REVERSE
        or name in REVERSE_TO_FORWARD
        or name in BIDIRECTIONAL_PAIRS
        or name in FIELD_TO_VERB
    )


# =============================================================================
# Naming helpers
# =============================================================================

def lower_camel(name: str) -> str:
    """PascalCase -> lowerCamel (BlogPost -> blogPost)."""
    if not name:
        return name
    match = re.match(r"^[A-Z]+(?=[A-Z][a-z]|$)", name)
    if match and len(match.group(0)) > 1:
        head = match.group(0)
        return head.lower() + name[len(head):]
    return name[0].lower() + name[1:]


def pluralize(word: str) -> str:
    """English pluralization good enough for field names."""
    if not word:
        return word
    lower = word.lower()
    if lower.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    if lower.endswith("y") and len(word) > 1 and lower[-2] not in "aeiou":
        return word[:-1] + "ies"
    return word + "s"


def derive_backref_name(source_type: str, field_name: str, inverse_is_array: bool) -> str:
    """
    Name of the auto-derived inverse field on the related type.

    Verb-like field names invert to their passive form; anything else uses
    the source type, pluralized when the inverse side holds many.
    """
    if is_known_verb(field_name):
        return derive_reverse_verb(field_name_to_verb(field_name))

    base = lower_camel(source_type)
    return pluralize(base) if inverse_is_array else base
