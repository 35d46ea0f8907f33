"""
AIDB Errors

Fatal schema errors are raised before any side effect. Per-field failures
are caught by the pipeline and recorded on the resolved entity.
"""

from __future__ import annotations

from typing import Iterable, List, Optional


class AIDBError(Exception):
    """Base class for all engine errors."""


class SchemaValidationError(AIDBError):
    """The schema (or a reference to it) is invalid."""

    def __init__(self, errors: Iterable[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid schema")


class SchemaCycleError(AIDBError):
    """A cycle exists purely among required forward-exact relations."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            "Circular forward-exact dependency: " + " -> ".join(self.cycle)
        )


class DraftStateError(AIDBError):
    """resolve() was given something that is not a draft."""


class FieldResolutionError(AIDBError):
    """A single relationship or scalar field could not be resolved."""

    def __init__(self, field: str, message: str, cause: Optional[BaseException] = None):
        self.field = field
        self.message = message
        self.cause = cause
        super().__init__(f"{field}: {message}")


class GenerationError(AIDBError):
    """AI value generation failed and fallback was disabled."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Generation failed for {field}: {message}")


class GenerationFallbackWarning(UserWarning):
    """AI generation failed and a placeholder value was substituted."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Placeholder substituted for {field}: {reason}")
