"""
Shared data types for the story store.

This module contains dataclasses used by both the validator and the repair
engine to avoid circular imports.
"""

from dataclasses import dataclass
from typing import Any


@dataclass
class Violation:
    """A single structural problem found in a document.

    `field` is a dotted path such as ``stories[0].phases``.
    """
    code: str  # "missing_field", "invalid_phase", "duplicate_story_id", ...
    field: str
    message: str
    story_id: str | None = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass
class ChangeEntry:
    """One repair action applied (or proposed, in dry-run) to a document."""
    field: str
    old: Any
    new: Any
    reason: str


@dataclass
class ValidationResult:
    """Outcome of validating a document. Lists every violation found."""
    valid: bool
    errors: list[Violation]
