"""
Schema validation for the story store.

Documents are checked in two layers: a JSON Schema for field presence and
types, then semantic rules the schema cannot express (unique story ids,
phase enumeration, capability references, verification gates, completion
flag, summary path). Document validation never raises for data-shape
problems; it returns every violation so a single pass can drive repair.
"""

import json
import re
from pathlib import Path
from typing import Any

import jsonschema

from .constants import (
    COMPLETED_STATUS_WORDS,
    PHASES,
    VERIFICATION_GATE_PATTERN,
    summary_file_name,
)
from .types import ValidationResult, Violation


class ValidationError(Exception):
    """Schema validation of an internal record failed."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


class StructuralError(Exception):
    """A document has violations that repair could not resolve."""

    def __init__(self, violations: list[Violation], source: Path | str | None = None):
        self.violations = violations
        self.source = source
        details = "; ".join(str(v) for v in violations)
        where = f" in {source}" if source else ""
        super().__init__(f"Unrepairable document{where}: {details}")


DOCUMENT_SCHEMA = "document"

# Cache loaded schemas
_schema_cache: dict[str, dict] = {}

_REQUIRED_RE = re.compile(r"'(.+)' is a required property")


def _get_schemas_dir() -> Path:
    """Get path to schemas directory."""
    return Path(__file__).parent.parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def format_path(parts) -> str:
    """Render a JSON path as ``stories[0].phases``. Empty path is ``(root)``."""
    out = ""
    for part in parts:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out or "(root)"


def validate(data: dict, schema_name: str) -> None:
    """
    Validate data against named schema.

    Args:
        data: Dictionary to validate
        schema_name: Schema name (e.g., "lock", "document")

    Raises:
        ValidationError: If validation fails
    """
    schema = _load_schema(schema_name)

    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as e:
        path = format_path(e.absolute_path)
        raise ValidationError(schema_name, e.message, path) from None


def validate_file(filepath: Path, schema_name: str) -> dict:
    """
    Load JSON file and validate against schema.

    Raises:
        ValidationError: If file invalid or doesn't match schema
    """
    if not filepath.exists():
        raise ValidationError(schema_name, f"File not found: {filepath}")

    try:
        data = json.loads(filepath.read_text())
    except json.JSONDecodeError as e:
        raise ValidationError(schema_name, f"Invalid JSON in {filepath}: {e}") from None

    validate(data, schema_name)
    return data


def is_valid_phase(value: Any) -> bool:
    """True for an int (not bool) drawn from the phase enumeration."""
    return isinstance(value, int) and not isinstance(value, bool) and value in PHASES


def is_verification_gate(criterion: Any) -> bool:
    return isinstance(criterion, str) and bool(VERIFICATION_GATE_PATTERN.search(criterion))


def status_diverges(status: Any, passes: Any) -> bool:
    """True when informational status text contradicts the completion flag."""
    if not isinstance(status, str) or not isinstance(passes, bool):
        return False
    claims_complete = status.strip().lower() in COMPLETED_STATUS_WORDS
    return claims_complete != passes


def _story_id(story: Any) -> str | None:
    if isinstance(story, dict) and isinstance(story.get("id"), str):
        return story["id"]
    return None


def _path_sort_key(parts) -> list[tuple]:
    # Array indices sort numerically, keys alphabetically
    return [(0, p, "") if isinstance(p, int) else (1, 0, str(p)) for p in parts]


def _schema_violations(document: Any) -> list[Violation]:
    validator = jsonschema.Draft7Validator(_load_schema(DOCUMENT_SCHEMA))
    violations = []
    errors = sorted(validator.iter_errors(document), key=lambda e: _path_sort_key(e.absolute_path))
    for e in errors:
        parts = list(e.absolute_path)
        story_id = None
        if len(parts) >= 2 and parts[0] == "stories" and isinstance(parts[1], int):
            story_id = _story_id(document["stories"][parts[1]])
            # Phase values and the completion flag get their own semantic checks
            if len(parts) >= 3 and parts[2] in ("phases", "passes") and e.validator != "required":
                continue

        if e.validator == "required":
            match = _REQUIRED_RE.search(e.message)
            missing = match.group(1) if match else e.message
            violations.append(Violation(
                code="missing_field",
                field=format_path(parts + [missing]),
                message=f"required field '{missing}' is missing",
                story_id=story_id,
            ))
        elif e.validator == "type":
            violations.append(Violation(
                code="wrong_type",
                field=format_path(parts),
                message=f"expected {e.validator_value}, got {type(e.instance).__name__}",
                story_id=story_id,
            ))
        elif e.validator == "minLength":
            violations.append(Violation(
                code="empty_field",
                field=format_path(parts),
                message="must not be empty",
                story_id=story_id,
            ))
        else:
            violations.append(Violation(
                code="schema",
                field=format_path(parts),
                message=e.message,
                story_id=story_id,
            ))
    return violations


def _story_violations(document: dict) -> list[Violation]:
    stories = document.get("stories")
    if not isinstance(stories, list):
        return []

    violations = []

    # Unique identities
    seen: dict[str, int] = {}
    for i, story in enumerate(stories):
        sid = _story_id(story)
        if sid is None:
            continue
        if sid in seen:
            violations.append(Violation(
                code="duplicate_story_id",
                field=f"stories[{i}].id",
                message=f"story id '{sid}' already used by stories[{seen[sid]}]",
                story_id=sid,
            ))
        else:
            seen[sid] = i

    # Phase enumeration and duplicates
    for i, story in enumerate(stories):
        if not isinstance(story, dict) or "phases" not in story:
            continue
        sid = _story_id(story)
        phases = story["phases"]
        field = f"stories[{i}].phases"
        if not isinstance(phases, list):
            violations.append(Violation("wrong_type", field, "expected array of phase numbers", sid))
            continue
        seen_phases = set()
        for j, value in enumerate(phases):
            if not is_valid_phase(value):
                violations.append(Violation(
                    code="invalid_phase",
                    field=f"{field}[{j}]",
                    message=f"{value!r} is not a phase in {PHASES[0]}..{PHASES[-1]}",
                    story_id=sid,
                ))
            elif value in seen_phases:
                violations.append(Violation(
                    code="duplicate_phase",
                    field=f"{field}[{j}]",
                    message=f"phase {value} listed more than once",
                    story_id=sid,
                ))
            else:
                seen_phases.add(value)

    # Capability mapping only references declared phases
    for i, story in enumerate(stories):
        if not isinstance(story, dict):
            continue
        caps = story.get("capabilities")
        phases = story.get("phases")
        if not isinstance(caps, dict) or not isinstance(phases, list):
            continue
        declared = {p for p in phases if is_valid_phase(p)}
        for key in caps:
            phase = int(key) if isinstance(key, str) and key.isdigit() else None
            if phase not in declared:
                violations.append(Violation(
                    code="orphan_capability",
                    field=f"stories[{i}].capabilities.{key}",
                    message=f"capabilities given for phase '{key}' which the story does not require",
                    story_id=_story_id(story),
                ))

    # Verification gate
    for i, story in enumerate(stories):
        if not isinstance(story, dict):
            continue
        criteria = story.get("acceptance_criteria")
        if isinstance(criteria, list) and not any(is_verification_gate(c) for c in criteria):
            violations.append(Violation(
                code="missing_verification_gate",
                field=f"stories[{i}].acceptance_criteria",
                message="no verification gate (typecheck/build) criterion",
                story_id=_story_id(story),
            ))

    # Completion flag is strictly boolean
    for i, story in enumerate(stories):
        if isinstance(story, dict) and "passes" in story and not isinstance(story["passes"], bool):
            violations.append(Violation(
                code="non_boolean_completion",
                field=f"stories[{i}].passes",
                message=f"completion flag must be true or false, got {story['passes']!r}",
                story_id=_story_id(story),
            ))

    # Informational status must agree with the flag
    for i, story in enumerate(stories):
        if isinstance(story, dict) and status_diverges(story.get("status"), story.get("passes")):
            violations.append(Violation(
                code="status_divergence",
                field=f"stories[{i}].status",
                message=f"status {story['status']!r} contradicts passes={story['passes']}",
                story_id=_story_id(story),
            ))

    return violations


def has_path_separator(feature: Any) -> bool:
    """A feature identity names files, so it must be a single path component."""
    return isinstance(feature, str) and ("/" in feature or "\\" in feature)


def _feature_violations(document: dict) -> list[Violation]:
    feature = document.get("feature")
    if has_path_separator(feature):
        return [Violation(
            code="invalid_feature",
            field="feature",
            message=f"feature {feature!r} must not contain a path separator",
        )]
    return []


def _summary_violations(document: dict) -> list[Violation]:
    feature = document.get("feature")
    summary = document.get("summary_file")
    if not isinstance(feature, str) or not feature or not isinstance(summary, str) or not summary:
        return []
    if has_path_separator(feature):
        return []
    expected = summary_file_name(feature)
    if Path(summary).name != expected:
        return [Violation(
            code="summary_not_self",
            field="summary_file",
            message=f"summary artifact {summary!r} does not belong to '{feature}' (expected {expected})",
        )]
    return []


def validate_document(document: Any) -> ValidationResult:
    """Validate a requirement document.

    Returns every violation found, in check order. Never mutates the input.
    """
    if not isinstance(document, dict):
        return ValidationResult(valid=False, errors=[Violation(
            code="wrong_type",
            field="(root)",
            message=f"expected object, got {type(document).__name__}",
        )])

    errors = _schema_violations(document)
    errors.extend(_story_violations(document))
    errors.extend(_feature_violations(document))
    errors.extend(_summary_violations(document))
    return ValidationResult(valid=not errors, errors=errors)


def validate_before_write(document: dict, filepath: Path) -> None:
    """
    Validate a document before writing it. Ensures we never write invalid data.

    Raises:
        StructuralError: If the document has any violation
    """
    result = validate_document(document)
    if not result.valid:
        raise StructuralError(result.errors, filepath)
