"""
Repair engine for requirement documents.

Brings a document back in line with the schema without losing data:
defaults fill missing fields, invalid phase numbers are dropped, duplicates
collapsed, a verification gate appended where missing. Anything that cannot
be fixed deterministically is left as-is and reported. Every action is
logged as a ChangeEntry.

Repairs are a fixed point: repairing an already-repaired document yields
no changes.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from storyloop.lib.atomic import commit_json
from storyloop.lib.constants import (
    DEFAULT_VERIFICATION_GATE,
    STATUS_COMPLETED,
    STATUS_PENDING,
    summary_file_name,
)
from storyloop.lib.types import ChangeEntry, Violation
from storyloop.lib.validate import (
    has_path_separator,
    is_valid_phase,
    is_verification_gate,
    status_diverges,
    validate_document,
)

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class RepairResult:
    """Outcome of a repair pass.

    `document` is None in dry-run mode; `changes` is always populated.
    `errors` lists violations that remain after repair.
    """
    success: bool
    document: dict | None
    changes: list[ChangeEntry] = field(default_factory=list)
    errors: list[Violation] = field(default_factory=list)
    backup_path: Path | None = None  # Set by repair_file when a commit happened


class _Repairer:
    """Applies fixes to a private copy of a document, recording each one."""

    def __init__(self, verification_gate: str):
        self.verification_gate = verification_gate
        self.changes: list[ChangeEntry] = []

    def record(self, field_path: str, old: Any, new: Any, reason: str) -> None:
        self.changes.append(ChangeEntry(
            field=field_path,
            old=None if old is _MISSING else copy.deepcopy(old),
            new=copy.deepcopy(new),
            reason=reason,
        ))

    def default(self, record: dict, key: str, value: Any, prefix: str = "") -> None:
        """Populate a missing (or null) field with its default."""
        current = record.get(key, _MISSING)
        if current is _MISSING or current is None:
            record[key] = value
            self.record(f"{prefix}{key}", current, value, "missing field set to default")

    # -- document level -------------------------------------------------

    def repair_document(self, doc: dict) -> None:
        self.default(doc, "description", "")
        self.default(doc, "related_documents", [])
        self.default(doc, "stories", [])
        self.repair_related(doc)
        self.repair_summary(doc)

        stories = doc["stories"]
        if isinstance(stories, list):
            for i, story in enumerate(stories):
                if isinstance(story, dict):
                    self.repair_story(story, i)

    def repair_related(self, doc: dict) -> None:
        refs = doc["related_documents"]
        if isinstance(refs, str) and refs:
            doc["related_documents"] = [refs]
            self.record("related_documents", refs, [refs], "single reference wrapped in a list")
            return
        if not isinstance(refs, list):
            return

        kept = [r for r in refs if isinstance(r, str) and r]
        if len(kept) != len(refs):
            self.record("related_documents", refs, kept, "non-path references dropped")
        deduped = list(dict.fromkeys(kept))
        if len(deduped) != len(kept):
            self.record("related_documents", kept, deduped, "duplicate references collapsed")
        doc["related_documents"] = deduped

    def repair_summary(self, doc: dict) -> None:
        feature = doc.get("feature")
        if not isinstance(feature, str) or not feature or has_path_separator(feature):
            return  # No usable identity to derive a summary path from

        expected = summary_file_name(feature)
        current = doc.get("summary_file", _MISSING)
        if current is _MISSING or current is None or current == "":
            doc["summary_file"] = expected
            self.record("summary_file", current, expected, "missing field set to default")
        elif not isinstance(current, str):
            doc["summary_file"] = expected
            self.record("summary_file", current, expected, "non-string summary path replaced")
        elif Path(current).name != expected:
            parent = Path(current).parent
            new = expected if str(parent) in ("", ".") else (parent / expected).as_posix()
            doc["summary_file"] = new
            self.record("summary_file", current, new, "summary artifact must refer to this document")

    # -- story level ----------------------------------------------------

    def repair_story(self, story: dict, index: int) -> None:
        prefix = f"stories[{index}]."
        for key in ("title", "description", "notes"):
            self.default(story, key, "", prefix)
        self.default(story, "acceptance_criteria", [], prefix)
        self.default(story, "phases", [], prefix)
        self.default(story, "capabilities", {}, prefix)
        self.default(story, "priority", index + 1, prefix)
        self.default(story, "passes", False, prefix)

        self.repair_criteria(story, prefix)
        self.repair_phases(story, prefix)
        self.repair_capabilities(story, prefix)
        self.repair_priority(story, prefix)
        self.repair_passes(story, prefix)
        self.repair_status(story, prefix)

    def repair_criteria(self, story: dict, prefix: str) -> None:
        field_path = f"{prefix}acceptance_criteria"
        criteria = story["acceptance_criteria"]
        if isinstance(criteria, str):
            new = [criteria] if criteria else []
            story["acceptance_criteria"] = new
            self.record(field_path, criteria, new, "single criterion wrapped in a list")
            criteria = new
        if not isinstance(criteria, list):
            return

        if any(not isinstance(c, str) for c in criteria):
            new = [c if isinstance(c, str) else json.dumps(c) for c in criteria if c is not None]
            self.record(field_path, criteria, new, "non-text criteria converted to text")
            story["acceptance_criteria"] = criteria = new

        if not any(is_verification_gate(c) for c in criteria):
            new = criteria + [self.verification_gate]
            self.record(field_path, criteria, new, "verification gate appended")
            story["acceptance_criteria"] = new

    def repair_phases(self, story: dict, prefix: str) -> None:
        field_path = f"{prefix}phases"
        phases = story["phases"]
        if not isinstance(phases, list):
            return

        coerced = [_coerce_int(p) for p in phases]
        if coerced != phases or any(type(a) is not type(b) for a, b in zip(coerced, phases)):
            self.record(field_path, phases, coerced, "numeric phase values converted to integers")
            phases = coerced

        valid = [p for p in phases if is_valid_phase(p)]
        if len(valid) != len(phases):
            dropped = [p for p in phases if not is_valid_phase(p)]
            self.record(field_path, phases, valid, f"invalid phase values dropped: {dropped}")
            phases = valid

        unique = list(dict.fromkeys(phases))
        if len(unique) != len(phases):
            self.record(field_path, phases, unique, "duplicate phases collapsed")
            phases = unique

        story["phases"] = phases

    def repair_capabilities(self, story: dict, prefix: str) -> None:
        caps = story["capabilities"]
        phases = story["phases"]
        if not isinstance(caps, dict) or not isinstance(phases, list):
            return

        declared = {p for p in phases if is_valid_phase(p)}
        for key in list(caps):
            field_path = f"{prefix}capabilities.{key}"
            value = caps[key]
            phase = int(key) if isinstance(key, str) and key.isdigit() else None
            if phase not in declared:
                del caps[key]
                self.record(field_path, value, None, f"phase {key} is not required by the story")
                continue
            if isinstance(value, str):
                caps[key] = [value]
                self.record(field_path, value, [value], "single capability wrapped in a list")

    def repair_priority(self, story: dict, prefix: str) -> None:
        priority = story["priority"]
        if isinstance(priority, bool):
            return
        coerced = _coerce_int(priority)
        if isinstance(coerced, int) and not isinstance(priority, int):
            story["priority"] = coerced
            self.record(f"{prefix}priority", priority, coerced, "priority converted to integer")

    def repair_passes(self, story: dict, prefix: str) -> None:
        passes = story["passes"]
        if isinstance(passes, bool):
            return
        if isinstance(passes, str) and passes.strip().lower() in ("true", "false"):
            new = passes.strip().lower() == "true"
            story["passes"] = new
            self.record(f"{prefix}passes", passes, new, "completion flag text converted to boolean")
        # Anything else is ambiguous: left untouched, reported by validation

    def repair_status(self, story: dict, prefix: str) -> None:
        status = story.get("status")
        if status_diverges(status, story["passes"]):
            new = STATUS_COMPLETED if story["passes"] else STATUS_PENDING
            story["status"] = new
            self.record(f"{prefix}status", status, new, "status text reconciled with completion flag")


def _coerce_int(value: Any) -> Any:
    """Integral floats and digit strings become ints; everything else unchanged."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


def repair_document(
    document: Any,
    dry_run: bool = False,
    verification_gate: str = DEFAULT_VERIFICATION_GATE,
) -> RepairResult:
    """Repair a document.

    The input is never mutated. In dry-run mode the returned document is
    None but the change log is the same as for a real run.
    """
    if not isinstance(document, dict):
        errors = validate_document(document).errors
        return RepairResult(success=False, document=None, errors=errors)

    repaired = copy.deepcopy(document)
    repairer = _Repairer(verification_gate)
    repairer.repair_document(repaired)

    errors = validate_document(repaired).errors
    for change in repairer.changes:
        logger.debug(f"[REPAIR] {change.field}: {change.old!r} -> {change.new!r} ({change.reason})")
    for error in errors:
        logger.warning(f"[REPAIR] unrepairable {error.field}: {error.message}")

    return RepairResult(
        success=not errors,
        document=None if dry_run else repaired,
        changes=repairer.changes,
        errors=errors,
    )


def repair_file(
    path: Path,
    owner: str | None = None,
    dry_run: bool = False,
    verification_gate: str = DEFAULT_VERIFICATION_GATE,
) -> RepairResult:
    """Repair a document file in place.

    The caller must hold the document lock; pass its owner token so the
    writer can verify it. Nothing is written in dry-run mode or when there
    are no changes.

    Raises:
        WriteFailure: If the commit of the repaired document failed
        OSError: If the file cannot be read
    """
    path = Path(path)
    try:
        document = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        error = Violation(code="invalid_json", field="(root)", message=f"not valid JSON: {e}")
        return RepairResult(success=False, document=None, errors=[error])

    result = repair_document(document, dry_run=dry_run, verification_gate=verification_gate)
    if dry_run or not result.changes or result.document is None:
        return result

    committed = commit_json(path, result.document, owner=owner)
    if not committed.success:
        raise committed.error
    logger.info(f"[REPAIR] {path}: applied {len(result.changes)} change(s)")
    result.backup_path = committed.backup_path
    return result
