"""
Requirement document operations.

Documents are stored as JSON files in a docs directory:
  <docs_dir>/prd-<feature>.json
with a derived markdown summary next to them:
  <docs_dir>/summary-<feature>.md
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from storyloop.lib.atomic import commit
from storyloop.lib.constants import DEFAULT_DOC_GLOB, DOC_PREFIX, PHASE_NAMES
from storyloop.pm.models import Document, Story

logger = logging.getLogger(__name__)


@dataclass
class CollectionScan:
    """Documents found in a docs directory, in selection order."""
    documents: list[Document] = field(default_factory=list)
    skipped: dict[Path, str] = field(default_factory=dict)  # path -> reason


def get_document_path(docs_dir: Path, feature: str) -> Path:
    """Conventional path of a feature's document."""
    return docs_dir / f"{DOC_PREFIX}{feature}.json"


def read_document_data(path: Path) -> dict:
    """Read and parse a document file.

    Raises:
        OSError: If the file cannot be read
        json.JSONDecodeError: If it is not JSON
        ValueError: If the top level is not an object
    """
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be an object, got {type(data).__name__}")
    return data


def load_document(path: Path) -> Optional[Document]:
    """Load a document, or None (with a warning) if it cannot be parsed."""
    path = Path(path)
    if not path.exists():
        return None

    try:
        return Document.from_dict(path, read_document_data(path))
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning(f"Failed to load document {path}: {e}")
        return None


def document_sort_key(document: Document) -> tuple[str, str]:
    """Deterministic collection order: identity, then file name."""
    return (document.feature, document.path.name)


def scan_collection(docs_dir: Path, pattern: str = DEFAULT_DOC_GLOB) -> CollectionScan:
    """Enumerate all documents in docs_dir matching the naming convention.

    Files that are not valid JSON objects are skipped and listed in the
    result rather than aborting the scan.
    """
    scan = CollectionScan()
    if not docs_dir.exists():
        return scan

    for path in sorted(docs_dir.glob(pattern)):
        if not path.is_file():
            continue
        try:
            data = read_document_data(path)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Skipping unreadable document {path}: {e}")
            scan.skipped[path] = str(e)
            continue
        scan.documents.append(Document.from_dict(path, data))

    scan.documents.sort(key=document_sort_key)
    return scan


def list_documents(docs_dir: Path, pattern: str = DEFAULT_DOC_GLOB) -> list[Document]:
    """List all readable documents in selection order."""
    return scan_collection(docs_dir, pattern).documents


def find_document(docs_dir: Path, feature: str, pattern: str = DEFAULT_DOC_GLOB) -> Optional[Document]:
    """Find a document by feature identity."""
    for document in list_documents(docs_dir, pattern):
        if document.feature == feature:
            return document
    return None


def set_story_passes(data: dict, story_id: str, passes: bool, status: str | None = None) -> dict:
    """Return a copy of document data with one story's completion flag set.

    Builds the full new document in memory; the caller commits it.

    Raises:
        KeyError: If no story has that id
    """
    updated = json.loads(json.dumps(data))
    for entry in updated.get("stories", []):
        if isinstance(entry, dict) and entry.get("id") == story_id:
            entry["passes"] = passes
            if status is not None:
                entry["status"] = status
            return updated
    raise KeyError(story_id)


def render_summary_markdown(document: Document) -> str:
    """Render a document as human-readable markdown."""
    done = sum(1 for s in document.stories if s.is_complete)
    lines = [
        f"# {document.feature}",
        "",
        f"**Progress:** {done}/{len(document.stories)} stories complete",
        f"**Source:** {document.path.name}",
        "",
    ]

    if document.description:
        lines.extend([document.description, ""])

    if document.related_documents:
        lines.extend(["## Related Documents", ""])
        for ref in document.related_documents:
            lines.append(f"- {ref}")
        lines.append("")

    lines.extend(["## Stories", ""])
    for story in sorted(document.stories, key=lambda s: s.priority):
        lines.extend(_render_story(story))

    return "\n".join(lines)


def _render_story(story: Story) -> list[str]:
    mark = "x" if story.is_complete else " "
    lines = [
        f"### [{mark}] {story.id}: {story.title}",
        "",
        f"**Priority:** {story.priority}",
    ]
    if story.phases:
        lines.append("**Phases:**")
        for phase in story.phases:
            caps = story.capabilities_for(phase)
            suffix = f" ({', '.join(caps)})" if caps else ""
            lines.append(f"- {phase}. {PHASE_NAMES[phase]}{suffix}")
    lines.append("")

    if story.acceptance_criteria:
        for ac in story.acceptance_criteria:
            lines.append(f"- [{mark}] {ac}")
        lines.append("")

    if story.notes:
        lines.extend([story.notes, ""])

    return lines


def write_summary_markdown(document: Document) -> Path:
    """Regenerate the document's summary artifact.

    Raises:
        WriteFailure: If the summary could not be written
    """
    path = document.summary_path
    # Derived data: no backup
    result = commit(path, render_summary_markdown(document), backup=False)
    if not result.success:
        raise result.error
    return path
