"""
Data models for requirement documents.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from storyloop.lib.constants import summary_file_name
from storyloop.lib.validate import is_valid_phase


@dataclass
class Story:
    """A unit of work inside a requirement document.

    `passes` is the only completion signal; `status` is informational text.
    """
    id: str                                    # US-001
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    phases: list[int] = field(default_factory=list)
    capabilities: dict[int, list[str]] = field(default_factory=dict)  # phase -> capability ids
    priority: int = 0                          # Lower runs earlier
    passes: bool = False
    status: Optional[str] = None
    notes: str = ""

    @property
    def is_complete(self) -> bool:
        return self.passes is True

    def capabilities_for(self, phase: int) -> list[str]:
        return list(self.capabilities.get(phase, []))

    @classmethod
    def from_dict(cls, data: dict) -> "Story":
        """Build a Story from a document entry, tolerating malformed fields."""
        caps = {}
        raw_caps = data.get("capabilities")
        if isinstance(raw_caps, dict):
            for key, value in raw_caps.items():
                if isinstance(key, str) and key.isdigit() and isinstance(value, list):
                    caps[int(key)] = [v for v in value if isinstance(v, str)]

        phases = data.get("phases")
        priority = data.get("priority")
        criteria = data.get("acceptance_criteria")
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title") or "",
            description=data.get("description") or "",
            acceptance_criteria=[c for c in criteria if isinstance(c, str)] if isinstance(criteria, list) else [],
            phases=[p for p in phases if is_valid_phase(p)] if isinstance(phases, list) else [],
            capabilities=caps,
            priority=priority if isinstance(priority, int) and not isinstance(priority, bool) else 0,
            passes=data.get("passes") is True,
            status=data.get("status") if isinstance(data.get("status"), str) else None,
            notes=data.get("notes") or "",
        )


@dataclass
class Document:
    """A requirement document loaded from disk.

    `data` is the parsed JSON exactly as read, including fields this
    package does not know about; writes are always built from it.
    """
    path: Path
    feature: str
    description: str
    related_documents: list[str]
    summary_file: str
    stories: list[Story]
    data: dict[str, Any] = field(repr=False, default_factory=dict)

    @property
    def summary_path(self) -> Path:
        return self.path.parent / self.summary_file

    @property
    def pending_stories(self) -> list[Story]:
        return [s for s in self.stories if not s.is_complete]

    def get_story(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def resolve_reference(self, ref: str) -> Path:
        """Resolve a cross-reference relative to this document's directory."""
        return (self.path.parent / ref).resolve()

    @classmethod
    def from_dict(cls, path: Path, data: dict) -> "Document":
        feature = data.get("feature")
        feature = feature if isinstance(feature, str) and feature else path.stem
        refs = data.get("related_documents")
        stories = data.get("stories")
        summary = data.get("summary_file")
        return cls(
            path=path,
            feature=feature,
            description=data.get("description") if isinstance(data.get("description"), str) else "",
            related_documents=[r for r in refs if isinstance(r, str) and r] if isinstance(refs, list) else [],
            summary_file=summary if isinstance(summary, str) and summary else summary_file_name(feature),
            stories=[Story.from_dict(s) for s in stories if isinstance(s, dict)] if isinstance(stories, list) else [],
            data=data,
        )
