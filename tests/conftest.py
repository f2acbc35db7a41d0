"""Shared fixtures for building requirement documents in tests."""

import json

import pytest


def _story(story_id="US-001", **overrides):
    story = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": "",
        "acceptance_criteria": ["Does the thing", "Typecheck passes"],
        "phases": [1],
        "capabilities": {},
        "priority": 1,
        "passes": False,
        "notes": "",
    }
    story.update(overrides)
    return story


def _document(feature="audit-logs", stories=None, **overrides):
    doc = {
        "feature": feature,
        "description": "",
        "related_documents": [],
        "summary_file": f"summary-{feature}.md",
        "stories": stories if stories is not None else [_story()],
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def make_story():
    """Factory for a valid story dict."""
    return _story


@pytest.fixture
def make_document():
    """Factory for a valid document dict."""
    return _document


@pytest.fixture
def docs_dir(tmp_path):
    d = tmp_path / "docs"
    d.mkdir()
    return d


@pytest.fixture
def write_document(docs_dir):
    """Write a document dict as docs/prd-<feature>.json and return its path."""
    def _write(doc, name=None):
        path = docs_dir / (name or f"prd-{doc['feature']}.json")
        path.write_text(json.dumps(doc, indent=2))
        return path
    return _write
