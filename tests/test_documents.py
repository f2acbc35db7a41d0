"""Tests for storyloop.pm documents and models."""

import logging

import pytest

from storyloop.pm import (
    Document,
    Story,
    find_document,
    get_document_path,
    list_documents,
    load_document,
    scan_collection,
    set_story_passes,
    write_summary_markdown,
)
from storyloop.pm.documents import render_summary_markdown


class TestStoryModel:
    """Tests for Story.from_dict tolerance."""

    def test_from_dict(self, make_story):
        story = Story.from_dict(make_story(phases=[1, 9], capabilities={"9": ["stripe"]}, priority=3))
        assert story.id == "US-001"
        assert story.phases == [1, 9]
        assert story.capabilities_for(9) == ["stripe"]
        assert story.capabilities_for(1) == []
        assert story.priority == 3
        assert not story.is_complete

    def test_string_flag_is_not_complete(self, make_story):
        """Only a real boolean true counts as complete."""
        assert not Story.from_dict(make_story(passes="true")).is_complete
        assert Story.from_dict(make_story(passes=True)).is_complete

    def test_malformed_fields_ignored(self):
        story = Story.from_dict({"id": "US-9", "phases": "1", "priority": True, "capabilities": []})
        assert story.phases == []
        assert story.priority == 0
        assert story.capabilities == {}


class TestDocumentModel:
    def test_feature_falls_back_to_stem(self, tmp_path):
        doc = Document.from_dict(tmp_path / "prd-x.json", {"stories": []})
        assert doc.feature == "prd-x"
        assert doc.summary_file == "summary-prd-x.md"

    def test_pending_and_lookup(self, tmp_path, make_document, make_story):
        data = make_document(stories=[make_story("US-001", passes=True), make_story("US-002")])
        doc = Document.from_dict(tmp_path / "prd-audit-logs.json", data)
        assert [s.id for s in doc.pending_stories] == ["US-002"]
        assert doc.get_story("US-001").is_complete
        assert doc.get_story("US-404") is None
        assert doc.summary_path == tmp_path / "summary-audit-logs.md"

    def test_unknown_fields_kept_in_data(self, tmp_path, make_document):
        data = make_document(branch="feat/x")
        doc = Document.from_dict(tmp_path / "prd-audit-logs.json", data)
        assert doc.data["branch"] == "feat/x"


class TestCollection:
    """Tests for scanning and loading documents."""

    def test_scan_orders_by_identity(self, docs_dir, write_document, make_document):
        write_document(make_document("zeta"), name="prd-a.json")
        write_document(make_document("alpha"), name="prd-z.json")

        docs = list_documents(docs_dir)

        assert [d.feature for d in docs] == ["alpha", "zeta"]

    def test_scan_skips_unreadable(self, docs_dir, write_document, make_document, caplog):
        caplog.set_level(logging.WARNING)
        write_document(make_document("alpha"))
        (docs_dir / "prd-broken.json").write_text("{nope")
        (docs_dir / "prd-list.json").write_text("[]")

        scan = scan_collection(docs_dir)

        assert [d.feature for d in scan.documents] == ["alpha"]
        assert set(p.name for p in scan.skipped) == {"prd-broken.json", "prd-list.json"}
        assert "Skipping unreadable document" in caplog.text

    def test_scan_ignores_other_files(self, docs_dir, write_document, make_document):
        write_document(make_document("alpha"))
        (docs_dir / "notes.json").write_text("{}")
        (docs_dir / "prd-alpha.json.20240101T000000000000Z.bak").write_text("{}")
        assert len(list_documents(docs_dir)) == 1

    def test_missing_directory(self, tmp_path):
        assert list_documents(tmp_path / "nope") == []

    def test_find_document(self, docs_dir, write_document, make_document):
        write_document(make_document("alpha"))
        assert find_document(docs_dir, "alpha").path == get_document_path(docs_dir, "alpha")
        assert find_document(docs_dir, "beta") is None

    def test_load_document(self, docs_dir, write_document, make_document):
        path = write_document(make_document("alpha"))
        assert load_document(path).feature == "alpha"
        assert load_document(docs_dir / "prd-none.json") is None


class TestSetStoryPasses:
    def test_returns_updated_copy(self, make_document, make_story):
        data = make_document(stories=[make_story("US-001"), make_story("US-002")])

        updated = set_story_passes(data, "US-002", True, status="completed")

        assert updated["stories"][1]["passes"] is True
        assert updated["stories"][1]["status"] == "completed"
        assert data["stories"][1]["passes"] is False
        assert "status" not in data["stories"][1]

    def test_unknown_story(self, make_document):
        with pytest.raises(KeyError):
            set_story_passes(make_document(), "US-404", True)


class TestSummary:
    """Tests for the markdown summary artifact."""

    def test_render(self, tmp_path, make_document, make_story):
        data = make_document(
            description="Record every admin action.",
            related_documents=["prd-jobs.json"],
            stories=[
                make_story("US-001", title="Schema", passes=True, priority=1),
                make_story("US-002", title="Hook", phases=[1, 9], capabilities={"9": ["stripe"]}, priority=2),
            ],
        )
        text = render_summary_markdown(Document.from_dict(tmp_path / "prd-audit-logs.json", data))

        assert text.startswith("# audit-logs\n")
        assert "**Progress:** 1/2 stories complete" in text
        assert "- prd-jobs.json" in text
        assert "### [x] US-001: Schema" in text
        assert "### [ ] US-002: Hook" in text
        assert "- 9. Capability Integration (stripe)" in text
        assert text.index("US-001") < text.index("US-002")

    def test_write_summary(self, docs_dir, write_document, make_document):
        path = write_document(make_document("alpha"))
        summary = write_summary_markdown(load_document(path))
        assert summary == docs_dir / "summary-alpha.md"
        assert "# alpha" in summary.read_text()
        # Derived artifact: never backed up
        assert not list(docs_dir.glob("summary-alpha.md.*.bak"))
