"""Tests for storyloop.lib.repair module."""

import copy
import json

import pytest

from storyloop.lib.atomic import WriteFailure, list_backups
from storyloop.lib.repair import repair_document, repair_file
from storyloop.lib.validate import validate_document


def _changes_for(result, field):
    return [c for c in result.changes if c.field == field]


class TestRepairPhases:
    def test_invalid_and_duplicate_phases(self, make_document, make_story):
        """[1, 15, 3, 1] becomes [1, 3] with one entry per action."""
        doc = make_document(stories=[make_story(phases=[1, 15, 3, 1])])
        result = repair_document(doc)

        assert result.success
        assert result.document["stories"][0]["phases"] == [1, 3]
        entries = _changes_for(result, "stories[0].phases")
        assert len(entries) == 2
        assert entries[0].old == [1, 15, 3, 1]
        assert entries[0].new == [1, 3, 1]
        assert "15" in entries[0].reason
        assert entries[1].old == [1, 3, 1]
        assert entries[1].new == [1, 3]
        assert entries[1].reason == "duplicate phases collapsed"

    def test_numeric_strings_coerced(self, make_document, make_story):
        doc = make_document(stories=[make_story(phases=["2", 3.0])])
        result = repair_document(doc)
        assert result.document["stories"][0]["phases"] == [2, 3]
        assert result.success

    def test_orphan_capability_dropped(self, make_document, make_story):
        story = make_story(phases=[1, 9], capabilities={"9": ["stripe"], "4": ["redux"]})
        result = repair_document(make_document(stories=[story]))
        assert result.document["stories"][0]["capabilities"] == {"9": ["stripe"]}
        (entry,) = _changes_for(result, "stories[0].capabilities.4")
        assert entry.old == ["redux"]
        assert entry.new is None

    def test_capability_for_dropped_phase_removed(self, make_document, make_story):
        """Dropping an invalid phase also drops the capabilities that hung off it."""
        story = make_story(phases=[1, 15], capabilities={"15": ["x"]})
        result = repair_document(make_document(stories=[story]))
        assert result.document["stories"][0]["capabilities"] == {}
        assert result.success


class TestRepairFields:
    """Tests for defaults and coercions of individual fields."""

    def test_missing_story_fields_defaulted(self, make_document):
        doc = make_document(stories=[{"id": "US-001"}, {"id": "US-002"}])
        result = repair_document(doc)

        assert result.success
        second = result.document["stories"][1]
        assert second["title"] == ""
        assert second["phases"] == []
        assert second["capabilities"] == {}
        assert second["priority"] == 2
        assert second["passes"] is False
        assert second["acceptance_criteria"] == ["Typecheck passes"]

    def test_missing_document_fields_defaulted(self):
        result = repair_document({"feature": "billing", "stories": []})
        assert result.success
        assert result.document["description"] == ""
        assert result.document["related_documents"] == []
        assert result.document["summary_file"] == "summary-billing.md"

    def test_verification_gate_appended(self, make_document, make_story):
        doc = make_document(stories=[make_story(acceptance_criteria=["Table exists"])])
        result = repair_document(doc)
        assert result.document["stories"][0]["acceptance_criteria"] == ["Table exists", "Typecheck passes"]
        (entry,) = _changes_for(result, "stories[0].acceptance_criteria")
        assert entry.reason == "verification gate appended"

    def test_custom_verification_gate(self, make_document, make_story):
        doc = make_document(stories=[make_story(acceptance_criteria=[])])
        result = repair_document(doc, verification_gate="npm run build passes")
        assert result.document["stories"][0]["acceptance_criteria"] == ["npm run build passes"]

    def test_existing_gate_not_duplicated(self, make_document, make_story):
        doc = make_document(stories=[make_story(acceptance_criteria=["Build succeeds"])])
        result = repair_document(doc)
        assert result.changes == []

    def test_completion_flag_text_coerced(self, make_document, make_story):
        doc = make_document(stories=[make_story(passes=" True ")])
        result = repair_document(doc)
        assert result.success
        assert result.document["stories"][0]["passes"] is True

    def test_ambiguous_completion_flag_unrepairable(self, make_document, make_story):
        doc = make_document(stories=[make_story(passes="yes")])
        result = repair_document(doc)
        assert not result.success
        assert [e.code for e in result.errors] == ["non_boolean_completion"]
        assert result.document["stories"][0]["passes"] == "yes"

    def test_status_reconciled_with_flag(self, make_document, make_story):
        doc = make_document(stories=[make_story(passes=False, status="Done")])
        result = repair_document(doc)
        assert result.document["stories"][0]["status"] == "pending"
        assert result.document["stories"][0]["passes"] is False

    def test_summary_renamed_in_place(self, make_document):
        doc = make_document(summary_file="notes/summary-jobs.md")
        result = repair_document(doc)
        assert result.document["summary_file"] == "notes/summary-audit-logs.md"

    def test_related_documents_normalized(self, make_document):
        doc = make_document(related_documents=["prd-jobs.json", None, "prd-jobs.json"])
        result = repair_document(doc)
        assert result.document["related_documents"] == ["prd-jobs.json"]
        assert len(_changes_for(result, "related_documents")) == 2

    def test_single_related_document_wrapped(self, make_document):
        result = repair_document(make_document(related_documents="prd-jobs.json"))
        assert result.document["related_documents"] == ["prd-jobs.json"]

    def test_extra_fields_preserved(self, make_document, make_story):
        doc = make_document(stories=[make_story(phases=[1, 1], owner_team="data")], branch="feat/x")
        result = repair_document(doc)
        assert result.document["branch"] == "feat/x"
        assert result.document["stories"][0]["owner_team"] == "data"


class TestRepairSemantics:
    """Idempotence, dry-run and unrepairable cases."""

    @pytest.fixture
    def messy(self, make_document, make_story):
        return make_document(
            related_documents="prd-jobs.json",
            summary_file="summary-other.md",
            stories=[
                make_story("US-001", phases=[1, 15, "3", 1], capabilities={"12": "x"},
                           acceptance_criteria="Renders", passes="false", status="done"),
                {"id": "US-002", "priority": "4"},
            ],
        )

    def test_repair_is_idempotent(self, messy):
        first = repair_document(messy)
        assert first.success
        assert first.changes

        second = repair_document(first.document)
        assert second.changes == []
        assert second.document == first.document

    def test_repaired_document_validates(self, messy):
        result = repair_document(messy)
        assert validate_document(result.document).valid

    def test_input_not_mutated(self, messy):
        before = copy.deepcopy(messy)
        repair_document(messy)
        assert messy == before

    def test_dry_run_reports_same_changes(self, messy):
        real = repair_document(messy)
        dry = repair_document(messy, dry_run=True)
        assert dry.document is None
        assert dry.changes == real.changes

    def test_duplicate_ids_unrepairable(self, make_document, make_story):
        doc = make_document(stories=[make_story("US-001"), make_story("US-001")])
        result = repair_document(doc)
        assert not result.success
        assert [e.code for e in result.errors] == ["duplicate_story_id"]

    def test_feature_with_path_separator_unrepairable(self, make_document):
        """The summary path is left alone, so a second pass changes nothing."""
        doc = make_document("a/b", summary_file="summary-a/b.md")

        first = repair_document(doc)
        second = repair_document(first.document)

        assert not first.success
        assert [e.code for e in first.errors] == ["invalid_feature"]
        assert first.document["summary_file"] == "summary-a/b.md"
        assert second.changes == []
        assert second.document == first.document

    def test_non_object_document(self):
        result = repair_document("nope")
        assert not result.success
        assert result.document is None


class TestRepairFile:
    """Tests for repair_file() writing through the atomic writer."""

    def test_commits_with_backup(self, write_document, make_document, make_story):
        path = write_document(make_document(stories=[make_story(phases=[1, 15])]))
        original = path.read_text()

        result = repair_file(path)

        assert result.success
        assert json.loads(path.read_text())["stories"][0]["phases"] == [1]
        assert result.backup_path is not None
        assert result.backup_path.read_text() == original
        assert list_backups(path) == [result.backup_path]

    def test_no_changes_no_write(self, write_document, make_document):
        path = write_document(make_document())
        original = path.read_text()

        result = repair_file(path)

        assert result.success
        assert result.changes == []
        assert result.backup_path is None
        assert path.read_text() == original
        assert list_backups(path) == []

    def test_dry_run_leaves_file(self, write_document, make_document, make_story):
        path = write_document(make_document(stories=[make_story(phases=[99, 1])]))
        original = path.read_text()

        result = repair_file(path, dry_run=True)

        assert result.changes
        assert path.read_text() == original

    def test_invalid_json(self, docs_dir):
        path = docs_dir / "prd-broken.json"
        path.write_text("{not json")
        result = repair_file(path)
        assert not result.success
        assert result.errors[0].code == "invalid_json"

    def test_owner_without_lock_refused(self, write_document, make_document, make_story):
        path = write_document(make_document(stories=[make_story(phases=[1, 1])]))
        original = path.read_text()
        with pytest.raises(WriteFailure, match="lock is not held"):
            repair_file(path, owner="someone")
        assert path.read_text() == original
