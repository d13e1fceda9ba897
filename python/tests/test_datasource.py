"""
Data Source Tests - Verify read-only access to the Joplin notes table.

Tests:
- Eligibility filtering (conflicts, trash, empty bodies)
- Incremental queries by updated_time
- Soft-deletion tracking
- Error reporting for missing or invalid databases
"""

import sqlite3
from pathlib import Path

import pytest

from notesearch.datasource import NoteSource, detect_joplin_db_path
from notesearch.errors import DataSourceError

from conftest import NotesDb, note_id


class TestNoteSource:
    """Tests for the NoteSource class."""

    @pytest.fixture
    def populated(self, notes_db: NotesDb) -> NotesDb:
        notes_db.add(note_id("a"), "Cooking", "pasta recipe", 100)
        notes_db.add(note_id("b"), "Travel", "trip to Rome", 200)
        notes_db.add(note_id("c"), "Title only", "", 300)
        notes_db.add(note_id("d"), "Whitespace", "   \n\t ", 400)
        notes_db.add(note_id("e"), "Conflict copy", "pasta recipe", 500, is_conflict=1)
        notes_db.add(note_id("f"), "Trashed", "old stuff", 600)
        notes_db.delete(note_id("f"), 650)
        return notes_db

    def test_lists_only_eligible_notes(self, populated):
        """Conflicts, trashed notes and empty bodies are excluded."""
        with NoteSource(populated.path) as source:
            notes = source.list_all_eligible_records()

        assert [n.id for n in notes] == [note_id("a"), note_id("b")]
        assert notes[0].title == "Cooking"
        assert notes[0].body == "pasta recipe"
        assert notes[0].updated_at == 100

    def test_updated_since_is_strict(self, populated):
        with NoteSource(populated.path) as source:
            assert [n.id for n in source.list_records_updated_since(100)] == [note_id("b")]
            assert source.list_records_updated_since(200) == []

    def test_metadata_has_no_body(self, populated):
        with NoteSource(populated.path) as source:
            metadata = source.list_metadata()

        assert {m.id for m in metadata} == {note_id("a"), note_id("b")}
        assert not hasattr(metadata[0], "body")

    def test_get_record_by_id(self, populated):
        with NoteSource(populated.path) as source:
            note = source.get_record_by_id(note_id("b"))
            missing = source.get_record_by_id(note_id("9"))
            trashed = source.get_record_by_id(note_id("f"))

        assert note is not None
        assert note.body == "trip to Rome"
        assert missing is None
        assert trashed is None

    def test_deleted_since(self, populated):
        with NoteSource(populated.path) as source:
            assert source.list_deleted_since(600) == [(note_id("f"), 650)]
            assert source.list_deleted_since(650) == []

    def test_has_changes_since(self, populated):
        with NoteSource(populated.path) as source:
            assert source.has_changes_since(0)
            # Only the trashing at 650 is newer than 600
            assert source.has_changes_since(600)
            assert not source.has_changes_since(650)

    def test_database_without_deleted_time(self, temp_dir):
        """Older Joplin schemas have no deleted_time column."""
        db = NotesDb(temp_dir / "old.sqlite", with_deleted_time=False)
        db.add(note_id("a"), "Cooking", "pasta recipe", 100)

        with NoteSource(db.path) as source:
            assert len(source.list_all_eligible_records()) == 1
            assert source.list_deleted_since(0) == []

    def test_connection_is_read_only(self, populated):
        source = NoteSource(populated.path)
        conn = source._get_connection()
        with pytest.raises(sqlite3.Error):
            conn.execute("DELETE FROM notes")
        source.close()

    def test_skips_malformed_rows(self, notes_db):
        notes_db.add(note_id("a"), "Good", "body", 100)
        conn = sqlite3.connect(str(notes_db.path))
        conn.execute(
            "INSERT INTO notes (id, title, body, updated_time) VALUES (?, ?, ?, ?)",
            (note_id("b"), "Bad", "body", "not a number"),
        )
        conn.commit()
        conn.close()

        with NoteSource(notes_db.path) as source:
            notes = source.list_all_eligible_records()

        assert [n.id for n in notes] == [note_id("a")]

    def test_blank_body_is_not_a_change(self, notes_db):
        """Every query agrees that a whitespace-only body is ineligible."""
        notes_db.add(note_id("a"), "Good", "body", 100)
        notes_db.add(note_id("b"), "Blank", "\n\t\r\x0b\x0c ", 200)

        with NoteSource(notes_db.path) as source:
            assert [m.id for m in source.list_metadata()] == [note_id("a")]
            assert source.list_records_updated_since(100) == []
            assert not source.has_changes_since(100)

    def test_malformed_record_lookup_is_none(self, notes_db):
        conn = sqlite3.connect(str(notes_db.path))
        conn.execute(
            "INSERT INTO notes (id, title, body, updated_time) VALUES (?, ?, ?, ?)",
            (note_id("b"), "Bad", "body", "oops"),
        )
        conn.commit()
        conn.close()

        with NoteSource(notes_db.path) as source:
            assert source.get_record_by_id(note_id("b")) is None

    def test_skips_malformed_deletion_rows(self, notes_db):
        notes_db.add(note_id("a"), "Gone", "body", 100)
        notes_db.delete(note_id("a"), 300)
        conn = sqlite3.connect(str(notes_db.path))
        conn.execute(
            "INSERT INTO notes (id, title, body, updated_time, deleted_time) "
            "VALUES (?, ?, ?, ?, ?)",
            (note_id("b"), "Bad", "body", 100, "oops"),
        )
        conn.commit()
        conn.close()

        with NoteSource(notes_db.path) as source:
            assert source.list_deleted_since(200) == [(note_id("a"), 300)]


class TestNoteSourceErrors:
    """Failures surface as DataSourceError."""

    def test_missing_file(self, temp_dir):
        with pytest.raises(DataSourceError):
            NoteSource(temp_dir / "nope.sqlite").list_all_eligible_records()

    def test_not_a_database(self, temp_dir):
        path = temp_dir / "garbage.sqlite"
        path.write_bytes(b"this is not sqlite" * 100)
        with pytest.raises(DataSourceError):
            NoteSource(path).list_all_eligible_records()

    def test_no_notes_table(self, temp_dir):
        path = temp_dir / "empty.sqlite"
        conn = sqlite3.connect(str(path))
        conn.execute("CREATE TABLE other (x INT)")
        conn.commit()
        conn.close()
        with pytest.raises(DataSourceError):
            NoteSource(path).list_metadata()


class TestDetectPath:
    """Tests for database auto-detection."""

    def test_finds_desktop_profile(self, temp_dir, monkeypatch):
        monkeypatch.setattr("sys.platform", "linux")
        monkeypatch.setenv("HOME", str(temp_dir))
        db = temp_dir / ".config" / "joplin-desktop" / "database.sqlite"
        db.parent.mkdir(parents=True)
        db.write_bytes(b"")

        assert detect_joplin_db_path() == db

    def test_returns_none_when_absent(self, temp_dir, monkeypatch):
        monkeypatch.setattr("sys.platform", "linux")
        monkeypatch.setenv("HOME", str(temp_dir))
        assert detect_joplin_db_path() is None
