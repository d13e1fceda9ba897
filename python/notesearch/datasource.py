"""
Data Source - Read-only access to the Joplin SQLite database.

The database belongs to the Joplin desktop app. It is opened with
mode=ro and query_only so nothing here can ever write to it.
"""

import logging
import os
import sqlite3
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .errors import DataSourceError, handle_error, ErrorAction
from .models import Note, NoteMetadata


logger = logging.getLogger(__name__)

# A body made only of these characters counts as empty. SQL and Python
# must agree on the set, otherwise metadata and change checks disagree
# with the full read.
BLANK_CHARS = " \t\n\r\x0b\x0c"
_SQL_BLANK_CHARS = "char(32, 9, 10, 13, 11, 12)"


def detect_joplin_db_path() -> Optional[Path]:
    """
    Auto-detect the Joplin database location.

    Returns None if not found; the caller should ask the user for a path.
    """
    candidates: List[Path] = []

    if sys.platform == "win32":
        # Standard install: %USERPROFILE%\.config\joplin-desktop\database.sqlite
        if profile := os.environ.get("USERPROFILE"):
            candidates.append(Path(profile) / ".config" / "joplin-desktop" / "database.sqlite")
        # Older/portable installs
        if app_data := os.environ.get("APPDATA"):
            candidates.append(Path(app_data) / "Joplin" / "database.sqlite")
    else:
        home = Path(os.environ.get("HOME", str(Path.home())))
        candidates.append(home / ".config" / "joplin-desktop" / "database.sqlite")
        candidates.append(home / ".config" / "joplin" / "database.sqlite")

    for path in candidates:
        if path.exists():
            logger.info(f"Detected Joplin database at {path}")
            return path

    logger.info("No Joplin database found in default locations")
    return None


class NoteSource:
    """
    Read-only query layer over the Joplin `notes` table.

    Eligible notes are non-conflict, not soft-deleted, with a non-blank body.
    Older Joplin versions have no deleted_time column; it is detected once
    per connection.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._has_deleted_time: bool = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get or open the read-only connection."""
        if self._conn is None:
            if not self.db_path.is_file():
                raise DataSourceError(f"database not found: {self.db_path}")
            try:
                uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
                conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA query_only = ON")
                conn.execute("PRAGMA busy_timeout = 5000")
                columns = {row["name"] for row in conn.execute("PRAGMA table_info(notes)")}
            except sqlite3.Error as e:
                raise DataSourceError(f"cannot open {self.db_path}: {e}") from e

            if not columns:
                conn.close()
                raise DataSourceError(f"no notes table in {self.db_path}")

            self._has_deleted_time = "deleted_time" in columns
            self._conn = conn
        return self._conn

    def _eligible_clause(self) -> str:
        clause = f"is_conflict = 0 AND trim(body, {_SQL_BLANK_CHARS}) != ''"
        if self._has_deleted_time:
            clause += " AND deleted_time = 0"
        return clause

    def _query(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise DataSourceError(f"query failed: {e}") from e

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> Optional[Note]:
        """Map a row to a Note; None when the row is malformed and skippable."""
        try:
            return Note(
                id=str(row["id"]),
                title=row["title"] or "",
                body=row["body"] or "",
                updated_at=int(row["updated_time"]),
            )
        except (TypeError, ValueError) as e:
            if handle_error(e, "datasource") is ErrorAction.SKIP:
                return None
            raise DataSourceError(f"malformed note row: {e}") from e

    def _rows_to_notes(self, rows: List[sqlite3.Row]) -> List[Note]:
        notes: List[Note] = []
        for row in rows:
            note = self._row_to_note(row)
            if note is not None and note.body.strip(BLANK_CHARS):
                notes.append(note)
        return notes

    def list_all_eligible_records(self) -> List[Note]:
        """Fetch every eligible note. Used for the full index build."""
        self._get_connection()
        rows = self._query(
            f"""
            SELECT id, title, body, updated_time
            FROM notes
            WHERE {self._eligible_clause()}
            ORDER BY updated_time ASC
            """
        )
        return self._rows_to_notes(rows)

    def list_records_updated_since(self, since: int) -> List[Note]:
        """Fetch eligible notes with updated_time > since (ms)."""
        self._get_connection()
        rows = self._query(
            f"""
            SELECT id, title, body, updated_time
            FROM notes
            WHERE {self._eligible_clause()}
              AND updated_time > ?
            ORDER BY updated_time ASC
            """,
            (since,),
        )
        return self._rows_to_notes(rows)

    def list_metadata(self) -> List[NoteMetadata]:
        """Fetch id/title/updated_time of eligible notes, without bodies."""
        self._get_connection()
        rows = self._query(
            f"""
            SELECT id, title, updated_time
            FROM notes
            WHERE {self._eligible_clause()}
            """
        )
        result: List[NoteMetadata] = []
        for row in rows:
            try:
                result.append(NoteMetadata(
                    id=str(row["id"]),
                    title=row["title"] or "",
                    updated_at=int(row["updated_time"]),
                ))
            except (TypeError, ValueError) as e:
                handle_error(e, "datasource")
        return result

    def get_record_by_id(self, note_id: str) -> Optional[Note]:
        """Fetch a single note (including body). Returns None if not found."""
        self._get_connection()
        clause = "is_conflict = 0"
        if self._has_deleted_time:
            clause += " AND deleted_time = 0"
        rows = self._query(
            f"""
            SELECT id, title, body, updated_time
            FROM notes
            WHERE id = ? AND {clause}
            """,
            (note_id,),
        )
        if not rows:
            return None
        return self._row_to_note(rows[0])

    def has_changes_since(self, since: int) -> bool:
        """Cheap check: has any note been edited or deleted after `since`?"""
        self._get_connection()
        changed = self._query(
            f"""
            SELECT COUNT(*) AS n FROM notes
            WHERE {self._eligible_clause()} AND updated_time > ?
            """,
            (since,),
        )[0]["n"]
        if changed:
            return True
        return bool(self.list_deleted_since(since))

    def list_deleted_since(self, since: int) -> List[Tuple[str, int]]:
        """(id, deleted_time) of notes soft-deleted after `since` (ms)."""
        self._get_connection()
        if not self._has_deleted_time:
            return []
        rows = self._query(
            """
            SELECT id, deleted_time FROM notes
            WHERE is_conflict = 0 AND deleted_time > ?
            """,
            (since,),
        )
        deleted: List[Tuple[str, int]] = []
        for row in rows:
            try:
                deleted.append((str(row["id"]), int(row["deleted_time"])))
            except (TypeError, ValueError) as e:
                if handle_error(e, "datasource") is not ErrorAction.SKIP:
                    raise DataSourceError(f"malformed deletion row: {e}") from e
        return deleted

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "NoteSource":
        return self

    def __exit__(self, *exc_info):
        self.close()
