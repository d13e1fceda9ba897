"""
Data Models - Type definitions for the indexing and query pipeline.

These dataclasses represent the data flowing between the data source,
the orchestrator and the query service.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


# Joplin ids are UUIDs rendered as 32 lowercase hex characters
_NOTE_ID_RE = re.compile(r"^[0-9a-f]{32}$")

EMBEDDING_SEPARATOR = "\n\n"


def is_valid_note_id(note_id: str) -> bool:
    """Check that an id is a 32-character lowercase hex token."""
    return isinstance(note_id, str) and _NOTE_ID_RE.match(note_id) is not None


class IndexPhase(Enum):
    """Lifecycle phase of the search index."""
    UNINITIALIZED = "uninitialized"
    DOWNLOADING_MODEL = "downloading_model"
    INDEXING = "indexing"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class Note:
    """
    A note record as read from the Joplin database.

    Immutable: the engine never writes notes back.
    """
    id: str
    title: str
    body: str
    updated_at: int            # Unix timestamp in ms

    @property
    def embedding_text(self) -> str:
        """Text fed to the embedding model."""
        return f"{self.title}{EMBEDDING_SEPARATOR}{self.body}"

    def metadata(self) -> "NoteMetadata":
        return NoteMetadata(id=self.id, title=self.title, updated_at=self.updated_at)


@dataclass(frozen=True)
class NoteMetadata:
    """
    Lightweight note metadata kept in the in-memory cache.

    Body is not stored to avoid holding all note content in RAM.
    """
    id: str
    title: str
    updated_at: int


@dataclass(frozen=True)
class SearchResult:
    """A ranked query hit."""
    id: str
    title: str
    score: float               # Cosine similarity in [0, 1]
    updated_at: int


@dataclass(frozen=True)
class IndexStatus:
    """
    Process-wide indexing status, broadcast to observers on every change.

    Instances are immutable; transitions produce a new value.
    """
    phase: IndexPhase = IndexPhase.UNINITIALIZED
    total: int = 0
    indexed: int = 0
    is_ready: bool = False
    is_downloading_model: bool = False
    download_progress: float = 0.0   # 0.0 to 1.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "total": self.total,
            "indexed": self.indexed,
            "is_ready": self.is_ready,
            "is_downloading_model": self.is_downloading_model,
            "download_progress": self.download_progress,
            "error": self.error,
        }


@dataclass
class IndexingStats:
    """Statistics from an indexing run."""
    notes_seen: int = 0
    notes_indexed: int = 0
    notes_skipped: int = 0     # Ids failing the format check
    notes_deleted: int = 0     # Tombstoned during a delta update
    batches: int = 0
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"Indexed {self.notes_indexed}/{self.notes_seen} notes "
            f"({self.batches} batches, "
            f"{self.notes_skipped} skipped, "
            f"{self.notes_deleted} deleted) "
            f"in {self.duration_seconds:.1f}s"
        )
