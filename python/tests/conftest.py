"""
Test Configuration - Shared fixtures for note search tests.

Uses pytest fixtures to create isolated test environments: a temporary
Joplin-shaped SQLite database, a private data directory and a small
deterministic encoder in place of the real embedding model.
"""

import re
import shutil
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Generator, List, Optional

import numpy as np
import pytest
import pytest_asyncio

from notesearch.config import SearchConfig, set_config
from notesearch.embedder import EmbeddingPipeline
from notesearch.orchestrator import Orchestrator


def note_id(char: str) -> str:
    """A valid 32-char hex note id made of one repeated character."""
    return char * 32


class FakeEncoder:
    """
    Bag-of-words stand-in for a SentenceTransformer.

    Each distinct word gets its own dimension, so texts sharing words have
    positive cosine similarity and texts sharing none have zero. Vectors are
    returned unnormalized to exercise the pipeline's normalization.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension
        self.vocabulary: dict[str, int] = {}
        self.calls: List[List[str]] = []
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def _slot(self, word: str) -> int:
        if word not in self.vocabulary:
            self.vocabulary[word] = len(self.vocabulary) % self.dimension
        return self.vocabulary[word]

    def encode(self, texts, batch_size=32, convert_to_numpy=True,
               normalize_embeddings=False, show_progress_bar=False):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append(list(texts))
            out = np.zeros((len(texts), self.dimension), dtype=np.float32)
            for row, text in enumerate(texts):
                for word in re.findall(r"[a-z0-9]+", text.lower()):
                    out[row, self._slot(word)] += 1.0
            return out
        finally:
            with self._guard:
                self.active -= 1

    def get_sentence_embedding_dimension(self) -> int:
        return self.dimension

    @property
    def texts_embedded(self) -> int:
        return sum(len(call) for call in self.calls)


class NotesDb:
    """Writable Joplin-shaped notes database for tests."""

    def __init__(self, path: Path, with_deleted_time: bool = True):
        self.path = path
        self.with_deleted_time = with_deleted_time
        columns = """
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL DEFAULT '',
            body TEXT NOT NULL DEFAULT '',
            updated_time INT NOT NULL,
            is_conflict INT NOT NULL DEFAULT 0
        """
        if with_deleted_time:
            columns += ", deleted_time INT NOT NULL DEFAULT 0"
        with self._connect() as conn:
            conn.execute(f"CREATE TABLE notes ({columns})")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.path))

    def add(self, id: str, title: str, body: str, updated_at: int, is_conflict: int = 0):
        """Insert or replace a note."""
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO notes (id, title, body, updated_time, is_conflict) "
                "VALUES (?, ?, ?, ?, ?)",
                (id, title, body, updated_at, is_conflict),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, id: str, deleted_at: int):
        """Soft-delete a note the way Joplin's trash does."""
        conn = self._connect()
        try:
            conn.execute("UPDATE notes SET deleted_time = ? WHERE id = ?", (deleted_at, id))
            conn.commit()
        finally:
            conn.close()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="notesearch_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> SearchConfig:
    """Create an isolated test configuration."""
    config = SearchConfig(
        db_path=temp_dir / "database.sqlite",
        data_dir=temp_dir / "data",
        embed_batch_size=4,
        min_capacity=16,
        worker_threads=2,
    )
    set_config(config)
    return config


@pytest.fixture
def notes_db(test_config: SearchConfig) -> NotesDb:
    """An empty notes database at the configured path."""
    return NotesDb(test_config.db_path)


@pytest.fixture
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def pipeline(encoder: FakeEncoder, test_config: SearchConfig) -> EmbeddingPipeline:
    return EmbeddingPipeline(encoder, dimension=384, batch_size=test_config.embed_batch_size)


class CountingLoader:
    """Pipeline loader that records how often it is called."""

    def __init__(self, pipeline: EmbeddingPipeline, error: Optional[Exception] = None):
        self.pipeline = pipeline
        self.error = error
        self.calls = 0

    def __call__(self, cache_dir: Path) -> EmbeddingPipeline:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.pipeline


@pytest.fixture
def loader(pipeline: EmbeddingPipeline) -> CountingLoader:
    return CountingLoader(pipeline)


@pytest_asyncio.fixture
async def orchestrator(test_config: SearchConfig, loader: CountingLoader):
    """Orchestrator wired to the fake model; closed after the test."""
    orch = Orchestrator(test_config, pipeline_loader=loader)
    await orch.state.set_db_path(test_config.db_path)
    yield orch
    await orch.close()
