"""
Notesearch Package - Local semantic search over Joplin notes.

Modules:
    - config: Centralized configuration
    - datasource: Read-only access to the Joplin SQLite database
    - embedder: sentence-transformers (ONNX) embedding pipeline
    - vector_index: hnswlib index with atomic single-file persistence
    - state: Lock-guarded shared state and status broadcasting
    - orchestrator: Full build and delta update workflows
    - watcher: Debounced database change polling
    - search: Query service

Flow:
    Notes DB → Embed (batches of 64) → HNSW index → save → Query

Usage:
    from notesearch import Orchestrator, SearchService

    orchestrator = Orchestrator()
    await orchestrator.startup()
    results = await SearchService(orchestrator).search("pasta")
"""

from .config import SearchConfig
from .models import IndexPhase, IndexStatus, Note, SearchResult
from .orchestrator import Orchestrator
from .search import SearchService

__all__ = [
    "IndexPhase",
    "IndexStatus",
    "Note",
    "Orchestrator",
    "SearchConfig",
    "SearchResult",
    "SearchService",
]
