"""
Search - Query service over the note index.

Embeds the query, runs the ANN search and turns raw hits into ranked
results filtered against the metadata cache.
"""

import logging
import time
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional

from .config import SearchConfig
from .datasource import NoteSource
from .errors import ModelNotLoadedError, NoteNotFoundError, NotReadyError
from .models import Note, NoteMetadata, SearchResult, is_valid_note_id
from .vector_index import IndexHit

if TYPE_CHECKING:
    from .orchestrator import Orchestrator


logger = logging.getLogger(__name__)


def rank_hits(
    hits: Iterable[IndexHit],
    cache: Dict[str, NoteMetadata],
    tombstones: FrozenSet[str],
    min_score: float,
) -> List[SearchResult]:
    """
    Convert raw ANN hits into ranked results.

    Hits for deleted notes or notes missing from the cache are dropped,
    duplicate ids keep their best score, and anything under min_score
    is filtered out. Titles and timestamps come from the cache, so a
    re-indexed note always shows its latest metadata.
    """
    best: Dict[str, SearchResult] = {}
    for hit in hits:
        if hit.id in tombstones:
            continue
        meta = cache.get(hit.id)
        if meta is None:
            continue

        score = min(max(1.0 - hit.distance, 0.0), 1.0)
        current = best.get(hit.id)
        if current is None or score > current.score:
            best[hit.id] = SearchResult(
                id=meta.id,
                title=meta.title,
                score=score,
                updated_at=meta.updated_at,
            )

    results = [result for result in best.values() if result.score >= min_score]
    results.sort(key=lambda result: result.score, reverse=True)
    return results


class SearchService:
    """
    Query entry point for the presentation layer.

    Holds the shared-state lock only long enough to copy the pipeline,
    index and cache handles. Queries can run while indexing is in
    progress; they see the index that was current when they started.
    """

    def __init__(self, orchestrator: "Orchestrator", config: SearchConfig | None = None):
        self._orchestrator = orchestrator
        self.config = config or orchestrator.config

    async def search(self, query: str, top_k: Optional[int] = None) -> List[SearchResult]:
        """
        Find notes semantically similar to the query.

        Args:
            query: Free-text query
            top_k: Number of nearest entries to consider (default 25)

        Returns:
            Results ordered by descending score, all at or above the
            relevance floor

        Raises:
            NotReadyError: no usable index yet
            ModelNotLoadedError: the index is loaded but the model is not
        """
        snapshot = await self._orchestrator.state.snapshot()
        if not snapshot.status.is_ready or snapshot.index is None:
            if snapshot.index is not None and snapshot.pipeline is None:
                raise ModelNotLoadedError()
            raise NotReadyError()
        if snapshot.pipeline is None:
            raise ModelNotLoadedError()

        if not query or not query.strip():
            return []

        k = top_k if top_k is not None else self.config.default_top_k
        if k <= 0:
            return []

        start = time.monotonic()
        vector = await self._orchestrator.run_blocking(snapshot.pipeline.embed_one, query)
        hits = await self._orchestrator.run_blocking(snapshot.index.search, vector, k)
        results = rank_hits(hits, snapshot.cache, snapshot.tombstones, self.config.min_score)

        logger.debug(
            f"Query returned {len(results)}/{len(hits)} hits "
            f"in {(time.monotonic() - start) * 1000:.0f}ms"
        )
        return results

    async def get_full_record(self, note_id: str) -> Note:
        """
        Fetch a note's full content from the database.

        Raises:
            NoteNotFoundError: unknown or malformed id
            DataSourceError: the database could not be read
        """
        if not is_valid_note_id(note_id):
            raise NoteNotFoundError(note_id)

        db_path = await self._orchestrator.get_db_path()
        if db_path is None:
            raise NotReadyError()

        def _fetch() -> Optional[Note]:
            with NoteSource(db_path) as source:
                return source.get_record_by_id(note_id)

        note = await self._orchestrator.run_blocking(_fetch)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note
