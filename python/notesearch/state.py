"""
Shared State - The single lock-guarded structure behind the engine.

Only handle copies and simple field updates happen under the lock.
Embedding, ANN search and disk I/O always run after it is released,
holding their own references to the pipeline and index objects.

The metadata cache and tombstone set are replaced rather than mutated,
so a snapshot taken for a query is a plain reference copy.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .embedder import EmbeddingPipeline
from .models import IndexPhase, IndexStatus, NoteMetadata
from .vector_index import VectorIndex


logger = logging.getLogger(__name__)


StatusObserver = Callable[[IndexStatus], None]


@dataclass(frozen=True)
class StateSnapshot:
    """Handles copied out of the shared state for lock-free work."""
    db_path: Optional[Path]
    pipeline: Optional[EmbeddingPipeline]
    index: Optional[VectorIndex]
    cache: Dict[str, NoteMetadata]
    tombstones: FrozenSet[str]
    watermark: int
    last_full_build: float
    status: IndexStatus


@dataclass
class _Fields:
    db_path: Optional[Path] = None
    pipeline: Optional[EmbeddingPipeline] = None
    index: Optional[VectorIndex] = None
    cache: Dict[str, NoteMetadata] = field(default_factory=dict)
    tombstones: FrozenSet[str] = frozenset()
    watermark: int = 0
    last_full_build: float = field(default_factory=time.monotonic)
    status: IndexStatus = field(default_factory=IndexStatus)
    is_indexing: bool = False
    is_pipeline_loading: bool = False
    is_delta_updating: bool = False
    delta_pending: bool = False


class SharedState:
    """
    Owner of the engine's mutable state.

    Exposes transition operations only; every status change is pushed to
    subscribers immediately, in order, from under the lock.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition(self._lock)
        self._fields = _Fields()
        self._observers: List[StatusObserver] = []

    # --- Observers -------------------------------------------------------

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Register a status observer. Returns a function that unsubscribes."""
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _publish(self) -> None:
        status = self._fields.status
        for observer in list(self._observers):
            try:
                observer(status)
            except Exception as e:
                logger.error(f"Status observer error: {e}")

    def _set_status(self, **changes) -> IndexStatus:
        self._fields.status = replace(self._fields.status, **changes)
        self._publish()
        return self._fields.status

    def _ready(self) -> bool:
        return self._fields.pipeline is not None and self._fields.index is not None

    # --- Reads -----------------------------------------------------------

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    async def snapshot(self) -> StateSnapshot:
        async with self._lock:
            f = self._fields
            return StateSnapshot(
                db_path=f.db_path,
                pipeline=f.pipeline,
                index=f.index,
                cache=f.cache,
                tombstones=f.tombstones,
                watermark=f.watermark,
                last_full_build=f.last_full_build,
                status=f.status,
            )

    async def status(self) -> IndexStatus:
        async with self._lock:
            return self._fields.status

    async def db_path(self) -> Optional[Path]:
        async with self._lock:
            return self._fields.db_path

    # --- Busy flags ------------------------------------------------------

    async def begin_full_build(self) -> bool:
        """
        Claim the full-build slot.

        Returns False if a full build is already running. Otherwise waits for
        any in-flight delta update to finish before returning True.
        """
        async with self._lock:
            if self._fields.is_indexing:
                return False
            self._fields.is_indexing = True
            await self._changed.wait_for(lambda: not self._fields.is_delta_updating)
            return True

    async def end_full_build(self) -> bool:
        """
        Release the full-build slot.

        Returns True if a delta update was refused because of this build
        and should run now.
        """
        async with self._lock:
            self._fields.is_indexing = False
            pending = self._fields.delta_pending
            self._fields.delta_pending = False
            self._changed.notify_all()
            return pending

    async def begin_delta_update(self) -> bool:
        """
        Claim the delta slot; refused while a full build or delta runs.

        A refusal caused by a full build is remembered and handed back by
        end_full_build(). One caused by another delta is dropped.
        """
        async with self._lock:
            if self._fields.is_indexing:
                self._fields.delta_pending = True
                return False
            if self._fields.is_delta_updating:
                return False
            self._fields.is_delta_updating = True
            return True

    async def end_delta_update(self) -> None:
        async with self._lock:
            self._fields.is_delta_updating = False
            self._changed.notify_all()

    async def begin_pipeline_load(self) -> Tuple[Optional[EmbeddingPipeline], bool]:
        """
        Claim the pipeline-load slot.

        Returns (pipeline, must_load). An existing pipeline is returned with
        must_load=False. If another task is loading, waits for it and returns
        its outcome (None if it failed). Otherwise claims the slot and returns
        (None, True).
        """
        async with self._lock:
            if self._fields.is_pipeline_loading:
                await self._changed.wait_for(lambda: not self._fields.is_pipeline_loading)
                return self._fields.pipeline, False
            if self._fields.pipeline is not None:
                return self._fields.pipeline, False
            self._fields.is_pipeline_loading = True
            return None, True

    async def end_pipeline_load(self, pipeline: Optional[EmbeddingPipeline]) -> None:
        async with self._lock:
            self._fields.is_pipeline_loading = False
            if pipeline is not None:
                self._fields.pipeline = pipeline
            self._changed.notify_all()

    # --- Transitions -----------------------------------------------------

    async def update_status(self, **changes) -> IndexStatus:
        async with self._lock:
            return self._set_status(**changes)

    async def set_db_path(self, db_path: Path) -> None:
        """Point the engine at a (new) database; the index must be rebuilt."""
        async with self._lock:
            self._fields.db_path = db_path
            self._set_status(
                phase=IndexPhase.UNINITIALIZED,
                is_ready=False,
                indexed=0,
                error=None,
            )

    async def report_progress(self, indexed: int, total: int) -> None:
        async with self._lock:
            self._set_status(
                indexed=indexed,
                total=total,
                download_progress=indexed / max(total, 1),
            )

    async def install_index(
        self,
        index: VectorIndex,
        cache: Dict[str, NoteMetadata],
        watermark: int,
        total: int,
    ) -> IndexStatus:
        """Swap in a freshly built or loaded index and mark the build done."""
        async with self._lock:
            f = self._fields
            f.index = index
            f.cache = cache
            f.watermark = watermark
            f.tombstones = frozenset()
            f.last_full_build = time.monotonic()
            ready = self._ready()
            return self._set_status(
                phase=IndexPhase.READY if ready else f.status.phase,
                total=total,
                indexed=total,
                is_ready=ready,
                download_progress=1.0,
                error=None,
            )

    async def mark_ready(self) -> IndexStatus:
        """Finish model loading; ready only if both pipeline and index exist."""
        async with self._lock:
            ready = self._ready()
            return self._set_status(
                phase=IndexPhase.READY if ready else self._fields.status.phase,
                is_ready=ready,
                is_downloading_model=False,
            )

    async def apply_delta(
        self,
        updated: Iterable[NoteMetadata],
        deleted_ids: Iterable[str],
        watermark: int,
    ) -> IndexStatus:
        """
        Commit a delta update.

        Deleted ids are tombstoned and dropped from the cache; re-indexed
        notes overwrite their cache entry and lose any tombstone.
        """
        async with self._lock:
            f = self._fields
            deleted = set(deleted_ids)
            cache = {k: v for k, v in f.cache.items() if k not in deleted}
            revived = set()
            for meta in updated:
                cache[meta.id] = meta
                revived.add(meta.id)
            f.cache = cache
            f.tombstones = (f.tombstones | deleted) - revived
            f.watermark = max(f.watermark, watermark)
            ready = self._ready()
            return self._set_status(
                phase=IndexPhase.READY if ready else f.status.phase,
                total=len(cache),
                indexed=len(cache),
                is_ready=ready,
                download_progress=1.0,
                error=None,
            )

    async def fail(self, message: str) -> IndexStatus:
        """Record a terminal workflow error."""
        async with self._lock:
            return self._set_status(
                phase=IndexPhase.ERROR,
                is_ready=False,
                is_downloading_model=False,
                error=message,
            )
