"""
Orchestrator - Main entry point for the indexing system.

Drives the two indexing workflows over the shared state:
- Full build: load the persisted index (fast path) or embed every note
- Delta update: embed only notes changed since the watermark

Each workflow is single-flight (guarded by its busy flag), reports
progress through status events, and records failures in
IndexStatus.error instead of raising.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .config import get_config, SearchConfig, set_config
from .datasource import NoteSource, detect_joplin_db_path
from .embedder import EmbeddingPipeline
from .errors import (
    EmbeddingError,
    ModelLoadError,
    VectorIndexError,
    describe_error,
    handle_error,
)
from .models import IndexingStats, IndexPhase, IndexStatus, Note, NoteMetadata, is_valid_note_id
from .search import SearchService
from .state import SharedState, StatusObserver
from .vector_index import VectorIndex
from .watcher import ChangeWatcher


logger = logging.getLogger(__name__)


PipelineLoader = Callable[[Path], EmbeddingPipeline]


class Orchestrator:
    """
    Main orchestrator for the indexing system.

    Full build:   DB → Embedder (batches of 64) → VectorIndex → save → ready
    Delta update: DB (updated_time > watermark) → Embedder → live index → save

    Blocking work runs in a thread pool; the shared-state lock is only held
    for handle copies and status updates.
    """

    def __init__(
        self,
        config: Optional[SearchConfig] = None,
        pipeline_loader: Optional[PipelineLoader] = None,
    ):
        self.config = config or get_config()
        if config:
            set_config(config)

        self.state = SharedState()
        self._pipeline_loader = pipeline_loader or partial(
            EmbeddingPipeline.load, config=self.config
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.worker_threads,
            thread_name_prefix="notesearch",
        )
        self._tasks: Set[asyncio.Task] = set()
        self._watcher: Optional[ChangeWatcher] = None

    # --- Plumbing --------------------------------------------------------

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Receive every IndexStatus change. Returns an unsubscribe function."""
        return self.state.subscribe(observer)

    async def get_status(self) -> IndexStatus:
        return await self.state.status()

    async def get_db_path(self) -> Optional[Path]:
        return await self.state.db_path()

    async def run_blocking(self, fn: Callable[..., Any], *args) -> Any:
        """Run a blocking call in the worker pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def _bounded(self, work: Awaitable[Any], timeout: float, what: str) -> Any:
        try:
            return await asyncio.wait_for(work, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(f"{what}: no progress for {timeout:.0f}s") from e

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Entry points ----------------------------------------------------

    async def startup(self, watch: bool = True) -> None:
        """
        Detect the database, load or build the index, catch up on changes
        made while the app was closed, then start watching.
        """
        db_path = self.config.db_path or await self.run_blocking(detect_joplin_db_path)
        if db_path is None:
            # Status stays uninitialized until set_db_path() is called
            logger.warning("Joplin database not found; waiting for a path")
            return

        await self.state.set_db_path(Path(db_path))
        await self.run_full_build()
        # The saved index may be older than the database
        await self.run_delta_update()

        if watch:
            self.start_watching()

    async def set_db_path(self, db_path: Path | str) -> asyncio.Task:
        """Point at a different database and schedule a full rebuild."""
        await self.state.set_db_path(Path(db_path).expanduser().resolve())
        return self._spawn(self.run_full_build(force=True))

    def rebuild_now(self) -> asyncio.Task:
        """Schedule a full rebuild that re-embeds every note."""
        return self._spawn(self.run_full_build(force=True))

    # --- Full build ------------------------------------------------------

    async def run_full_build(self, force: bool = False) -> Optional[IndexingStats]:
        """
        Build (or load) the index. A call while another build is running
        returns None without doing anything.

        Args:
            force: Ignore the persisted index and re-embed everything
        """
        if not await self.state.begin_full_build():
            logger.debug("Full build already running")
            return None

        try:
            return await self._full_build(force)
        except Exception as e:
            # Third-party failures (backend imports, native libs) land here too
            handle_error(e, "full_build")
            await self.state.fail(describe_error(e))
            return None
        finally:
            if await self.state.end_full_build():
                self._spawn(self.run_delta_update())

    async def _full_build(self, force: bool) -> Optional[IndexingStats]:
        snapshot = await self.state.snapshot()
        if snapshot.db_path is None:
            logger.info("No database configured; skipping full build")
            return None

        start_time = time.monotonic()
        stats = IndexingStats()

        if not force and self.config.index_path.exists():
            if await self._load_persisted(snapshot.db_path, snapshot.pipeline is None, stats):
                stats.duration_seconds = time.monotonic() - start_time
                logger.info(f"Loaded saved index: {stats}")
                return stats

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 1: MODEL
        # ═══════════════════════════════════════════════════════════════════
        if snapshot.pipeline is None:
            logger.info("Phase 1/4: Loading embedding model...")
            await self.state.update_status(
                phase=IndexPhase.DOWNLOADING_MODEL,
                is_downloading_model=True,
                download_progress=0.0,
                error=None,
            )
        pipeline = await self.ensure_pipeline_loaded()

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 2: READ NOTES
        # ═══════════════════════════════════════════════════════════════════
        phase_start = time.monotonic()
        logger.info("Phase 2/4: Reading notes...")
        notes: List[Note] = await self.run_blocking(self._read_all_notes, snapshot.db_path)
        total = len(notes)
        stats.notes_seen = total
        await self.state.update_status(
            phase=IndexPhase.INDEXING,
            is_downloading_model=False,
            total=total,
            indexed=0,
            download_progress=0.0,
            error=None,
        )
        logger.info(f"Phase 2 complete: {total} notes in {time.monotonic() - phase_start:.1f}s")

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 3: EMBED + INSERT
        # ═══════════════════════════════════════════════════════════════════
        phase_start = time.monotonic()
        logger.info("Phase 3/4: Embedding notes...")
        # 2x headroom so delta inserts fit until the next rebuild
        capacity = max(total * 2, self.config.min_capacity)
        index = await self.run_blocking(VectorIndex.from_config, capacity, self.config)
        cache = await self._index_notes(pipeline, index, notes, stats, report_total=total)
        logger.info(
            f"Phase 3 complete: {stats.notes_indexed} embeddings "
            f"in {time.monotonic() - phase_start:.1f}s"
        )

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 4: PERSIST
        # ═══════════════════════════════════════════════════════════════════
        logger.info("Phase 4/4: Saving index...")
        watermark = max((note.updated_at for note in notes), default=0)
        index.watermark = watermark
        await self.run_blocking(index.save, self.config.index_path)

        await self.state.install_index(index, cache, watermark, total=len(cache))

        stats.duration_seconds = time.monotonic() - start_time
        logger.info(f"Full build complete: {stats}")
        return stats

    async def _load_persisted(
        self,
        db_path: Path,
        needs_model: bool,
        stats: IndexingStats,
    ) -> bool:
        """
        Fast path: reuse the saved index and only re-read note metadata.

        Returns False if the saved index is unusable and a full build is needed.
        """
        try:
            index = await self.run_blocking(VectorIndex.load, self.config.index_path)
        except VectorIndexError as e:
            handle_error(e, "full_build")
            logger.warning("Saved index unusable; rebuilding from scratch")
            return False

        metadata: List[NoteMetadata] = await self.run_blocking(self._read_metadata, db_path)
        # Notes written after the index was saved are left to the next
        # delta update, which starts from the saved watermark.
        stored = index.id_set()
        cache = {
            meta.id: meta for meta in metadata
            if is_valid_note_id(meta.id) and meta.id in stored
        }
        stats.notes_seen = len(metadata)
        stats.notes_skipped = sum(1 for meta in metadata if not is_valid_note_id(meta.id))

        if needs_model:
            await self.state.update_status(
                phase=IndexPhase.DOWNLOADING_MODEL,
                is_downloading_model=True,
                error=None,
            )
        await self.state.install_index(index, cache, index.watermark, total=len(cache))

        await self.ensure_pipeline_loaded()
        await self.state.mark_ready()
        return True

    # --- Pipeline --------------------------------------------------------

    async def ensure_pipeline_loaded(self) -> EmbeddingPipeline:
        """
        Load the embedding model once. Concurrent callers wait for the
        in-flight load instead of starting another one.

        Raises:
            ModelLoadError: the load failed or timed out
        """
        pipeline, must_load = await self.state.begin_pipeline_load()
        if pipeline is not None:
            return pipeline
        if not must_load:
            raise ModelLoadError("embedding model failed to load")

        loaded: Optional[EmbeddingPipeline] = None
        try:
            loaded = await asyncio.wait_for(
                self.run_blocking(self._pipeline_loader, self.config.model_cache_dir),
                timeout=self.config.model_load_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise ModelLoadError(
                f"model load timed out after {self.config.model_load_timeout_s:.0f}s"
            ) from e
        finally:
            await self.state.end_pipeline_load(loaded)
        return loaded

    # --- Delta update ----------------------------------------------------

    async def run_delta_update(self) -> Optional[IndexingStats]:
        """
        Index notes changed since the last scan. Returns None when skipped
        (nothing changed, or another workflow holds the index).
        """
        if not await self.state.begin_delta_update():
            logger.debug("Delta update skipped: index busy")
            return None

        try:
            return await self._delta_update()
        except Exception as e:
            handle_error(e, "delta_update")
            await self.state.fail(describe_error(e))
            return None
        finally:
            await self.state.end_delta_update()

    async def _delta_update(self) -> Optional[IndexingStats]:
        snapshot = await self.state.snapshot()
        if snapshot.db_path is None or snapshot.index is None:
            return None

        changes = await self.run_blocking(self._read_changes, snapshot.db_path, snapshot.watermark)
        if changes is None:
            return None
        changed, deleted = changes

        start_time = time.monotonic()
        stats = IndexingStats(notes_seen=len(changed), notes_deleted=len(deleted))
        index = snapshot.index

        incoming = sum(1 for note in changed if is_valid_note_id(note.id))
        if index.count + incoming > index.capacity:
            logger.info("Index capacity reached; scheduling full rebuild")
            self._spawn(self.run_full_build(force=True))
            return stats

        await self.state.update_status(phase=IndexPhase.INDEXING)

        watermark = max(
            [note.updated_at for note in changed] + [ts for _, ts in deleted],
            default=snapshot.watermark,
        )
        updated: Dict[str, NoteMetadata] = {}
        if changed:
            pipeline = snapshot.pipeline or await self.ensure_pipeline_loaded()
            updated = await self._index_notes(pipeline, index, changed, stats)
            # Persist so new notes survive a restart
            index.watermark = watermark
            await self.run_blocking(index.save, self.config.index_path)

        status = await self.state.apply_delta(
            updated.values(),
            [note_id for note_id, _ in deleted],
            watermark,
        )

        stats.duration_seconds = time.monotonic() - start_time
        logger.info(f"Delta update: {stats}")

        self._maybe_compact(index, status.indexed, snapshot.last_full_build)
        return stats

    def _maybe_compact(self, index: VectorIndex, live_entries: int, last_full_build: float) -> None:
        """Schedule a rebuild once stale duplicate entries pile up."""
        if index.count == 0:
            return
        stale_ratio = (index.count - live_entries) / index.count
        if stale_ratio <= self.config.compaction_ratio:
            return
        if time.monotonic() - last_full_build < self.config.rebuild_interval_s:
            return
        logger.info(f"{stale_ratio:.0%} of index entries are stale; scheduling rebuild")
        self._spawn(self.run_full_build(force=True))

    # --- Shared inner loop -----------------------------------------------

    async def _index_notes(
        self,
        pipeline: EmbeddingPipeline,
        index: VectorIndex,
        notes: Sequence[Note],
        stats: IndexingStats,
        report_total: Optional[int] = None,
    ) -> Dict[str, NoteMetadata]:
        """
        Embed notes in fixed-size batches and insert them into `index`.

        Returns metadata for every inserted note. Any failure aborts the
        whole run; nothing is committed to the shared state here.
        """
        cache: Dict[str, NoteMetadata] = {}
        batch_size = self.config.embed_batch_size
        done = 0

        for i in range(0, len(notes), batch_size):
            batch = notes[i:i + batch_size]
            valid = [note for note in batch if is_valid_note_id(note.id)]
            stats.notes_skipped += len(batch) - len(valid)

            if valid:
                texts = [note.embedding_text for note in valid]
                vectors = await self._bounded(
                    self.run_blocking(pipeline.embed_batch, texts),
                    self.config.batch_timeout_s,
                    f"embedding batch {stats.batches + 1}",
                )
                entries = [(note.id, vector) for note, vector in zip(valid, vectors)]
                await self.run_blocking(index.add_batch, entries)
                for note in valid:
                    cache[note.id] = note.metadata()

            done += len(batch)
            stats.batches += 1
            stats.notes_indexed += len(valid)
            if report_total is not None:
                await self.state.report_progress(done, report_total)

        return cache

    # --- Data source helpers (run in the worker pool) --------------------

    @staticmethod
    def _read_all_notes(db_path: Path) -> List[Note]:
        with NoteSource(db_path) as source:
            return source.list_all_eligible_records()

    @staticmethod
    def _read_metadata(db_path: Path) -> List[NoteMetadata]:
        with NoteSource(db_path) as source:
            return source.list_metadata()

    @staticmethod
    def _read_changes(
        db_path: Path,
        since: int,
    ) -> Optional[Tuple[List[Note], List[Tuple[str, int]]]]:
        with NoteSource(db_path) as source:
            if not source.has_changes_since(since):
                return None
            changed = source.list_records_updated_since(since)
            deleted = source.list_deleted_since(since)
        if not changed and not deleted:
            return None
        return changed, deleted

    # --- Watching --------------------------------------------------------

    def start_watching(self) -> ChangeWatcher:
        """Start polling the database for changes."""
        if self._watcher is None:
            self._watcher = ChangeWatcher(self, self.config)
            self._watcher.start()
        return self._watcher

    async def stop_watching(self) -> None:
        if self._watcher:
            await self._watcher.stop()
            self._watcher = None

    async def close(self) -> None:
        """Stop background work and release the worker pool."""
        await self.stop_watching()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._executor.shutdown(wait=False)


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Semantic search over Joplin notes")
    parser.add_argument("--db", help="Path to Joplin database.sqlite (default: auto-detect)")
    parser.add_argument("--data-dir", help="Directory for the index and model cache")
    parser.add_argument("--rebuild", action="store_true", help="Re-embed every note")
    parser.add_argument("--query", "-q", help="Run a search and print results")
    parser.add_argument("--top-k", type=int, default=None, help="Number of results")
    parser.add_argument("--watch", action="store_true", help="Watch for changes")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    config = SearchConfig.from_env()
    if args.db:
        config.db_path = Path(args.db)
    if args.data_dir:
        config.data_dir = Path(args.data_dir)
    config.__post_init__()

    async def _main():
        orchestrator = Orchestrator(config)
        orchestrator.subscribe(
            lambda status: logger.debug(f"Status: {status.to_dict()}")
        )

        try:
            await orchestrator.startup(watch=False)
            if args.rebuild:
                await orchestrator.rebuild_now()

            status = await orchestrator.get_status()
            if status.error:
                print(f"Error: {status.error}")
                return
            print(f"Indexed {status.indexed}/{status.total} notes")

            if args.query:
                service = SearchService(orchestrator)
                results = await service.search(args.query, args.top_k)
                for result in results:
                    print(f"{result.score:.3f}  {result.id}  {result.title}")
                if not results:
                    print("No matching notes.")

            # Watch mode
            if args.watch:
                print("\nWatching for changes (Ctrl+C to stop)...")
                watcher = orchestrator.start_watching()
                await watcher.wait_closed()

        except KeyboardInterrupt:
            print("\nStopped.")
        finally:
            await orchestrator.close()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == "__main__":
    main()
