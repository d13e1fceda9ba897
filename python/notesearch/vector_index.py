"""
Vector Index - HNSW approximate nearest-neighbor index over note vectors.

Wraps hnswlib in cosine space. Notes are identified by string ids, mapped
to sequential integer labels in insertion order. There is no delete or
update: re-indexing a note appends a new entry under the same id, and
callers filter stale entries against the metadata cache.

The index is persisted as a single file, written to a sibling temp file
and renamed over the target so a crash never leaves a partial file.
"""

import logging
import os
import pickle
import threading
from pathlib import Path
from typing import FrozenSet, List, NamedTuple, Optional, Sequence, Tuple

import hnswlib
import numpy as np

from .config import SearchConfig
from .errors import (
    CapacityExceededError,
    CorruptIndexFileError,
    IndexPersistenceError,
    InvalidDimensionError,
    VectorIndexError,
)


logger = logging.getLogger(__name__)

FILE_FORMAT = "notesearch-hnsw"
FILE_VERSION = 2


class IndexHit(NamedTuple):
    """A raw ANN result: note id and cosine distance (1 - similarity)."""
    id: str
    distance: float


class VectorIndex:
    """
    HNSW index mapping note ids to 384-dim vectors.

    All access to the native structure goes through an index-local lock.
    Capacity is fixed at construction; inserting past it raises
    CapacityExceededError.
    """

    def __init__(
        self,
        capacity_hint: int,
        dimension: int = 384,
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 50,
        _hnsw: Optional[hnswlib.Index] = None,
        _ids: Optional[List[str]] = None,
        watermark: int = 0,
    ):
        if capacity_hint <= 0:
            raise VectorIndexError(f"capacity must be positive, got {capacity_hint}")

        self.dimension = dimension
        self.m = m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self._ids: List[str] = list(_ids or [])
        # Highest note updated_at covered by the stored vectors
        self.watermark = watermark
        self._lock = threading.Lock()

        if _hnsw is None:
            try:
                _hnsw = hnswlib.Index(space="cosine", dim=dimension)
                _hnsw.init_index(
                    max_elements=capacity_hint,
                    ef_construction=ef_construction,
                    M=m,
                )
            except RuntimeError as e:
                raise VectorIndexError(f"failed to create HNSW index: {e}") from e
        self._hnsw = _hnsw
        self._current_ef = ef_search
        self._hnsw.set_ef(ef_search)

    @classmethod
    def from_config(cls, capacity_hint: int, config: SearchConfig) -> "VectorIndex":
        return cls(
            capacity_hint,
            dimension=config.dimension,
            m=config.hnsw_m,
            ef_construction=config.hnsw_ef_construction,
            ef_search=config.hnsw_ef_search,
        )

    @property
    def capacity(self) -> int:
        return self._hnsw.get_max_elements()

    @property
    def count(self) -> int:
        """Number of entries, including stale duplicates."""
        return len(self._ids)

    def __len__(self) -> int:
        return self.count

    def id_set(self) -> FrozenSet[str]:
        """Distinct note ids that have at least one stored vector."""
        with self._lock:
            return frozenset(self._ids)

    def add_batch(self, entries: Sequence[Tuple[str, np.ndarray]]) -> None:
        """
        Insert (id, vector) pairs.

        Raises:
            InvalidDimensionError: a vector is not `dimension` long
            CapacityExceededError: the index has no room for the batch
        """
        if not entries:
            return

        ids = [note_id for note_id, _ in entries]
        vectors = []
        for _, vector in entries:
            arr = np.asarray(vector, dtype=np.float32).reshape(-1)
            if arr.shape[0] != self.dimension:
                raise InvalidDimensionError(self.dimension, arr.shape[0])
            vectors.append(arr)
        data = np.vstack(vectors)

        with self._lock:
            start = len(self._ids)
            needed = start + len(ids)
            if needed > self.capacity:
                raise CapacityExceededError(self.capacity, needed)

            labels = np.arange(start, needed, dtype=np.int64)
            try:
                self._hnsw.add_items(data, labels, num_threads=1)
            except RuntimeError as e:
                raise VectorIndexError(f"insert failed: {e}") from e
            self._ids.extend(ids)

    def search(self, query: np.ndarray, top_k: int) -> List[IndexHit]:
        """
        Find the top_k nearest entries to a query vector.

        Returns:
            Hits ordered by ascending distance; exact ties list the most
            recently inserted entry first.
        """
        vector = np.asarray(query, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise InvalidDimensionError(self.dimension, vector.shape[0])

        with self._lock:
            k = min(top_k, len(self._ids))
            if k <= 0:
                return []

            # hnswlib requires ef >= k
            ef = max(self.ef_search, k)
            if ef != self._current_ef:
                self._hnsw.set_ef(ef)
                self._current_ef = ef

            try:
                labels, distances = self._hnsw.knn_query(vector.reshape(1, -1), k=k)
            except RuntimeError as e:
                raise VectorIndexError(f"search failed: {e}") from e
            ids = self._ids

            pairs = sorted(
                zip(labels[0].tolist(), distances[0].tolist()),
                key=lambda pair: (pair[1], -pair[0]),
            )
            return [IndexHit(ids[label], float(distance)) for label, distance in pairs]

    def save(self, path: Path) -> None:
        """
        Persist the index atomically.

        Writes `<name>.tmp` next to the target, fsyncs it, then renames it
        over the target. A failure at any point leaves the previous file
        untouched.
        """
        path = Path(path)
        tmp_path = path.with_name(path.name + ".tmp")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                payload = {
                    "format": FILE_FORMAT,
                    "version": FILE_VERSION,
                    "dimension": self.dimension,
                    "m": self.m,
                    "ef_construction": self.ef_construction,
                    "ef_search": self.ef_search,
                    "watermark": self.watermark,
                    "ids": list(self._ids),
                    "hnsw": self._hnsw,
                }
                with open(tmp_path, "wb") as f:
                    pickle.dump(payload, f, protocol=pickle.HIGHEST_PROTOCOL)
                    f.flush()
                    os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except (OSError, pickle.PicklingError) as e:
            tmp_path.unlink(missing_ok=True)
            raise IndexPersistenceError(f"cannot write {path}: {e}") from e
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Saved index with {len(self._ids)} entries to {path}")

    @classmethod
    def load(cls, path: Path) -> "VectorIndex":
        """
        Load a previously saved index.

        Raises:
            CorruptIndexFileError: the file is truncated or not an index
            IndexPersistenceError: the file could not be read
        """
        path = Path(path)
        try:
            with open(path, "rb") as f:
                payload = pickle.load(f)
        except OSError as e:
            raise IndexPersistenceError(f"cannot read {path}: {e}") from e
        except (pickle.UnpicklingError, EOFError, AttributeError, ImportError,
                IndexError, TypeError, ValueError, RuntimeError) as e:
            raise CorruptIndexFileError(f"{path}: {e}") from e

        if not isinstance(payload, dict) or payload.get("format") != FILE_FORMAT:
            raise CorruptIndexFileError(f"{path}: not a notesearch index")
        if payload.get("version") != FILE_VERSION:
            raise CorruptIndexFileError(
                f"{path}: unsupported index version {payload.get('version')}"
            )

        hnsw = payload.get("hnsw")
        ids = payload.get("ids")
        dimension = payload.get("dimension")
        watermark = payload.get("watermark")
        if not isinstance(hnsw, hnswlib.Index) or not isinstance(ids, list):
            raise CorruptIndexFileError(f"{path}: missing index data")
        if not isinstance(watermark, int):
            raise CorruptIndexFileError(f"{path}: missing watermark")
        if hnsw.dim != dimension or hnsw.get_current_count() != len(ids):
            raise CorruptIndexFileError(f"{path}: index data is inconsistent")

        index = cls(
            max(hnsw.get_max_elements(), 1),
            dimension=dimension,
            m=payload["m"],
            ef_construction=payload["ef_construction"],
            ef_search=payload["ef_search"],
            _hnsw=hnsw,
            _ids=ids,
            watermark=watermark,
        )
        logger.debug(f"Loaded index with {index.count} entries from {path}")
        return index
