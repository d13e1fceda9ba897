"""
Embedder - Local text-to-vector embedding pipeline.

Uses sentence-transformers with the ONNX Runtime backend for faster CPU
inference (falls back to PyTorch when onnxruntime is missing). Model
weights (~33MB for bge-small-en-v1.5) are downloaded once into a durable
cache directory.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from .config import get_config, SearchConfig
from .errors import EmbeddingError, ModelLoadError, ModelUnavailableError


logger = logging.getLogger(__name__)


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Normalize rows to unit length so cosine similarity == dot product."""
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    norms = np.where(norms > 1e-10, norms, 1.0)
    return (vectors / norms).astype(np.float32)


def _select_device() -> str:
    import torch

    if torch.backends.mps.is_available():
        return "mps"
    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


class EmbeddingPipeline:
    """
    Thread-safe wrapper around a sentence-transformers model.

    The underlying inference session is not safe for parallel use, so every
    encode call goes through a lock owned by this object. The lock is local
    to the pipeline and never held together with shared engine state.
    """

    def __init__(self, model: Any, dimension: int = 384, batch_size: int = 64):
        self._model = model
        self._dimension = dimension
        self._batch_size = batch_size
        self._lock = threading.Lock()

    @classmethod
    def load(
        cls,
        cache_dir: Path,
        config: SearchConfig | None = None,
    ) -> "EmbeddingPipeline":
        """
        Load the embedding model, downloading it into cache_dir on first run.

        Raises:
            ModelUnavailableError: weights could not be fetched or read
            ModelLoadError: the model loaded but is unusable
        """
        config = config or get_config()
        cache_dir = Path(cache_dir)

        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ModelUnavailableError(f"cannot create model cache {cache_dir}: {e}") from e

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ModelLoadError(f"sentence-transformers not installed: {e}") from e

        device = _select_device()

        backend = "torch"
        if config.use_onnx:
            try:
                import onnxruntime  # noqa: F401
                backend = "onnx"
            except ImportError:
                logger.warning(
                    "onnxruntime not installed. Using PyTorch. "
                    "Install with: pip install 'sentence-transformers[onnx]'"
                )

        start = time.monotonic()
        logger.info(f"Loading {backend} embedding model {config.model_name} on {device}...")
        try:
            model = SentenceTransformer(
                config.model_name,
                device=device,
                backend=backend,
                cache_folder=str(cache_dir),
            )
        except OSError as e:
            # Covers network failures and missing/corrupt cached files
            raise ModelUnavailableError(f"{config.model_name}: {e}") from e
        except Exception as e:
            # The ONNX backend raises plain Exception when optimum is missing
            raise ModelLoadError(f"{config.model_name}: {e}") from e

        dimension = model.get_sentence_embedding_dimension()
        if dimension != config.dimension:
            raise ModelLoadError(
                f"{config.model_name} produces {dimension}-dim vectors, "
                f"expected {config.dimension}"
            )

        logger.info(
            f"Loaded {backend} model (dim={dimension}) in {time.monotonic() - start:.1f}s"
        )
        return cls(model, dimension=dimension, batch_size=config.embed_batch_size)

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        """
        Embed multiple texts.

        Args:
            texts: Strings to embed

        Returns:
            float32 array of shape (len(texts), dimension), unit-norm rows,
            in input order
        """
        if len(texts) == 0:
            return np.zeros((0, self._dimension), dtype=np.float32)

        with self._lock:
            try:
                raw = self._model.encode(
                    list(texts),
                    batch_size=self._batch_size,
                    convert_to_numpy=True,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
            except (RuntimeError, ValueError) as e:
                raise EmbeddingError(f"inference failed on {len(texts)} texts: {e}") from e

        vectors = np.asarray(raw, dtype=np.float32).reshape(len(texts), -1)
        if vectors.shape[1] != self._dimension:
            raise EmbeddingError(
                f"model returned {vectors.shape[1]}-dim vectors, expected {self._dimension}"
            )
        # Models normalize already; this keeps the unit-norm contract regardless
        return l2_normalize(vectors)

    def embed_one(self, text: str) -> np.ndarray:
        """Embed a single text."""
        return self.embed_batch([text])[0]
