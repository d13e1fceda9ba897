"""
Embedder Tests - Verify the embedding pipeline contract.

Tests:
- Unit-norm output for single and batch calls
- Output order matches input order
- Inference calls are serialized
- Load failures map to ModelLoadError subclasses
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from notesearch.embedder import EmbeddingPipeline, l2_normalize
from notesearch.errors import EmbeddingError, ModelLoadError, ModelUnavailableError


class TestL2Normalize:

    def test_rows_have_unit_norm(self):
        vectors = np.array([[3.0, 4.0], [1.0, 0.0], [2.0, 2.0]])
        norms = np.linalg.norm(l2_normalize(vectors), axis=1)
        assert np.allclose(norms, 1.0)

    def test_zero_vector_stays_finite(self):
        out = l2_normalize(np.zeros((1, 4)))
        assert np.all(np.isfinite(out))


class TestEmbeddingPipeline:
    """Tests for EmbeddingPipeline with a fake encoder."""

    def test_embed_one_is_unit_norm(self, pipeline):
        vector = pipeline.embed_one("Cooking\n\npasta recipe with extra pasta")
        assert vector.shape == (384,)
        assert vector.dtype == np.float32
        assert abs(float(np.linalg.norm(vector)) - 1.0) < 1e-5

    def test_embed_batch_is_unit_norm(self, pipeline):
        texts = ["alpha", "beta beta", "gamma delta epsilon", "alpha beta"]
        vectors = pipeline.embed_batch(texts)
        assert vectors.shape == (4, 384)
        assert np.allclose(np.linalg.norm(vectors, axis=1), 1.0, atol=1e-5)

    def test_batch_preserves_order(self, pipeline):
        texts = ["alpha", "beta", "gamma"]
        batch = pipeline.embed_batch(texts)
        for i, text in enumerate(texts):
            assert np.allclose(batch[i], pipeline.embed_one(text))

    def test_empty_batch(self, pipeline, encoder):
        vectors = pipeline.embed_batch([])
        assert vectors.shape == (0, 384)
        assert encoder.calls == []

    def test_similar_texts_score_higher(self, pipeline):
        query = pipeline.embed_one("pasta")
        related = pipeline.embed_one("Cooking\n\npasta recipe")
        unrelated = pipeline.embed_one("quantum physics")
        assert float(query @ related) > float(query @ unrelated)

    def test_inference_is_serialized(self, pipeline, encoder):
        """Concurrent callers never run the model at the same time."""
        start = threading.Barrier(4)

        def worker(i):
            start.wait()
            for _ in range(5):
                pipeline.embed_batch([f"text {i}", "shared words"])

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(worker, range(4)))

        assert encoder.max_active == 1
        assert len(encoder.calls) == 20

    def test_wrong_dimension_raises(self, encoder):
        pipeline = EmbeddingPipeline(encoder, dimension=128)
        with pytest.raises(EmbeddingError):
            pipeline.embed_batch(["hello"])

    def test_inference_failure_raises(self):
        class Broken:
            def encode(self, *args, **kwargs):
                raise RuntimeError("session crashed")

        with pytest.raises(EmbeddingError):
            EmbeddingPipeline(Broken()).embed_one("hello")


class TestPipelineLoad:
    """Tests for EmbeddingPipeline.load error mapping."""

    def test_download_failure_is_model_unavailable(self, test_config, monkeypatch):
        import sentence_transformers

        def offline(*args, **kwargs):
            raise OSError("could not reach huggingface.co")

        monkeypatch.setattr(sentence_transformers, "SentenceTransformer", offline)

        with pytest.raises(ModelUnavailableError):
            EmbeddingPipeline.load(test_config.model_cache_dir, test_config)

    def test_backend_failure_is_model_load_error(self, test_config, monkeypatch):
        """Plain Exceptions from the backend (e.g. missing optimum) are wrapped."""
        import sentence_transformers

        def missing_optimum(*args, **kwargs):
            raise Exception("Using the ONNX backend requires installing Optimum")

        monkeypatch.setattr(sentence_transformers, "SentenceTransformer", missing_optimum)

        with pytest.raises(ModelLoadError, match="Optimum"):
            EmbeddingPipeline.load(test_config.model_cache_dir, test_config)

    def test_wrong_model_dimension(self, test_config, monkeypatch):
        import sentence_transformers
        from conftest import FakeEncoder

        monkeypatch.setattr(
            sentence_transformers,
            "SentenceTransformer",
            lambda *args, **kwargs: FakeEncoder(dimension=768),
        )

        with pytest.raises(ModelLoadError):
            EmbeddingPipeline.load(test_config.model_cache_dir, test_config)

    def test_creates_cache_dir(self, test_config, monkeypatch):
        import sentence_transformers
        from conftest import FakeEncoder

        seen = {}

        def fake_model(name, device=None, backend=None, cache_folder=None):
            seen["cache_folder"] = cache_folder
            return FakeEncoder()

        monkeypatch.setattr(sentence_transformers, "SentenceTransformer", fake_model)

        pipeline = EmbeddingPipeline.load(test_config.model_cache_dir, test_config)

        assert pipeline.dimension == 384
        assert test_config.model_cache_dir.is_dir()
        assert seen["cache_folder"] == str(test_config.model_cache_dir)
