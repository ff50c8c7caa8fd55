"""Tests for the embedding service, its cache and the similarity helpers."""

import numpy as np
import pytest
from unittest.mock import Mock, patch

from context_engine.common.embedding_service import (
    EmbeddingCache,
    EmbeddingService,
    batch_cosine_similarity,
    cosine_similarity,
)
from context_engine.common.errors import ContextEngineError, ValidationError


def _fake_model(dim=4):
    model = Mock()
    model.embed.side_effect = lambda texts, batch_size=32: (
        np.full(dim, float(len(t))) for t in texts
    )
    return model


class TestEmbeddingCache:
    def test_lru_eviction(self):
        cache = EmbeddingCache(max_size=2)
        cache.put("a", [1.0])
        cache.put("b", [2.0])
        assert cache.get("a") == [1.0]  # a becomes most recent
        cache.put("c", [3.0])

        assert cache.get("b") is None
        assert cache.get("a") == [1.0]
        assert len(cache) == 2

    def test_ttl_expiry(self):
        cache = EmbeddingCache(max_size=10, ttl_seconds=60)
        with patch("context_engine.common.embedding_service.time.monotonic", return_value=1000.0):
            cache.put("a", [1.0])
        with patch("context_engine.common.embedding_service.time.monotonic", return_value=1061.0):
            assert cache.get("a") is None

    def test_key_is_md5(self):
        assert EmbeddingCache.key("hello") == "5d41402abc4b2a76b9719d911017c592"

    def test_zero_size_disables(self):
        cache = EmbeddingCache(max_size=0)
        cache.put("a", [1.0])
        assert cache.get("a") is None


class TestEmbeddingService:
    @pytest.fixture
    def service(self):
        svc = EmbeddingService(model="test-model", cache_size=16)
        svc._ensure_model = Mock(return_value=_fake_model())
        return svc

    @pytest.mark.asyncio
    async def test_embed_batch_preserves_order(self, service):
        vectors = await service.embed_batch(["a", "bbb", "cc"])
        assert [v[0] for v in vectors] == [1.0, 3.0, 2.0]

    @pytest.mark.asyncio
    async def test_cache_hit_skips_model(self, service):
        await service.embed("hello")
        model = service._ensure_model.return_value
        calls_before = model.embed.call_count

        await service.embed("hello")

        assert model.embed.call_count == calls_before

    @pytest.mark.asyncio
    async def test_duplicate_texts_embedded_once(self, service):
        await service.embed_batch(["same", "same", "other"])
        model = service._ensure_model.return_value
        (texts,), _ = model.embed.call_args
        assert texts == ["same", "other"]

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.embed("  ")

    @pytest.mark.asyncio
    async def test_empty_batch(self, service):
        assert await service.embed_batch([]) == []

    @pytest.mark.asyncio
    async def test_model_failure_wrapped(self):
        svc = EmbeddingService(model="broken")
        svc._ensure_model = Mock(side_effect=RuntimeError("no model"))
        with pytest.raises(ContextEngineError):
            await svc.embed("text")


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_negative_clamped(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0], [1.0, 0.0])

    def test_batch(self):
        scores = batch_cosine_similarity([1.0, 0.0], [[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]])
        assert scores == pytest.approx([1.0, 0.0, 0.0])
