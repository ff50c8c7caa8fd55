"""
Embedding Service

Provides on-device embedding generation using fastembed.
This avoids external API calls and keeps data local.

Embeddings are cached in-process, keyed by an md5 digest of the text, so
re-embedding unchanged content (re-index, restore, repeated queries) is free.
"""

import time
import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import List, Optional, Tuple

import numpy as np

from .errors import ContextEngineError, ValidationError

logger = logging.getLogger("context_engine.common.embedding_service")

DEFAULT_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"


class EmbeddingProvider(ABC):
    """Text -> fixed-length vector"""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed a single text"""

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed texts, preserving order"""


class EmbeddingCache:
    """LRU cache of embeddings keyed by md5(text), with an optional TTL"""

    def __init__(self, max_size: int = 1024, ttl_seconds: float = 86400):
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._entries: "OrderedDict[str, Tuple[List[float], float]]" = OrderedDict()

    @staticmethod
    def key(text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def get(self, text: str) -> Optional[List[float]]:
        key = self.key(text)
        entry = self._entries.get(key)
        if entry is None:
            return None
        vector, stored_at = entry
        if self._ttl and time.monotonic() - stored_at > self._ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return vector

    def put(self, text: str, vector: List[float]) -> None:
        if self._max_size <= 0:
            return
        key = self.key(text)
        self._entries[key] = (vector, time.monotonic())
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class EmbeddingService(EmbeddingProvider):
    """
    fastembed-backed embedding provider.

    The model is loaded lazily on first use. Inference is CPU-bound, so it
    runs in a worker thread to keep the event loop responsive.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        cache_size: int = 1024,
        batch_size: int = 32,
        cache_ttl_seconds: float = 86400,
    ):
        self._model_name = model
        self._batch_size = batch_size
        self._model = None
        self._cache = EmbeddingCache(max_size=cache_size, ttl_seconds=cache_ttl_seconds)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    def _ensure_model(self):
        """Lazily initialize the fastembed model"""
        if self._model is None:
            from fastembed import TextEmbedding

            self._model = TextEmbedding(model_name=self._model_name)
            logger.info("Initialized embedding model %s", self._model_name)
        return self._model

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        model = self._ensure_model()
        vectors = model.embed(texts, batch_size=self._batch_size)
        return [np.asarray(v, dtype=float).tolist() for v in vectors]

    async def embed(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector (L2 normalized)
        """
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text")
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Cached texts are served from the cache; the rest go to the model in
        one call.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors, same order as `texts`
        """
        if not texts:
            return []

        results: List[Optional[List[float]]] = [self._cache.get(t) for t in texts]
        missing = [i for i, v in enumerate(results) if v is None]

        if missing:
            # Deduplicate so identical texts are embedded once
            unique_texts = list(dict.fromkeys(texts[i] for i in missing))
            try:
                vectors = await asyncio.to_thread(self._embed_sync, unique_texts)
            except Exception as e:
                logger.error("Embedding %d texts failed: %s", len(unique_texts), e)
                raise ContextEngineError(f"Embedding failed: {e}") from e
            by_text = dict(zip(unique_texts, vectors))
            for text, vector in by_text.items():
                self._cache.put(text, vector)
            for i in missing:
                results[i] = by_text[texts[i]]

        return results


def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec1: First embedding vector
        vec2: Second embedding vector

    Returns:
        Cosine similarity clamped to [0.0, 1.0]
    """
    v1 = np.asarray(vec1, dtype=float)
    v2 = np.asarray(vec2, dtype=float)

    # Handle potential dimension mismatch
    if v1.shape != v2.shape:
        raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

    norm = float(np.linalg.norm(v1) * np.linalg.norm(v2))
    if norm == 0.0:
        return 0.0

    similarity = float(np.dot(v1, v2)) / norm

    # Clamp to valid range (numerical precision issues)
    return max(0.0, min(1.0, similarity))


def batch_cosine_similarity(query_vec: List[float], vectors: List[List[float]]) -> List[float]:
    """
    Compute cosine similarity between a query and multiple vectors.

    Args:
        query_vec: Query embedding vector
        vectors: List of embedding vectors to compare against

    Returns:
        List of similarity scores, clamped to [0.0, 1.0]
    """
    if not vectors:
        return []

    query = np.asarray(query_vec, dtype=float)
    matrix = np.asarray(vectors, dtype=float)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    return np.clip(similarities, 0.0, 1.0).tolist()
