"""Shared fixtures: in-memory adapters and a deterministic embedding provider."""

import hashlib
import re
from datetime import timedelta
from typing import Dict, List, Optional

import numpy as np
import pytest

from context_engine.common.embedding_service import EmbeddingProvider
from context_engine.common.primary_store import InMemoryPrimaryStore
from context_engine.common.vector_index import InMemoryVectorIndex
from context_engine.common.schemas import Context, ContextMetadata, ContextTier, ContextType, utcnow
from context_engine.storage import ContextStorage


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Hashed bag-of-words embeddings.

    Texts sharing words get a positive cosine, identical texts get 1.0.
    Exact vectors can be pinned per text with `vectors`.
    """

    def __init__(self, dim: int = 64, vectors: Optional[Dict[str, List[float]]] = None):
        self.dim = dim
        self.vectors = dict(vectors or {})
        self.calls: List[str] = []
        self.batch_calls: List[List[str]] = []

    def vector_for(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        vec = np.zeros(self.dim)
        for token in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        norm = np.linalg.norm(vec)
        return (vec / norm).tolist() if norm else vec.tolist()

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        return self.vector_for(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.batch_calls.append(list(texts))
        return [self.vector_for(t) for t in texts]


def _axis(i: int, dim: int = 64, weight: float = 1.0, rest: Optional[int] = None) -> List[float]:
    """Unit-ish vector along axis i, optionally mixed with a second axis"""
    vec = np.zeros(dim)
    vec[i] = weight
    if rest is not None:
        vec[rest] = np.sqrt(max(0.0, 1.0 - weight * weight))
    return vec.tolist()


@pytest.fixture
def axis():
    return _axis


@pytest.fixture
def embedder():
    return FakeEmbeddingProvider()


@pytest.fixture
def primary_store():
    return InMemoryPrimaryStore()


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def storage(primary_store, vector_index, embedder):
    return ContextStorage(primary_store, vector_index, embedder)


@pytest.fixture
def make_context():
    """Build an unsaved Context with sensible defaults"""

    def _make(
        content: str = "some context",
        workspace_id: str = "ws-1",
        tier: ContextTier = ContextTier.WORKSPACE,
        type: ContextType = ContextType.DOCUMENTATION,
        id: Optional[str] = None,
        age_days: float = 0.0,
        usage_count: int = 0,
        confidence: Optional[float] = None,
        embedding: Optional[List[float]] = None,
        source: str = "",
    ) -> Context:
        when = utcnow() - timedelta(days=age_days)
        return Context(
            id=id,
            workspace_id=workspace_id,
            tier=tier,
            type=type,
            content=content,
            metadata=ContextMetadata(source=source, usage_count=usage_count, confidence=confidence),
            embedding=embedding,
            created_at=when,
            updated_at=when,
        )

    return _make
