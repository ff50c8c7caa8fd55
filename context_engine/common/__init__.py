"""
Context Engine Common Module

Shared infrastructure for storage, retrieval and evolution: configuration,
errors, schemas and the three leaf adapters (primary store, vector index,
embedding provider).
"""

from .config import ContextEngineConfig, load_config, save_config
from .errors import (
    ContextEngineError,
    ValidationError,
    ConfigurationError,
    NotFoundError,
    StoreUnavailableError,
    IndexUnavailableError,
    StaleIndexEntry,
    IndexFailure,
)
from .embedding_service import EmbeddingProvider, EmbeddingService, cosine_similarity
from .primary_store import PrimaryStore, InMemoryPrimaryStore
from .vector_index import VectorIndex, InMemoryVectorIndex, VectorHit, VectorPoint

__all__ = [
    "ContextEngineConfig",
    "load_config",
    "save_config",
    "ContextEngineError",
    "ValidationError",
    "ConfigurationError",
    "NotFoundError",
    "StoreUnavailableError",
    "IndexUnavailableError",
    "StaleIndexEntry",
    "IndexFailure",
    "EmbeddingProvider",
    "EmbeddingService",
    "cosine_similarity",
    "PrimaryStore",
    "InMemoryPrimaryStore",
    "VectorIndex",
    "InMemoryVectorIndex",
    "VectorHit",
    "VectorPoint",
]
