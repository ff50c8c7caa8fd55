"""
Engine Factory

Composition root: builds the adapters and services from configuration and
wires them together explicitly. Nothing in the package holds module-level
instances; every collaborator is passed in here.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .common.config import ContextEngineConfig, load_config
from .common.embedding_service import EmbeddingProvider, EmbeddingService
from .common.primary_store import InMemoryPrimaryStore, PrimaryStore
from .common.vector_index import InMemoryVectorIndex, VectorIndex
from .evolution import ContextEvolutionEngine
from .retriever import ContextRetriever, UsageTracker
from .storage import ContextStorage, IndexReconciler

logger = logging.getLogger("context_engine.factory")


@dataclass
class ContextEngine:
    """Wired services sharing one set of adapters"""
    config: ContextEngineConfig
    storage: ContextStorage
    retriever: ContextRetriever
    evolution: ContextEvolutionEngine
    reconciler: IndexReconciler
    usage_tracker: Optional[UsageTracker] = None

    async def close(self) -> None:
        """Drain pending usage writes and release the vector index client"""
        if self.usage_tracker is not None:
            await self.usage_tracker.close()
        close = getattr(self.storage.vector_index, "close", None)
        if close is not None:
            await close()


def build_vector_index(config: ContextEngineConfig) -> VectorIndex:
    """Vector index for the configured backend"""
    index_config = config.vector_index
    if index_config.backend == "qdrant":
        from .common.qdrant_index import QdrantVectorIndex

        logger.info("Using Qdrant vector index at %s (%s)", index_config.url, index_config.collection)
        return QdrantVectorIndex(
            url=index_config.url,
            api_key=index_config.api_key or None,
            collection=index_config.collection,
            vector_size=index_config.vector_size,
        )
    return InMemoryVectorIndex()


def build_embedding_provider(config: ContextEngineConfig) -> EmbeddingProvider:
    return EmbeddingService(
        model=config.embedding.model,
        cache_size=config.embedding.cache_size,
        batch_size=config.embedding.batch_size,
    )


def create_engine(
    config: Optional[ContextEngineConfig] = None,
    primary_store: Optional[PrimaryStore] = None,
    vector_index: Optional[VectorIndex] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
) -> ContextEngine:
    """
    Build a ContextEngine.

    Args:
        config: Engine configuration (default: load_config())
        primary_store: Override the primary store adapter
        vector_index: Override the vector index adapter
        embedding_provider: Override the embedding provider

    Returns:
        ContextEngine with storage, retriever, evolution and reconciler
    """
    config = config or load_config()

    primary_store = primary_store or InMemoryPrimaryStore(config.storage.data_path or None)
    vector_index = vector_index or build_vector_index(config)
    embedding_provider = embedding_provider or build_embedding_provider(config)

    storage = ContextStorage(primary_store, vector_index, embedding_provider, config.storage)

    usage_tracker = None
    if config.usage_tracking.enabled:
        usage_tracker = UsageTracker(
            primary_store,
            workers=config.usage_tracking.workers,
            queue_size=config.usage_tracking.queue_size,
        )

    retriever = ContextRetriever(
        embedding_provider,
        vector_index,
        primary_store,
        config=config.retrieval,
        usage_tracker=usage_tracker,
    )

    return ContextEngine(
        config=config,
        storage=storage,
        retriever=retriever,
        evolution=ContextEvolutionEngine(storage, config.evolution),
        reconciler=IndexReconciler(storage, batch_size=config.evolution.batch_size),
        usage_tracker=usage_tracker,
    )
