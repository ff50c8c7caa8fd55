"""
Context Engine

Retrieves, ranks and evolves small units of contextual knowledge used to
enrich prompts sent to a language model.

Philosophy:
- The primary store is the source of truth; the vector index is a
  repairable projection of it
- Retrieval degrades (stale hits dropped, deadline honoured) instead of failing
- Side effects of reads (usage tracking) never block or fail a read

Usage:
    from context_engine import create_engine
    from context_engine.common.schemas import CreateContextRequest, RetrievalRequest

    engine = create_engine()
    await engine.storage.create(CreateContextRequest(...))
    result = await engine.retriever.retrieve(RetrievalRequest(query="...", workspace_id="ws-1"))
"""

from .factory import ContextEngine, create_engine

__version__ = "0.1.0"

__all__ = ["ContextEngine", "create_engine"]
