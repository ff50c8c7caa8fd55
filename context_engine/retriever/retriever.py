"""
Context Retriever

Retrieval pipeline:
1. Expand the query with high-confidence entities
2. Embed the expanded query
3. Hierarchical tier search + hydration (Searcher)
4. Multi-factor re-ranking (ContextRanker.rank)
5. Diversity selection (ContextRanker.diversify)
6. Queue usage write-backs (UsageTracker)
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import pydantic

from ..common.config import RetrievalConfig
from ..common.embedding_service import EmbeddingProvider
from ..common.errors import ValidationError
from ..common.primary_store import PrimaryStore
from ..common.schemas import ContextTier, RetrievalRequest, TIER_SEARCH_ORDER
from ..common.vector_index import VectorIndex
from .query_processor import QueryProcessor
from .ranker import ContextRanker, ScoredContext
from .searcher import Searcher
from .usage_tracker import UsageTracker

logger = logging.getLogger("context_engine.retriever.retriever")


@dataclass
class RetrievalResult:
    """Ranked contexts for a retrieval request"""
    contexts: List[ScoredContext]
    query: str
    expanded_query: str = ""
    total_found: int = 0  # hydrated candidates before diversity/limit
    latency_ms: float = 0.0
    tiers_searched: List[ContextTier] = field(default_factory=list)
    stale_filtered: int = 0
    timed_out: bool = False

    @property
    def context_ids(self) -> List[str]:
        return [c.id for c in self.contexts]


class ContextRetriever:
    """
    Retrieves and ranks contexts for a prompt.

    IndexUnavailableError and StoreUnavailableError propagate. A request
    deadline (`timeout_s`) degrades to partial results with
    `timed_out=True` instead of raising.
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        vector_index: VectorIndex,
        primary_store: PrimaryStore,
        config: Optional[RetrievalConfig] = None,
        usage_tracker: Optional[UsageTracker] = None,
    ):
        """
        Initialize retriever.

        Args:
            embedding_provider: Embeds the expanded query
            vector_index: Index searched per tier
            primary_store: Store hits are hydrated from
            config: Retrieval settings and re-ranking weights
            usage_tracker: Receives returned ids; None disables usage tracking
        """
        self._embedding = embedding_provider
        self._config = config or RetrievalConfig()
        self._usage_tracker = usage_tracker
        self._query_processor = QueryProcessor(
            entity_confidence_threshold=self._config.entity_confidence_threshold,
            enabled=self._config.enable_query_expansion,
        )
        self._searcher = Searcher(
            vector_index,
            primary_store,
            early_stop_similarity=self._config.early_stop_similarity,
            max_context_age_days=self._config.max_context_age_days,
        )
        self._ranker = ContextRanker(
            weights=self._config.weights,
            freshness_decay_rate=self._config.freshness_decay_rate,
            duplicate_threshold=self._config.duplicate_threshold,
        )

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    @property
    def ranker(self) -> ContextRanker:
        return self._ranker

    @property
    def usage_tracker(self) -> Optional[UsageTracker]:
        return self._usage_tracker

    async def retrieve(self, request: Union[RetrievalRequest, Dict[str, Any]]) -> RetrievalResult:
        """
        Retrieve ranked contexts.

        Args:
            request: RetrievalRequest or an equivalent dict

        Returns:
            RetrievalResult; empty (without calling the embedding provider)
            when the query is blank
        """
        if not isinstance(request, RetrievalRequest):
            try:
                request = RetrievalRequest.model_validate(request)
            except pydantic.ValidationError as e:
                raise ValidationError(str(e)) from e

        start = time.perf_counter()
        limit = request.limit or self._config.default_limit
        min_similarity = (
            request.min_similarity
            if request.min_similarity is not None
            else self._config.default_min_similarity
        )
        tiers = [request.tier] if request.tier is not None else list(TIER_SEARCH_ORDER)

        expanded = self._query_processor.expand_query(request.query, request.entities)
        if expanded.is_empty:
            logger.debug("Empty query for workspace %s, nothing to retrieve", request.workspace_id)
            return RetrievalResult(contexts=[], query=request.query, latency_ms=_elapsed_ms(start))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + request.timeout_s if request.timeout_s else None

        try:
            if deadline is None:
                vector = await self._embedding.embed(expanded.text)
            else:
                vector = await asyncio.wait_for(
                    self._embedding.embed(expanded.text),
                    timeout=max(0.0, deadline - loop.time()),
                )
        except asyncio.TimeoutError:
            logger.warning("Retrieval deadline reached while embedding query for workspace %s", request.workspace_id)
            return RetrievalResult(
                contexts=[],
                query=request.query,
                expanded_query=expanded.text,
                latency_ms=_elapsed_ms(start),
                timed_out=True,
            )

        outcome = await self._searcher.search(
            vector,
            request.workspace_id,
            tiers,
            limit=limit,
            min_similarity=min_similarity,
            deadline=deadline,
            filters=payload_filters(request),
        )

        ranked = self._ranker.rank(outcome.candidates)
        selected = self._ranker.diversify(
            ranked, limit, enabled=self._config.enable_diversity_selection
        )

        if self._usage_tracker is not None and selected:
            self._usage_tracker.submit([s.id for s in selected])

        result = RetrievalResult(
            contexts=selected,
            query=request.query,
            expanded_query=expanded.text,
            total_found=len(outcome.candidates),
            latency_ms=_elapsed_ms(start),
            tiers_searched=outcome.tiers_searched,
            stale_filtered=len(outcome.stale),
            timed_out=outcome.timed_out,
        )
        logger.info(
            "Retrieved %d/%d contexts for workspace %s in %.1fms (tiers=%s, stale=%d%s)",
            len(result.contexts),
            result.total_found,
            request.workspace_id,
            result.latency_ms,
            ",".join(t.value for t in result.tiers_searched),
            result.stale_filtered,
            ", timed out" if result.timed_out else "",
        )
        return result


def payload_filters(request: RetrievalRequest) -> Dict[str, Any]:
    """Vector index payload conditions for the optional request filters"""
    filters: Dict[str, Any] = {}
    if request.type is not None:
        filters["type"] = request.type.value
    if request.source:
        filters["source"] = request.source
    if request.tags:
        filters["tags"] = list(request.tags)
    if request.min_confidence is not None:
        filters["confidence"] = {"gte": request.min_confidence}
    return filters


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
