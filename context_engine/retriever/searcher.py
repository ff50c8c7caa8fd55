"""
Searcher

Hierarchical tier search over the Vector Index followed by hydration from
the Primary Store.

Tiers are searched most specific first (workspace -> hybrid -> global).
Each tier's hits are hydrated with one batch fetch; hits whose id is unknown
to the Primary Store are stale index entries and are dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from ..common.errors import StaleIndexEntry
from ..common.primary_store import PrimaryStore
from ..common.schemas import Context, ContextTier, utcnow
from ..common.vector_index import VectorIndex
from .ranker import ScoredContext, SECONDS_PER_DAY

logger = logging.getLogger("context_engine.retriever.searcher")


@dataclass
class SearchOutcome:
    """Hydrated candidates from a hierarchical search"""
    candidates: List[ScoredContext] = field(default_factory=list)
    tiers_searched: List[ContextTier] = field(default_factory=list)
    stale: List[StaleIndexEntry] = field(default_factory=list)
    timed_out: bool = False


class Searcher:
    """
    Searches tiers in order and hydrates hits.

    Features:
    - Early stop once enough high-similarity candidates are found
      (the first tier is always searched)
    - Cross-tier deduplication by id
    - Stale hit filtering
    - Optional maximum context age
    - Shared deadline across tiers
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        primary_store: PrimaryStore,
        early_stop_similarity: float = 0.8,
        max_context_age_days: float = 0,
    ):
        """
        Initialize searcher.

        Args:
            vector_index: Index to search
            primary_store: Store to hydrate hits from
            early_stop_similarity: Similarity that counts towards early stop
            max_context_age_days: Drop candidates older than this (0 = no limit)
        """
        self._index = vector_index
        self._primary = primary_store
        self._early_stop_similarity = early_stop_similarity
        self._max_age_days = max_context_age_days

    async def search(
        self,
        vector: List[float],
        workspace_id: str,
        tiers: Sequence[ContextTier],
        limit: int,
        min_similarity: float = 0.0,
        deadline: Optional[float] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> SearchOutcome:
        """
        Search the given tiers in order.

        Args:
            vector: Query embedding
            workspace_id: Workspace filter
            tiers: Tiers to search, in priority order
            limit: Hits requested per tier and early-stop target
            min_similarity: Score threshold passed to the index
            deadline: Event loop time after which remaining tiers are skipped
            filters: Extra payload conditions (type, source, tags, confidence)

        Returns:
            SearchOutcome; `timed_out` is set if the deadline cut it short
        """
        outcome = SearchOutcome()
        seen: Set[str] = set()
        loop = asyncio.get_running_loop()

        for tier in tiers:
            try:
                if deadline is None:
                    candidates, stale = await self._search_tier(
                        vector, workspace_id, tier, limit, min_similarity, seen, filters
                    )
                else:
                    candidates, stale = await asyncio.wait_for(
                        self._search_tier(vector, workspace_id, tier, limit, min_similarity, seen, filters),
                        timeout=max(0.0, deadline - loop.time()),
                    )
            except asyncio.TimeoutError:
                logger.warning(
                    "Retrieval deadline reached during %s tier for workspace %s",
                    tier.value, workspace_id,
                )
                outcome.timed_out = True
                break

            outcome.tiers_searched.append(tier)
            outcome.candidates.extend(candidates)
            outcome.stale.extend(stale)

            strong = sum(1 for c in outcome.candidates if c.similarity >= self._early_stop_similarity)
            if strong >= limit:
                logger.debug(
                    "Found %d strong candidates after %s tier, skipping remaining tiers",
                    strong, tier.value,
                )
                break

        return outcome

    async def _search_tier(
        self,
        vector: List[float],
        workspace_id: str,
        tier: ContextTier,
        limit: int,
        min_similarity: float,
        seen: Set[str],
        filters: Optional[Dict[str, Any]] = None,
    ) -> Tuple[List[ScoredContext], List[StaleIndexEntry]]:
        hits = await self._index.search(
            vector,
            limit=limit,
            filter={**(filters or {}), "workspace_id": workspace_id, "tier": tier.value},
            score_threshold=min_similarity,
        )
        hits = [hit for hit in hits if hit.id not in seen]
        if not hits:
            return [], []

        contexts = {c.id: c for c in await self._primary.get_many([hit.id for hit in hits])}
        now = utcnow()

        candidates = []
        stale = []
        for hit in hits:
            context = contexts.get(hit.id)
            if context is None or context.workspace_id != workspace_id:
                entry = StaleIndexEntry(
                    context_id=hit.id,
                    workspace_id=hit.payload.get("workspace_id"),
                    tier=hit.payload.get("tier"),
                    score=hit.score,
                    payload=hit.payload,
                )
                logger.warning(
                    "Dropping stale index entry context_id=%s (tier=%s, score=%.3f)",
                    entry.context_id, entry.tier, entry.score,
                )
                stale.append(entry)
                continue

            seen.add(hit.id)
            if self._is_too_old(context, now):
                continue
            candidates.append(ScoredContext(context=context, similarity=hit.score, tier=context.tier))

        return candidates, stale

    def _is_too_old(self, context: Context, now) -> bool:
        if not self._max_age_days:
            return False
        age_days = (now - context.reference_time).total_seconds() / SECONDS_PER_DAY
        return age_days > self._max_age_days
