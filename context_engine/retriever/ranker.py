"""
Ranker

Multi-factor re-ranking and diversity selection over hydrated candidates.

    score = w_s * semantic + w_f * freshness + w_u * usage + w_c * confidence

Usage is min-max normalized within the candidate set of the current request,
so the same context can get a different usage factor in a different request.
When every candidate has the same count, usage is 0 for all of them.

Both functions are pure and synchronous.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional

from ..common.config import RerankWeights
from ..common.embedding_service import cosine_similarity
from ..common.schemas import Context, ContextTier, utcnow
from .query_processor import tokenize

SECONDS_PER_DAY = 86400.0


@dataclass
class ScoreBreakdown:
    """Per-factor scores, each in [0, 1]"""
    semantic: float = 0.0
    freshness: float = 0.0
    usage: float = 0.0
    confidence: float = 0.0


@dataclass
class ScoredContext:
    """A hydrated candidate with its scores. Never persisted."""
    context: Context
    similarity: float  # raw vector score
    tier: ContextTier
    score: float = 0.0
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)

    @property
    def id(self) -> str:
        return self.context.id


def context_similarity(a: Context, b: Context) -> float:
    """
    Similarity between two contexts for duplicate detection.

    Embedding cosine when both have comparable embeddings, token-overlap
    (Jaccard) of the content otherwise.
    """
    if a.embedding and b.embedding and len(a.embedding) == len(b.embedding):
        return cosine_similarity(a.embedding, b.embedding)

    tokens_a = tokenize(a.content)
    tokens_b = tokenize(b.content)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def _age_days(reference: datetime, now: datetime) -> float:
    return max(0.0, (now - reference).total_seconds() / SECONDS_PER_DAY)


class ContextRanker:
    """Scores, orders and de-duplicates retrieval candidates"""

    def __init__(
        self,
        weights: Optional[RerankWeights] = None,
        freshness_decay_rate: float = 1.0 / 365,
        duplicate_threshold: float = 0.9,
    ):
        self._weights = weights or RerankWeights()
        self._decay_rate = freshness_decay_rate
        self._duplicate_threshold = duplicate_threshold

    @property
    def weights(self) -> RerankWeights:
        return self._weights

    def freshness(self, context: Context, now: datetime) -> float:
        return math.exp(-_age_days(context.reference_time, now) * self._decay_rate)

    def rank(self, candidates: List[ScoredContext], now: Optional[datetime] = None) -> List[ScoredContext]:
        """
        Score candidates and sort them.

        Order: score descending, then more recent reference time, then id
        ascending, so equal inputs always produce the same order.

        Args:
            candidates: Hydrated candidates with `similarity` set
            now: Clock for freshness (defaults to the current UTC time)

        Returns:
            New ScoredContext objects with `score` and `breakdown` filled in
        """
        if not candidates:
            return []

        now = now or utcnow()
        w = self._weights

        counts = [c.context.metadata.usage_count for c in candidates]
        low, high = min(counts), max(counts)
        spread = high - low

        scored = []
        for candidate in candidates:
            context = candidate.context
            breakdown = ScoreBreakdown(
                semantic=max(0.0, min(1.0, candidate.similarity)),
                freshness=self.freshness(context, now),
                usage=(context.metadata.usage_count - low) / spread if spread else 0.0,
                confidence=context.metadata.effective_confidence,
            )
            score = (
                w.semantic * breakdown.semantic
                + w.freshness * breakdown.freshness
                + w.usage * breakdown.usage
                + w.confidence * breakdown.confidence
            )
            scored.append(replace(candidate, score=score, breakdown=breakdown))

        scored.sort(key=lambda s: (-s.score, -s.context.reference_time.timestamp(), s.context.id))
        return scored

    def diversify(self, ranked: List[ScoredContext], limit: int, enabled: bool = True) -> List[ScoredContext]:
        """
        Greedy duplicate suppression over a ranked list.

        A candidate is skipped when its similarity to any already accepted
        candidate exceeds the duplicate threshold. Stops at `limit`. When
        disabled this is plain truncation.
        """
        if not enabled:
            return ranked[:limit]

        accepted: List[ScoredContext] = []
        for candidate in ranked:
            if len(accepted) >= limit:
                break
            if any(
                context_similarity(candidate.context, kept.context) > self._duplicate_threshold
                for kept in accepted
            ):
                continue
            accepted.append(candidate)
        return accepted
