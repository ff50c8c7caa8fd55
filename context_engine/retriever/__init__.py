"""
Context Retriever

Hierarchical semantic retrieval of contexts for prompt enrichment.

Key Components:
- QueryProcessor: Expands queries with high-confidence entities
- Searcher: Tier-by-tier vector search and hydration
- ContextRanker: Multi-factor re-ranking and diversity selection
- UsageTracker: Background usage write-backs

Pipeline:
1. Expand and embed the query
2. Search workspace -> hybrid -> global tiers, hydrating hits
3. Re-rank, then drop near-duplicates
4. Queue usage updates for the returned contexts
"""

from .query_processor import QueryProcessor, ExpandedQuery
from .ranker import ContextRanker, ScoredContext, ScoreBreakdown, context_similarity
from .searcher import Searcher, SearchOutcome
from .usage_tracker import UsageTracker
from .retriever import ContextRetriever, RetrievalResult

__all__ = [
    "QueryProcessor",
    "ExpandedQuery",
    "ContextRanker",
    "ScoredContext",
    "ScoreBreakdown",
    "context_similarity",
    "Searcher",
    "SearchOutcome",
    "UsageTracker",
    "ContextRetriever",
    "RetrievalResult",
]
