"""
Query Processor

Normalizes the retrieval query and expands it with high-confidence entities
supplied by the upstream prompt analyzer.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from ..common.schemas import Entity


@dataclass
class ExpandedQuery:
    """Query text as it will be embedded"""
    original: str
    cleaned: str
    text: str  # cleaned query plus accepted entity values
    entities_used: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text


def clean_query(query: str) -> str:
    """Collapse whitespace and strip"""
    return re.sub(r"\s+", " ", query or "").strip()


def tokenize(text: str) -> Set[str]:
    """Lowercased word tokens, used for token-overlap similarity"""
    return set(re.findall(r"\b\w+\b", (text or "").lower()))


class QueryProcessor:
    """
    Expands queries with entities.

    Only entities with confidence strictly above the threshold are
    appended; the rest are ignored entirely.
    """

    def __init__(self, entity_confidence_threshold: float = 0.7, enabled: bool = True):
        self._threshold = entity_confidence_threshold
        self._enabled = enabled

    def select_entities(self, entities: Iterable[Entity]) -> List[str]:
        """Values of entities above the confidence threshold, deduplicated in order"""
        values = [
            e.value.strip() for e in entities
            if e.confidence > self._threshold and e.value and e.value.strip()
        ]
        return list(dict.fromkeys(values))

    def expand_query(self, query: str, entities: Iterable[Entity] = ()) -> ExpandedQuery:
        """
        Build the text to embed for a retrieval request.

        An empty query stays empty even when entities are present: there is
        nothing to expand.
        """
        cleaned = clean_query(query)
        if not cleaned:
            return ExpandedQuery(original=query, cleaned="", text="")

        used = self.select_entities(entities) if self._enabled else []
        text = " ".join([cleaned] + used)
        return ExpandedQuery(original=query, cleaned=cleaned, text=text, entities_used=used)
