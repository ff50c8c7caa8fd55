"""
Vector Index

Pluggable interface over the vector database holding context embeddings,
plus an in-memory numpy implementation for development and tests.

The index is a projection of the Primary Store: each point carries the
context id, its embedding and the filterable payload built by
schemas.payload.build_vector_payload. It never stores content.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

logger = logging.getLogger("context_engine.common.vector_index")


@dataclass
class VectorHit:
    """Result from vector search or scroll"""
    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorPoint:
    """A point to upsert"""
    id: str
    vector: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)


class VectorIndex(ABC):
    """
    Abstract base class for vector index implementations.

    Filters are dicts over payload fields. A scalar value is an exact match,
    a list matches any of its values (against a scalar or a list field) and
    a dict of `gt`/`gte`/`lt`/`lte` bounds is a numeric range, e.g.
    {"workspace_id": "ws-1", "tags": ["api", "db"], "confidence": {"gte": 0.5}}.
    Implementations translate transport errors into IndexUnavailableError.
    """

    @abstractmethod
    async def upsert(self, id: str, vector: List[float], payload: Dict[str, Any]) -> None:
        """Insert or replace a point"""

    @abstractmethod
    async def upsert_many(self, points: List[VectorPoint]) -> None:
        """Insert or replace several points in one call"""

    @abstractmethod
    async def search(
        self,
        vector: List[float],
        limit: int = 10,
        filter: Optional[Dict[str, Any]] = None,
        score_threshold: Optional[float] = None,
    ) -> List[VectorHit]:
        """
        Search for similar vectors.

        Args:
            vector: Query vector
            limit: Maximum number of hits
            filter: Payload filter (see class docstring)
            score_threshold: Drop hits scoring below this

        Returns:
            Hits sorted by score descending
        """

    @abstractmethod
    async def update_payload(self, id: str, payload: Dict[str, Any]) -> None:
        """Merge payload fields into an existing point"""

    @abstractmethod
    async def delete(self, id: str) -> None:
        """Delete a point by id (no-op if absent)"""

    @abstractmethod
    async def delete_many(self, ids: List[str]) -> None:
        """Delete several points by id"""

    @abstractmethod
    async def delete_by_filter(self, filter: Dict[str, Any]) -> None:
        """Delete every point whose payload matches the filter"""

    @abstractmethod
    async def scroll(
        self,
        filter: Optional[Dict[str, Any]] = None,
        limit: int = 256,
        offset: Optional[str] = None,
    ) -> Tuple[List[VectorHit], Optional[str]]:
        """
        Page through points in id order.

        Returns:
            (hits, next_offset); next_offset is None on the last page
        """

    @abstractmethod
    async def ping(self) -> bool:
        """True if the index is reachable"""


RANGE_OPERATORS = ("gt", "gte", "lt", "lte")


def _matches_condition(actual: Any, expected: Any) -> bool:
    if isinstance(expected, dict):
        if not isinstance(actual, (int, float)) or isinstance(actual, bool):
            return False
        bounds = {op: expected[op] for op in RANGE_OPERATORS if expected.get(op) is not None}
        return (
            ("gt" not in bounds or actual > bounds["gt"])
            and ("gte" not in bounds or actual >= bounds["gte"])
            and ("lt" not in bounds or actual < bounds["lt"])
            and ("lte" not in bounds or actual <= bounds["lte"])
        )
    if isinstance(expected, (list, tuple, set)):
        if isinstance(actual, list):
            return any(item in expected for item in actual)
        return actual in expected
    if isinstance(actual, list):
        return expected in actual
    return actual == expected


def _matches_filter(payload: Dict[str, Any], filter_dict: Optional[Dict[str, Any]]) -> bool:
    """Check if payload matches filter criteria."""
    if not filter_dict:
        return True
    for key, expected in filter_dict.items():
        if key not in payload or not _matches_condition(payload[key], expected):
            return False
    return True


class InMemoryVectorIndex(VectorIndex):
    """
    Simple in-memory vector index using numpy cosine similarity.
    Suitable for development, tests and small single-process deployments.
    """

    def __init__(self):
        self._vectors: Dict[str, np.ndarray] = {}
        self._payloads: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, id: str) -> bool:
        return id in self._vectors

    def get_payload(self, id: str) -> Optional[Dict[str, Any]]:
        payload = self._payloads.get(id)
        return dict(payload) if payload is not None else None

    async def upsert(self, id: str, vector: List[float], payload: Dict[str, Any]) -> None:
        self._vectors[id] = np.asarray(vector, dtype=float)
        self._payloads[id] = dict(payload)

    async def upsert_many(self, points: List[VectorPoint]) -> None:
        for point in points:
            await self.upsert(point.id, point.vector, point.payload)

    async def search(
        self,
        vector: List[float],
        limit: int = 10,
        filter: Optional[Dict[str, Any]] = None,
        score_threshold: Optional[float] = None,
    ) -> List[VectorHit]:
        if not self._vectors or limit <= 0:
            return []

        query_vec = np.asarray(vector, dtype=float)
        query_norm = np.linalg.norm(query_vec)

        scores = []
        for id, vec in self._vectors.items():
            if not _matches_filter(self._payloads[id], filter):
                continue

            norm = query_norm * np.linalg.norm(vec)
            similarity = float(np.dot(query_vec, vec) / norm) if norm else 0.0
            if score_threshold is not None and similarity < score_threshold:
                continue
            scores.append((id, similarity))

        # Sort by score descending, id for determinism
        scores.sort(key=lambda x: (-x[1], x[0]))

        return [
            VectorHit(id=id, score=score, payload=dict(self._payloads[id]))
            for id, score in scores[:limit]
        ]

    async def update_payload(self, id: str, payload: Dict[str, Any]) -> None:
        if id in self._payloads:
            self._payloads[id].update(payload)

    async def delete(self, id: str) -> None:
        self._vectors.pop(id, None)
        self._payloads.pop(id, None)

    async def delete_many(self, ids: List[str]) -> None:
        for id in ids:
            await self.delete(id)

    async def delete_by_filter(self, filter: Dict[str, Any]) -> None:
        doomed = [id for id, payload in self._payloads.items() if _matches_filter(payload, filter)]
        await self.delete_many(doomed)

    async def scroll(
        self,
        filter: Optional[Dict[str, Any]] = None,
        limit: int = 256,
        offset: Optional[str] = None,
    ) -> Tuple[List[VectorHit], Optional[str]]:
        ids = sorted(
            id for id, payload in self._payloads.items()
            if _matches_filter(payload, filter) and (offset is None or id >= offset)
        )
        page = ids[:limit]
        next_offset = ids[limit] if len(ids) > limit else None
        hits = [VectorHit(id=id, score=0.0, payload=dict(self._payloads[id])) for id in page]
        return hits, next_offset

    async def ping(self) -> bool:
        return True
