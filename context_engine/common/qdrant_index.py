"""
Qdrant Vector Index

VectorIndex implementation backed by qdrant-client's async API.

Usage:
    index = QdrantVectorIndex(url="http://localhost:6333", collection="contexts")
    await index.ensure_collection()

Local mode (`location=":memory:"`) runs without a server and is what the
tests use.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from qdrant_client import AsyncQdrantClient, models

from .errors import IndexUnavailableError
from .vector_index import VectorHit, VectorIndex, VectorPoint

logger = logging.getLogger("context_engine.common.qdrant_index")

# Payload fields used in filters get payload indexes
INDEXED_PAYLOAD_FIELDS = (
    ("workspace_id", models.PayloadSchemaType.KEYWORD),
    ("tier", models.PayloadSchemaType.KEYWORD),
    ("type", models.PayloadSchemaType.KEYWORD),
    ("source", models.PayloadSchemaType.KEYWORD),
    ("tags", models.PayloadSchemaType.KEYWORD),
    ("confidence", models.PayloadSchemaType.FLOAT),
)


def _build_condition(key: str, value: Any) -> models.FieldCondition:
    if isinstance(value, dict):
        return models.FieldCondition(
            key=key,
            range=models.Range(
                gt=value.get("gt"), gte=value.get("gte"), lt=value.get("lt"), lte=value.get("lte")
            ),
        )
    if isinstance(value, (list, tuple, set)):
        return models.FieldCondition(key=key, match=models.MatchAny(any=list(value)))
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


def _build_filter(filter_dict: Optional[Dict[str, Any]]) -> Optional[models.Filter]:
    """Translate a VectorIndex filter dict into a Qdrant filter"""
    if not filter_dict:
        return None
    return models.Filter(must=[_build_condition(key, value) for key, value in filter_dict.items()])


class QdrantVectorIndex(VectorIndex):
    """
    Qdrant-backed vector index.

    Every client call is funnelled through `_call`, which translates
    transport and server errors into IndexUnavailableError.
    """

    def __init__(
        self,
        url: Optional[str] = "http://localhost:6333",
        api_key: Optional[str] = None,
        collection: str = "contexts",
        vector_size: int = 384,
        location: Optional[str] = None,
        client: Optional[AsyncQdrantClient] = None,
    ):
        if client is not None:
            self._client = client
        elif location is not None:
            self._client = AsyncQdrantClient(location=location)
        else:
            self._client = AsyncQdrantClient(url=url, api_key=api_key or None)
        self._collection = collection
        self._vector_size = vector_size
        self._collection_ready = False

    @property
    def collection(self) -> str:
        return self._collection

    async def _call(self, operation: str, coro):
        try:
            return await coro
        except IndexUnavailableError:
            raise
        except Exception as e:
            logger.error("Qdrant %s on %s failed: %s", operation, self._collection, e)
            raise IndexUnavailableError(f"Qdrant {operation} failed: {e}") from e

    async def ensure_collection(self) -> None:
        """Create the collection and its payload indexes if missing"""
        if self._collection_ready:
            return

        exists = await self._call(
            "collection_exists", self._client.collection_exists(self._collection)
        )
        if not exists:
            await self._call(
                "create_collection",
                self._client.create_collection(
                    collection_name=self._collection,
                    vectors_config=models.VectorParams(
                        size=self._vector_size,
                        distance=models.Distance.COSINE,
                    ),
                ),
            )
            for field_name, schema in INDEXED_PAYLOAD_FIELDS:
                await self._call(
                    "create_payload_index",
                    self._client.create_payload_index(
                        collection_name=self._collection,
                        field_name=field_name,
                        field_schema=schema,
                    ),
                )
            logger.info("Created Qdrant collection %s (dim=%d)", self._collection, self._vector_size)

        self._collection_ready = True

    async def upsert(self, id: str, vector: List[float], payload: Dict[str, Any]) -> None:
        await self.upsert_many([VectorPoint(id=id, vector=vector, payload=payload)])

    async def upsert_many(self, points: List[VectorPoint]) -> None:
        if not points:
            return
        await self.ensure_collection()
        await self._call(
            "upsert",
            self._client.upsert(
                collection_name=self._collection,
                points=[
                    models.PointStruct(id=p.id, vector=list(p.vector), payload=p.payload)
                    for p in points
                ],
            ),
        )

    async def search(
        self,
        vector: List[float],
        limit: int = 10,
        filter: Optional[Dict[str, Any]] = None,
        score_threshold: Optional[float] = None,
    ) -> List[VectorHit]:
        await self.ensure_collection()
        response = await self._call(
            "search",
            self._client.query_points(
                collection_name=self._collection,
                query=list(vector),
                query_filter=_build_filter(filter),
                limit=limit,
                score_threshold=score_threshold,
                with_payload=True,
            ),
        )
        return [
            VectorHit(id=str(point.id), score=float(point.score), payload=point.payload or {})
            for point in response.points
        ]

    async def update_payload(self, id: str, payload: Dict[str, Any]) -> None:
        await self.ensure_collection()
        await self._call(
            "set_payload",
            self._client.set_payload(
                collection_name=self._collection,
                payload=payload,
                points=[id],
            ),
        )

    async def delete(self, id: str) -> None:
        await self.delete_many([id])

    async def delete_many(self, ids: List[str]) -> None:
        if not ids:
            return
        await self.ensure_collection()
        await self._call(
            "delete",
            self._client.delete(
                collection_name=self._collection,
                points_selector=models.PointIdsList(points=list(ids)),
            ),
        )

    async def delete_by_filter(self, filter: Dict[str, Any]) -> None:
        await self.ensure_collection()
        await self._call(
            "delete_by_filter",
            self._client.delete(
                collection_name=self._collection,
                points_selector=models.FilterSelector(filter=_build_filter(filter)),
            ),
        )

    async def scroll(
        self,
        filter: Optional[Dict[str, Any]] = None,
        limit: int = 256,
        offset: Optional[str] = None,
    ) -> Tuple[List[VectorHit], Optional[str]]:
        await self.ensure_collection()
        records, next_offset = await self._call(
            "scroll",
            self._client.scroll(
                collection_name=self._collection,
                scroll_filter=_build_filter(filter),
                limit=limit,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            ),
        )
        hits = [VectorHit(id=str(r.id), score=0.0, payload=r.payload or {}) for r in records]
        return hits, (str(next_offset) if next_offset is not None else None)

    async def ping(self) -> bool:
        try:
            await self._client.get_collections()
            return True
        except Exception as e:
            logger.warning("Qdrant ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self._client.close()
