"""
Context Storage

Dual-write CRUD over the Primary Store (source of truth) and the Vector
Index (searchable projection), with version snapshots.

Write order is always primary first, index second. A record is written with
`indexed=False` and only flipped to True once the index has acknowledged the
current generation, so a crash or an unreachable index leaves a record the
IndexReconciler can find and repair. Index failures on writes are recorded
on `index_failures` and never raised to the caller.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

import pydantic

from ..common.config import StorageConfig
from ..common.embedding_service import EmbeddingProvider
from ..common.errors import (
    ContextEngineError,
    IndexFailure,
    IndexUnavailableError,
    NotFoundError,
    ValidationError,
)
from ..common.primary_store import PrimaryStore
from ..common.schemas import (
    Context,
    ContextMetadata,
    ContextTier,
    ContextType,
    ContextVersion,
    CreateContextRequest,
    UpdateContextRequest,
    build_vector_payload,
    utcnow,
)
from ..common.vector_index import VectorIndex, VectorPoint

logger = logging.getLogger("context_engine.storage.context_storage")


@dataclass
class BatchItemFailure:
    """A request in a batch that was not created"""
    index: int  # position in the submitted batch
    error: str


@dataclass
class BatchCreateResult:
    """Outcome of create_contexts_batch"""
    created: List[Context] = field(default_factory=list)
    failures: List[BatchItemFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class BatchDeleteResult:
    """Outcome of delete_contexts_batch"""
    deleted: int = 0
    missing: List[str] = field(default_factory=list)
    index_failures: int = 0


def _coerce(request: Any, model):
    """Accept a request model or a plain dict, raising ValidationError on bad input"""
    if isinstance(request, model):
        return request
    try:
        return model.model_validate(request)
    except pydantic.ValidationError as e:
        raise ValidationError(str(e)) from e


class ContextStorage:
    """
    Context CRUD across the primary store and the vector index.

    Failure semantics:
    - StoreUnavailableError from the primary store propagates.
    - IndexUnavailableError from the vector index is recorded on
      `index_failures` (and passed to `on_index_failure`), logged with the
      context id, and leaves the record with `indexed=False`.
    """

    def __init__(
        self,
        primary_store: PrimaryStore,
        vector_index: VectorIndex,
        embedding_provider: EmbeddingProvider,
        config: Optional[StorageConfig] = None,
        on_index_failure: Optional[Callable[[IndexFailure], None]] = None,
    ):
        """
        Initialize context storage.

        Args:
            primary_store: Source of truth for records and versions
            vector_index: Searchable embedding projection
            embedding_provider: Embeds content on create/update
            config: Batch size and versioning settings
            on_index_failure: Called with each IndexFailure as it is recorded
        """
        self._primary = primary_store
        self._index = vector_index
        self._embedding = embedding_provider
        self._config = config or StorageConfig()
        self._on_index_failure = on_index_failure
        self.index_failures: Deque[IndexFailure] = deque(maxlen=self._config.max_recorded_failures)

    @property
    def primary_store(self) -> PrimaryStore:
        return self._primary

    @property
    def vector_index(self) -> VectorIndex:
        return self._index

    @property
    def config(self) -> StorageConfig:
        return self._config

    # ========================================================================
    # Index failure channel
    # ========================================================================

    def _record_index_failure(self, context_id: str, operation: str, error: Exception) -> None:
        failure = IndexFailure(context_id=context_id, operation=operation, error=str(error))
        self.index_failures.append(failure)
        logger.warning(
            "Vector index %s failed for context_id=%s: %s", operation, context_id, error
        )
        if self._on_index_failure is not None:
            try:
                self._on_index_failure(failure)
            except Exception:
                logger.exception("on_index_failure callback raised for context_id=%s", context_id)

    async def _index_context(self, context: Context) -> Context:
        """Upsert the full point for a record and flip `indexed` on success"""
        try:
            await self._index.upsert(context.id, context.embedding, build_vector_payload(context))
        except IndexUnavailableError as e:
            self._record_index_failure(context.id, "upsert", e)
            return context

        return await self._primary.update_fields(context.id, {"indexed": True}) or context

    async def _patch_payload(self, context: Context) -> Context:
        """Patch only the payload fields of an existing point"""
        try:
            await self._index.update_payload(context.id, build_vector_payload(context))
        except IndexUnavailableError as e:
            self._record_index_failure(context.id, "update_payload", e)
            return context

        return await self._primary.update_fields(context.id, {"indexed": True}) or context

    # ========================================================================
    # Single-context operations
    # ========================================================================

    async def create(self, request: Union[CreateContextRequest, Dict[str, Any]]) -> Context:
        """
        Create a new context.

        Args:
            request: CreateContextRequest or an equivalent dict

        Returns:
            The stored Context. `indexed` is False when indexing was skipped
            or the vector index write failed.

        Raises:
            ValidationError: empty workspace/content, unknown tier or type
            StoreUnavailableError: primary store unreachable
        """
        request = _coerce(request, CreateContextRequest)

        embedding = None
        if request.generate_embeddings:
            embedding = await self._embedding.embed(request.content)

        now = utcnow()
        context = await self._primary.insert(
            Context(
                workspace_id=request.workspace_id,
                tier=request.tier,
                type=request.type,
                content=request.content,
                metadata=request.metadata.model_copy(deep=True),
                embedding=embedding,
                indexed=False,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Created context %s (workspace=%s, tier=%s, type=%s)",
            context.id, context.workspace_id, context.tier.value, context.type.value,
        )

        if request.index_in_vector_db and embedding is not None:
            context = await self._index_context(context)
        return context

    async def get_context(self, context_id: str) -> Optional[Context]:
        """Get a context by id. Does not count as an access."""
        return await self._primary.get(context_id)

    async def require_context(self, context_id: str) -> Context:
        """Get a context by id, raising NotFoundError if it does not exist"""
        context = await self._primary.get(context_id)
        if context is None:
            raise NotFoundError(context_id)
        return context

    async def update(self, request: Union[UpdateContextRequest, Dict[str, Any]]) -> Optional[Context]:
        """
        Update an existing context.

        The pre-update content and metadata are snapshotted first (when
        versioning is enabled and `create_version` is set). `metadata.usage_count`
        and `last_accessed` are always taken from the stored record at write
        time: only record_access changes them.

        Args:
            request: UpdateContextRequest or an equivalent dict

        Returns:
            The updated Context, or None if the id is unknown
        """
        request = _coerce(request, UpdateContextRequest)

        current = await self._primary.get(request.context_id)
        if current is None:
            logger.warning("Context not found for update: %s", request.context_id)
            return None

        updated = current.model_copy(deep=True)
        content_changed = request.content is not None and request.content != current.content
        if request.content is not None:
            updated.content = request.content

        if request.metadata is not None:
            try:
                if request.replace_metadata:
                    updated.metadata = ContextMetadata.model_validate(request.metadata)
                else:
                    updated.metadata = current.metadata.merged(request.metadata)
            except pydantic.ValidationError as e:
                raise ValidationError(str(e)) from e

        if request.tier is not None:
            updated.tier = request.tier
        if request.type is not None:
            updated.type = request.type
        if not request.preserve_updated_at:
            updated.updated_at = utcnow()

        reembed = request.regenerate_embeddings and request.content is not None and (
            content_changed or updated.embedding is None
        )
        if reembed:
            updated.embedding = await self._embedding.embed(updated.content)

        if self._config.enable_versioning and request.create_version:
            await self._primary.append_version(
                current.id,
                current.content,
                current.metadata,
                max_versions=self._config.max_versions,
            )

        # The new generation is not in the index until the write below succeeds
        updated.indexed = False
        stored = await self._primary.replace(updated)
        if stored is None:
            logger.warning("Context deleted during update: %s", request.context_id)
            await self._primary.delete_versions(request.context_id)
            return None
        updated = stored
        logger.info(
            "Updated context %s (content_changed=%s, reembedded=%s)",
            updated.id, content_changed, reembed,
        )

        if updated.embedding is None:
            return updated
        if reembed or not current.indexed:
            return await self._index_context(updated)
        return await self._patch_payload(updated)

    async def delete(self, context_id: str) -> bool:
        """
        Delete a context and its version history.

        The vector index delete is best-effort: a failure is recorded and the
        stale entry is filtered at retrieval until the reconciler removes it.

        Returns:
            False if the id is unknown
        """
        if not await self._primary.delete(context_id):
            logger.warning("Context not found for deletion: %s", context_id)
            return False

        await self._primary.delete_versions(context_id)

        try:
            await self._index.delete(context_id)
        except IndexUnavailableError as e:
            self._record_index_failure(context_id, "delete", e)

        logger.info("Deleted context %s", context_id)
        return True

    async def reindex(self, context_id: str) -> bool:
        """
        Re-upsert the current generation of a context into the vector index.

        Embeds the content first if the record has no embedding. Does not
        change `updated_at`.

        Returns:
            True if the index now holds the current generation
        """
        context = await self._primary.get(context_id)
        if context is None:
            logger.warning("Context not found for reindex: %s", context_id)
            return False

        if context.embedding is None:
            embedding = await self._embedding.embed(context.content)
            context = await self._primary.update_fields(context_id, {"embedding": embedding})
            if context is None:
                return False

        context = await self._index_context(context)
        return context.indexed

    # ========================================================================
    # Batch operations
    # ========================================================================

    def _chunks(self, items: Sequence) -> List[Sequence]:
        size = self._config.batch_size
        return [items[i:i + size] for i in range(0, len(items), size)]

    async def _create_chunk(self, chunk: Sequence[Tuple[int, CreateContextRequest]]) -> List[Context]:
        to_embed = [pos for pos, (_, req) in enumerate(chunk) if req.generate_embeddings]
        vectors = []
        if to_embed:
            vectors = await self._embedding.embed_batch([chunk[pos][1].content for pos in to_embed])
        embeddings = dict(zip(to_embed, vectors))

        now = utcnow()
        stored = await self._primary.insert_many([
            Context(
                workspace_id=req.workspace_id,
                tier=req.tier,
                type=req.type,
                content=req.content,
                metadata=req.metadata.model_copy(deep=True),
                embedding=embeddings.get(pos),
                indexed=False,
                created_at=now,
                updated_at=now,
            )
            for pos, (_, req) in enumerate(chunk)
        ])

        points = [
            VectorPoint(id=context.id, vector=context.embedding, payload=build_vector_payload(context))
            for context, (_, req) in zip(stored, chunk)
            if req.index_in_vector_db and context.embedding is not None
        ]
        if not points:
            return stored

        try:
            await self._index.upsert_many(points)
        except IndexUnavailableError as e:
            for point in points:
                self._record_index_failure(point.id, "upsert", e)
            return stored

        indexed_ids = {point.id for point in points}
        results = []
        for context in stored:
            if context.id in indexed_ids:
                context = await self._primary.update_fields(context.id, {"indexed": True}) or context
            results.append(context)
        return results

    async def create_contexts_batch(
        self,
        requests: List[Union[CreateContextRequest, Dict[str, Any]]],
    ) -> BatchCreateResult:
        """
        Create contexts in chunks of `batch_size`.

        Not atomic: invalid requests are reported individually, and a chunk
        whose embedding or primary write fails has all of its items reported
        as failed while the remaining chunks are still attempted.

        Returns:
            BatchCreateResult with created contexts (in request order) and
            per-item failures
        """
        result = BatchCreateResult()

        valid: List[Tuple[int, CreateContextRequest]] = []
        for index, raw in enumerate(requests):
            try:
                valid.append((index, _coerce(raw, CreateContextRequest)))
            except ValidationError as e:
                result.failures.append(BatchItemFailure(index=index, error=str(e)))

        for chunk in self._chunks(valid):
            try:
                result.created.extend(await self._create_chunk(chunk))
            except ContextEngineError as e:
                logger.error("Batch chunk of %d contexts failed: %s", len(chunk), e)
                result.failures.extend(BatchItemFailure(index=index, error=str(e)) for index, _ in chunk)

        result.failures.sort(key=lambda f: f.index)
        logger.info(
            "Batch create: %d created, %d failed", len(result.created), len(result.failures)
        )
        return result

    async def get_contexts_batch(self, context_ids: List[str]) -> List[Context]:
        """Fetch contexts by id in request order, skipping unknown ids"""
        contexts: List[Context] = []
        for chunk in self._chunks(list(context_ids)):
            contexts.extend(await self._primary.get_many(list(chunk)))
        return contexts

    async def delete_contexts_batch(self, context_ids: List[str]) -> BatchDeleteResult:
        """
        Delete contexts in chunks of `batch_size`.

        Returns:
            BatchDeleteResult with the deleted count, unknown ids, and the
            number of vector index deletions that failed
        """
        result = BatchDeleteResult()
        unique_ids = list(dict.fromkeys(context_ids))

        for chunk in self._chunks(unique_ids):
            existed = await self._primary.delete_many(list(chunk))
            existed_set = set(existed)
            result.deleted += len(existed)
            result.missing.extend(cid for cid in chunk if cid not in existed_set)

            for context_id in existed:
                await self._primary.delete_versions(context_id)

            if not existed:
                continue
            try:
                await self._index.delete_many(existed)
            except IndexUnavailableError as e:
                result.index_failures += len(existed)
                for context_id in existed:
                    self._record_index_failure(context_id, "delete", e)

        logger.info(
            "Batch delete: %d deleted, %d missing, %d index failures",
            result.deleted, len(result.missing), result.index_failures,
        )
        return result

    # ========================================================================
    # Workspace queries
    # ========================================================================

    async def list_contexts(
        self,
        workspace_id: str,
        tier: Optional[ContextTier] = None,
        type: Optional[ContextType] = None,
        limit: Optional[int] = None,
        after_id: Optional[str] = None,
    ) -> List[Context]:
        """Contexts of a workspace ordered by id; pass the last id as `after_id` for the next page"""
        return await self._primary.find(workspace_id, tier=tier, type=type, limit=limit, after_id=after_id)

    async def count_contexts(
        self,
        workspace_id: str,
        tier: Optional[ContextTier] = None,
        type: Optional[ContextType] = None,
    ) -> int:
        return await self._primary.count(workspace_id, tier=tier, type=type)

    # ========================================================================
    # Versions
    # ========================================================================

    async def get_context_versions(self, context_id: str, limit: int = 10) -> List[ContextVersion]:
        """Version snapshots, newest first (empty when versioning is disabled)"""
        if not self._config.enable_versioning:
            return []
        return await self._primary.list_versions(context_id, limit=limit)

    async def restore_context_version(self, context_id: str, version: int) -> Optional[Context]:
        """
        Restore content and metadata from a snapshot.

        Goes through `update`, so the restore itself is versioned and the
        embedding is regenerated if the content differs.

        Returns:
            The restored Context, or None if the context or version is unknown

        Raises:
            ValidationError: versioning is disabled
        """
        if not self._config.enable_versioning:
            raise ValidationError("Versioning is disabled")

        snapshot = await self._primary.get_version(context_id, version)
        if snapshot is None:
            logger.warning("Version %d not found for context %s", version, context_id)
            return None

        return await self.update(
            UpdateContextRequest(
                context_id=context_id,
                content=snapshot.content,
                metadata=snapshot.metadata.model_dump(),
                replace_metadata=True,
                regenerate_embeddings=True,
            )
        )

    # ========================================================================
    # Health
    # ========================================================================

    async def health_check(self) -> Dict[str, bool]:
        """Reachability of both stores"""
        status = {}
        for name, store in (("primary_store", self._primary), ("vector_index", self._index)):
            try:
                status[name] = await store.ping()
            except ContextEngineError as e:
                logger.warning("Health check for %s failed: %s", name, e)
                status[name] = False
        return status
