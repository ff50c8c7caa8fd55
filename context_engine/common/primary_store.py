"""
Primary Store

Source of truth for context records and their version snapshots.

`PrimaryStore` is the contract ContextStorage, the retriever and the
evolution engine depend on. `InMemoryPrimaryStore` is the reference
implementation: process-local dicts, optionally persisted to a JSON file
after every mutation.
"""

import json
import uuid
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StoreUnavailableError, ValidationError
from .schemas import Context, ContextMetadata, ContextTier, ContextType, ContextVersion, utcnow

logger = logging.getLogger("context_engine.common.primary_store")


class PrimaryStore(ABC):
    """
    Contract for the primary record store.

    All methods return detached copies; mutating a returned Context never
    changes stored state. Implementations translate transport errors into
    StoreUnavailableError.
    """

    @abstractmethod
    async def insert(self, context: Context) -> Context:
        """Store a new context, assigning its id. Returns the stored copy."""

    @abstractmethod
    async def insert_many(self, contexts: List[Context]) -> List[Context]:
        """Store several new contexts, assigning ids, in order"""

    @abstractmethod
    async def get(self, context_id: str) -> Optional[Context]:
        """Fetch one context by id"""

    @abstractmethod
    async def get_many(self, context_ids: List[str]) -> List[Context]:
        """Fetch the known contexts among `context_ids`, in request order"""

    @abstractmethod
    async def replace(self, context: Context) -> Optional[Context]:
        """
        Overwrite an existing record, returning the stored copy.

        `metadata.usage_count` and `last_accessed` belong to record_access
        and are kept from the stored record, so an access that lands while
        the caller prepared `context` is never lost. None if the id is unknown.
        """

    @abstractmethod
    async def update_fields(self, context_id: str, fields: Dict[str, Any]) -> Optional[Context]:
        """Set top-level fields on a record, returning the updated copy"""

    @abstractmethod
    async def record_access(self, context_id: str, accessed_at: datetime) -> bool:
        """
        Atomically increment metadata.usage_count and set last_accessed.

        Does not touch updated_at. False if the id is unknown.
        """

    @abstractmethod
    async def delete(self, context_id: str) -> bool:
        """Delete one record. False if the id is unknown."""

    @abstractmethod
    async def delete_many(self, context_ids: List[str]) -> List[str]:
        """Delete records, returning the ids that existed"""

    @abstractmethod
    async def find(
        self,
        workspace_id: str,
        tier: Optional[ContextTier] = None,
        type: Optional[ContextType] = None,
        limit: Optional[int] = None,
        after_id: Optional[str] = None,
    ) -> List[Context]:
        """Workspace-scoped query ordered by id (keyset pagination via after_id)"""

    @abstractmethod
    async def count(
        self,
        workspace_id: str,
        tier: Optional[ContextTier] = None,
        type: Optional[ContextType] = None,
    ) -> int:
        """Count records matching a workspace-scoped query"""

    @abstractmethod
    async def append_version(
        self,
        context_id: str,
        content: str,
        metadata: ContextMetadata,
        max_versions: Optional[int] = None,
    ) -> ContextVersion:
        """
        Append a snapshot with the next version number for the context.

        When `max_versions` is given, older snapshots beyond it are pruned.
        """

    @abstractmethod
    async def list_versions(self, context_id: str, limit: Optional[int] = None) -> List[ContextVersion]:
        """Snapshots newest first"""

    @abstractmethod
    async def get_version(self, context_id: str, version: int) -> Optional[ContextVersion]:
        """Fetch one snapshot"""

    @abstractmethod
    async def delete_versions(self, context_id: str) -> int:
        """Drop the version history of a context, returning how many were removed"""

    @abstractmethod
    async def ping(self) -> bool:
        """True if the store is reachable"""


def _matches(context: Context, workspace_id: str, tier, type) -> bool:
    if context.workspace_id != workspace_id:
        return False
    if tier is not None and context.tier != ContextTier(tier):
        return False
    if type is not None and context.type != ContextType(type):
        return False
    return True


class InMemoryPrimaryStore(PrimaryStore):
    """
    Dict-backed primary store.

    With `data_path`, the full state is loaded at construction and written
    back as JSON after every mutation.
    """

    def __init__(self, data_path: Optional[Path] = None):
        self._data_path = Path(data_path).expanduser() if data_path else None
        self._contexts: Dict[str, Context] = {}
        self._versions: Dict[str, List[ContextVersion]] = {}
        self._next_version: Dict[str, int] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        """Load state from disk"""
        if self._data_path is None or not self._data_path.exists():
            return

        try:
            with open(self._data_path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise StoreUnavailableError(f"Failed to load {self._data_path}: {e}") from e

        self._contexts = {
            item["id"]: Context.model_validate(item) for item in data.get("contexts", [])
        }
        self._versions = {
            context_id: [ContextVersion.model_validate(v) for v in versions]
            for context_id, versions in data.get("versions", {}).items()
        }
        self._next_version = {
            context_id: int(n) for context_id, n in data.get("next_version", {}).items()
        }
        logger.info("Loaded %d contexts from %s", len(self._contexts), self._data_path)

    def _save(self) -> None:
        """Save state to disk"""
        if self._data_path is None:
            return

        data = {
            "contexts": [c.model_dump(mode="json") for c in self._contexts.values()],
            "versions": {
                context_id: [v.model_dump(mode="json") for v in versions]
                for context_id, versions in self._versions.items()
            },
            "next_version": self._next_version,
        }

        try:
            self._data_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._data_path, "w") as f:
                json.dump(data, f, indent=2, default=str)
        except IOError as e:
            raise StoreUnavailableError(f"Failed to write {self._data_path}: {e}") from e

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def insert(self, context: Context) -> Context:
        stored = context.model_copy(deep=True)
        if not stored.id:
            stored.id = str(uuid.uuid4())
        elif stored.id in self._contexts:
            raise ValidationError(f"Context already exists: {stored.id}")
        self._contexts[stored.id] = stored
        self._save()
        return stored.model_copy(deep=True)

    async def insert_many(self, contexts: List[Context]) -> List[Context]:
        stored = []
        for context in contexts:
            item = context.model_copy(deep=True)
            if not item.id:
                item.id = str(uuid.uuid4())
            stored.append(item)
        for item in stored:
            self._contexts[item.id] = item
        self._save()
        return [item.model_copy(deep=True) for item in stored]

    async def get(self, context_id: str) -> Optional[Context]:
        context = self._contexts.get(context_id)
        return context.model_copy(deep=True) if context else None

    async def get_many(self, context_ids: List[str]) -> List[Context]:
        return [
            self._contexts[context_id].model_copy(deep=True)
            for context_id in context_ids
            if context_id in self._contexts
        ]

    async def replace(self, context: Context) -> Optional[Context]:
        stored = self._contexts.get(context.id) if context.id else None
        if stored is None:
            return None
        updated = context.model_copy(deep=True)
        updated.metadata.usage_count = stored.metadata.usage_count
        updated.last_accessed = stored.last_accessed
        self._contexts[context.id] = updated
        self._save()
        return updated.model_copy(deep=True)

    async def update_fields(self, context_id: str, fields: Dict[str, Any]) -> Optional[Context]:
        context = self._contexts.get(context_id)
        if context is None:
            return None
        updated = Context.model_validate({**context.model_dump(), **fields})
        self._contexts[context_id] = updated
        self._save()
        return updated.model_copy(deep=True)

    async def record_access(self, context_id: str, accessed_at: datetime) -> bool:
        context = self._contexts.get(context_id)
        if context is None:
            return False
        context.metadata.usage_count += 1
        context.last_accessed = accessed_at
        self._save()
        return True

    async def delete(self, context_id: str) -> bool:
        if self._contexts.pop(context_id, None) is None:
            return False
        self._save()
        return True

    async def delete_many(self, context_ids: List[str]) -> List[str]:
        deleted = [cid for cid in context_ids if self._contexts.pop(cid, None) is not None]
        if deleted:
            self._save()
        return deleted

    async def find(
        self,
        workspace_id: str,
        tier: Optional[ContextTier] = None,
        type: Optional[ContextType] = None,
        limit: Optional[int] = None,
        after_id: Optional[str] = None,
    ) -> List[Context]:
        matches = sorted(
            (
                c for c in self._contexts.values()
                if _matches(c, workspace_id, tier, type) and (after_id is None or c.id > after_id)
            ),
            key=lambda c: c.id,
        )
        if limit is not None:
            matches = matches[:limit]
        return [c.model_copy(deep=True) for c in matches]

    async def count(
        self,
        workspace_id: str,
        tier: Optional[ContextTier] = None,
        type: Optional[ContextType] = None,
    ) -> int:
        return sum(1 for c in self._contexts.values() if _matches(c, workspace_id, tier, type))

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    async def append_version(
        self,
        context_id: str,
        content: str,
        metadata: ContextMetadata,
        max_versions: Optional[int] = None,
    ) -> ContextVersion:
        number = self._next_version.get(context_id, 1)
        version = ContextVersion(
            context_id=context_id,
            version=number,
            content=content,
            metadata=metadata.model_copy(deep=True),
            created_at=utcnow(),
        )
        self._next_version[context_id] = number + 1

        history = self._versions.setdefault(context_id, [])
        history.append(version)
        if max_versions is not None and len(history) > max_versions:
            del history[: len(history) - max_versions]

        self._save()
        return version.model_copy(deep=True)

    async def list_versions(self, context_id: str, limit: Optional[int] = None) -> List[ContextVersion]:
        history = list(reversed(self._versions.get(context_id, [])))
        if limit is not None:
            history = history[:limit]
        return [v.model_copy(deep=True) for v in history]

    async def get_version(self, context_id: str, version: int) -> Optional[ContextVersion]:
        for item in self._versions.get(context_id, []):
            if item.version == version:
                return item.model_copy(deep=True)
        return None

    async def delete_versions(self, context_id: str) -> int:
        removed = len(self._versions.pop(context_id, []))
        self._next_version.pop(context_id, None)
        if removed:
            self._save()
        return removed

    async def ping(self) -> bool:
        return True
