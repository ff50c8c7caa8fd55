"""
Context Schema

Core principle: the Primary Store holds the full Context and is the source of
truth. The Vector Index only holds the embedding plus a filterable projection
(see payload.py), so every index entry can be rebuilt from the primary record.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current time (all stored timestamps are UTC)"""
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class ContextTier(str, Enum):
    """Scope of a context, in search priority order"""
    WORKSPACE = "workspace"
    HYBRID = "hybrid"
    GLOBAL = "global"


# Hierarchical search order: most specific first
TIER_SEARCH_ORDER = (ContextTier.WORKSPACE, ContextTier.HYBRID, ContextTier.GLOBAL)


class ContextType(str, Enum):
    """Kind of knowledge a context carries"""
    FILE = "file"
    SYMBOL = "symbol"
    DOCUMENTATION = "documentation"
    CONVERSATION = "conversation"
    ERROR = "error"
    ARCHITECTURE = "architecture"


# ============================================================================
# Sub-models
# ============================================================================

class ContextMetadata(BaseModel):
    """
    Metadata with a small closed set of first-class fields and an open
    extension map for everything else.
    """
    source: str = Field(default="", description="File path, URL or origin of the context")
    tags: List[str] = Field(default_factory=list)
    usage_count: int = Field(default=0, ge=0, description="Incremented by retrieval only")
    confidence: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="Mutated only by the evolution engine"
    )
    extra: Dict[str, Any] = Field(default_factory=dict)

    @property
    def effective_confidence(self) -> float:
        """Confidence with the absent-means-1.0 default applied"""
        return 1.0 if self.confidence is None else self.confidence

    def merged(self, patch: Dict[str, Any]) -> "ContextMetadata":
        """
        Return a copy with a patch applied.

        Known fields are replaced; unknown keys land in `extra`.
        An explicit `extra` dict in the patch is merged key by key.
        """
        data = self.model_dump()
        extra = dict(data.get("extra") or {})
        for key, value in patch.items():
            if key == "extra":
                extra.update(value or {})
            elif key in ContextMetadata.model_fields:
                data[key] = value
            else:
                extra[key] = value
        data["extra"] = extra
        return ContextMetadata.model_validate(data)


class Entity(BaseModel):
    """Named entity extracted from a prompt by an upstream analyzer"""
    value: str
    type: str = "unknown"
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)


# ============================================================================
# Main Schema
# ============================================================================

class Context(BaseModel):
    """
    A retrievable unit of knowledge.

    `id` is assigned by the Primary Store on insert and never changes, nor
    does `workspace_id`. `embedding` is owned by ContextStorage. `indexed`
    is False while the current generation is not known to be in the Vector
    Index.
    """
    id: Optional[str] = None
    workspace_id: str
    tier: ContextTier
    type: ContextType
    content: str
    metadata: ContextMetadata = Field(default_factory=ContextMetadata)
    embedding: Optional[List[float]] = None
    indexed: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_accessed: Optional[datetime] = None

    @property
    def reference_time(self) -> datetime:
        """Recency anchor used by freshness scoring and tie-breaking"""
        return self.last_accessed or self.updated_at


class ContextVersion(BaseModel):
    """Immutable snapshot of content + metadata taken before an update"""
    context_id: str
    version: int = Field(ge=1)
    content: str
    metadata: ContextMetadata
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Requests and events
# ============================================================================

class CreateContextRequest(BaseModel):
    """Input to ContextStorage.create"""
    workspace_id: str = Field(..., min_length=1)
    tier: ContextTier
    type: ContextType
    content: str
    metadata: ContextMetadata = Field(default_factory=ContextMetadata)
    generate_embeddings: bool = True
    index_in_vector_db: bool = True

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("content must not be empty")
        return value


class UpdateContextRequest(BaseModel):
    """
    Input to ContextStorage.update.

    `metadata` is a patch merged into the current metadata unless
    `replace_metadata` is set. `preserve_updated_at` is for bookkeeping
    writes (temporal decay) that must not reset the record's age.
    `create_version=False` skips the pre-update snapshot for the same kind of
    writes, so they do not push real edits out of the retained history.
    """
    context_id: str = Field(..., min_length=1)
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    tier: Optional[ContextTier] = None
    type: Optional[ContextType] = None
    regenerate_embeddings: bool = True
    replace_metadata: bool = False
    preserve_updated_at: bool = False
    create_version: bool = True

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("content must not be empty")
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_as_dict(cls, value: Any) -> Any:
        if isinstance(value, ContextMetadata):
            return value.model_dump()
        return value


class RetrievalRequest(BaseModel):
    """Input to ContextRetriever.retrieve"""
    query: str = ""
    workspace_id: str = Field(..., min_length=1)
    entities: List[Entity] = Field(default_factory=list)
    tier: Optional[ContextTier] = None  # restrict to one tier instead of the hierarchy
    limit: Optional[int] = Field(default=None, ge=1)
    min_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    timeout_s: Optional[float] = Field(default=None, gt=0.0)
    # Payload filters applied in every searched tier
    type: Optional[ContextType] = None
    source: Optional[str] = None
    tags: List[str] = Field(default_factory=list)  # match any
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class FeedbackEvent(BaseModel):
    """User feedback on a context that was injected into a prompt"""
    context_id: str = Field(..., min_length=1)
    workspace_id: Optional[str] = None
    helpful: bool
    used: bool = False  # counts as an access: usage_count + 1, last_accessed = timestamp
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    timestamp: datetime = Field(default_factory=utcnow)
    interaction_id: Optional[str] = None


class EvolutionRequest(BaseModel):
    """Input to ContextEvolutionEngine.evolve"""
    workspace_id: str = Field(..., min_length=1)
    apply_temporal_decay: bool = True
    consolidate_similar: bool = False
    resolve_conflicts: bool = False
