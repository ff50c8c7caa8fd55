"""
Context Engine Errors

Exception taxonomy shared by storage, retrieval and evolution.

Propagation policy:
- Request-blocking operations (retrieve, create, update) surface
  StoreUnavailableError / IndexUnavailableError to the caller.
- Background side effects (usage tracking, best-effort index deletes)
  only log them.
- Stale index entries are never raised; they are described by
  StaleIndexEntry records and logged.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ContextEngineError(Exception):
    """Base class for all context engine errors"""


class ValidationError(ContextEngineError, ValueError):
    """Malformed request"""


class ConfigurationError(ValidationError):
    """Malformed configuration, raised at construction time"""


class NotFoundError(ContextEngineError, LookupError):
    """Unknown context id"""

    def __init__(self, context_id: str, message: Optional[str] = None):
        self.context_id = context_id
        super().__init__(message or f"Context not found: {context_id}")


class StoreUnavailableError(ContextEngineError):
    """Primary store unreachable. Always fatal."""


class IndexUnavailableError(ContextEngineError):
    """Vector index unreachable. Fatal for retrieval only."""


@dataclass
class StaleIndexEntry:
    """A vector hit whose id has no matching primary record"""
    context_id: str
    workspace_id: Optional[str] = None
    tier: Optional[str] = None
    score: float = 0.0
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexFailure:
    """
    A vector index write that failed after the primary write succeeded.

    Entries are kept on ContextStorage.index_failures so repair tooling can
    pick them up without the original call having raised.
    """
    context_id: str
    operation: str  # "upsert", "update_payload", "delete"
    error: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
