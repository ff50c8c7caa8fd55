"""
Context Engine Schemas

Context records, version snapshots, requests and the vector payload projection.
"""

from .context import (
    Context,
    ContextMetadata,
    ContextVersion,
    ContextTier,
    ContextType,
    Entity,
    CreateContextRequest,
    UpdateContextRequest,
    RetrievalRequest,
    FeedbackEvent,
    EvolutionRequest,
    TIER_SEARCH_ORDER,
    utcnow,
)
from .payload import build_vector_payload, payload_generation, context_generation, PAYLOAD_FIELDS

__all__ = [
    "Context",
    "ContextMetadata",
    "ContextVersion",
    "ContextTier",
    "ContextType",
    "Entity",
    "CreateContextRequest",
    "UpdateContextRequest",
    "RetrievalRequest",
    "FeedbackEvent",
    "EvolutionRequest",
    "TIER_SEARCH_ORDER",
    "utcnow",
    "build_vector_payload",
    "payload_generation",
    "context_generation",
    "PAYLOAD_FIELDS",
]
