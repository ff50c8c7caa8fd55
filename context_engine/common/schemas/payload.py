"""
Vector Payload Projection

Renders a Context into the filterable payload stored next to its embedding.
The payload never carries `content`: hits are hydrated from the Primary Store.
Usage counters are not projected: record_access only touches the Primary Store.
`updated_at` doubles as the generation marker used by the reconciler.
"""

from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .context import Context


PAYLOAD_FIELDS = (
    "workspace_id",
    "tier",
    "type",
    "source",
    "tags",
    "confidence",
    "created_at",
    "updated_at",
)


def build_vector_payload(context: "Context") -> Dict[str, Any]:
    """Project a Context onto the vector index payload"""
    return {
        "workspace_id": context.workspace_id,
        "tier": context.tier.value,
        "type": context.type.value,
        "source": context.metadata.source,
        "tags": list(context.metadata.tags),
        "confidence": context.metadata.effective_confidence,
        "created_at": context.created_at.isoformat(),
        "updated_at": context.updated_at.isoformat(),
    }


def payload_generation(payload: Dict[str, Any]) -> Optional[str]:
    """Generation marker of an index entry"""
    return payload.get("updated_at")


def context_generation(context: "Context") -> str:
    """Generation marker of a primary record"""
    return context.updated_at.isoformat()
