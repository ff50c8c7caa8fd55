"""
Context Engine Storage

Dual-store persistence of contexts and drift repair between the stores.
"""

from .context_storage import ContextStorage, BatchCreateResult, BatchDeleteResult, BatchItemFailure
from .reconciler import IndexReconciler, IndexDrift, RepairReport

__all__ = [
    "ContextStorage",
    "BatchCreateResult",
    "BatchDeleteResult",
    "BatchItemFailure",
    "IndexReconciler",
    "IndexDrift",
    "RepairReport",
]
