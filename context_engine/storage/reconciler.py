"""
Index Reconciler

Detects and repairs drift between the Primary Store and the Vector Index.

Drift comes from index writes that failed after the primary write succeeded
(records left with `indexed=False`), from best-effort deletes that never
reached the index (orphans), and from payload generations that fell behind
the primary record.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from ..common.errors import ContextEngineError, StaleIndexEntry
from ..common.schemas import context_generation, payload_generation
from .context_storage import ContextStorage

logger = logging.getLogger("context_engine.storage.reconciler")

SCROLL_PAGE_SIZE = 256


@dataclass
class IndexDrift:
    """Differences between the two stores for one workspace"""
    workspace_id: str
    missing_from_index: List[str] = field(default_factory=list)
    stale_generation: List[str] = field(default_factory=list)
    orphaned_in_index: List[StaleIndexEntry] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (self.missing_from_index or self.stale_generation or self.orphaned_in_index)

    @property
    def summary(self) -> str:
        return (
            f"{len(self.missing_from_index)} missing, "
            f"{len(self.stale_generation)} stale, "
            f"{len(self.orphaned_in_index)} orphaned"
        )


@dataclass
class RepairReport:
    """Outcome of a repair pass"""
    reindexed: int = 0
    orphans_deleted: int = 0
    failed: List[str] = field(default_factory=list)


class IndexReconciler:
    """
    Compares a workspace's primary records with its index entries.

    Usage:
        reconciler = IndexReconciler(storage)
        drift = await reconciler.find_drift("ws-1")
        report = await reconciler.repair(drift)
    """

    def __init__(self, storage: ContextStorage, batch_size: int = 100):
        self._storage = storage
        self._batch_size = batch_size

    async def _index_payloads(self, workspace_id: str) -> Dict[str, dict]:
        payloads = {}
        offset = None
        while True:
            hits, offset = await self._storage.vector_index.scroll(
                filter={"workspace_id": workspace_id},
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
            )
            for hit in hits:
                payloads[hit.id] = hit.payload
            if offset is None:
                return payloads

    async def find_drift(self, workspace_id: str) -> IndexDrift:
        """
        Find records missing from the index, entries with an outdated
        generation, and index entries with no primary record.
        """
        drift = IndexDrift(workspace_id=workspace_id)
        payloads = await self._index_payloads(workspace_id)
        primary_ids = set()

        after_id = None
        while True:
            page = await self._storage.list_contexts(
                workspace_id, limit=self._batch_size, after_id=after_id
            )
            if not page:
                break
            for context in page:
                primary_ids.add(context.id)
                payload = payloads.get(context.id)
                if payload is None or not context.indexed:
                    drift.missing_from_index.append(context.id)
                elif payload_generation(payload) != context_generation(context):
                    drift.stale_generation.append(context.id)
            after_id = page[-1].id

        for context_id, payload in payloads.items():
            if context_id not in primary_ids:
                drift.orphaned_in_index.append(
                    StaleIndexEntry(
                        context_id=context_id,
                        workspace_id=payload.get("workspace_id"),
                        tier=payload.get("tier"),
                        payload=payload,
                    )
                )

        logger.info("Drift for workspace %s: %s", workspace_id, drift.summary)
        return drift

    async def repair(self, drift: IndexDrift) -> RepairReport:
        """
        Re-index missing and stale records and delete orphaned entries.

        Failures are counted in the report and logged, never raised.
        """
        report = RepairReport()

        for context_id in drift.missing_from_index + drift.stale_generation:
            try:
                ok = await self._storage.reindex(context_id)
            except ContextEngineError as e:
                logger.warning("Reindex failed for context_id=%s: %s", context_id, e)
                ok = False
            if ok:
                report.reindexed += 1
            else:
                report.failed.append(context_id)

        for entry in drift.orphaned_in_index:
            try:
                await self._storage.vector_index.delete(entry.context_id)
            except ContextEngineError as e:
                logger.warning("Orphan delete failed for context_id=%s: %s", entry.context_id, e)
                report.failed.append(entry.context_id)
            else:
                report.orphans_deleted += 1

        logger.info(
            "Repair for workspace %s: %d reindexed, %d orphans deleted, %d failed",
            drift.workspace_id, report.reindexed, report.orphans_deleted, len(report.failed),
        )
        return report
