"""
Context Evolution Engine

Adjusts context confidence over time:
- Feedback: exponential smoothing towards the feedback signal
- Temporal decay: confidence *= exp(-rate * age_days), swept per workspace

Confidence is only ever written here. Writes go through ContextStorage as
metadata-only patches that keep `updated_at`, so the decay baseline is the
last real content/metadata edit and repeated sweeps keep decaying.
"""

import math
import time
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import pydantic

from ..common.config import EvolutionConfig
from ..common.errors import ValidationError
from ..common.schemas import Context, EvolutionRequest, FeedbackEvent, UpdateContextRequest, utcnow
from ..storage.context_storage import ContextStorage

logger = logging.getLogger("context_engine.evolution.engine")

SECONDS_PER_DAY = 86400.0


@dataclass
class EvolutionResult:
    """Outcome of an evolve() run"""
    updated: int = 0
    consolidated: int = 0
    conflicts_resolved: int = 0
    flagged: List[str] = field(default_factory=list)  # below min_confidence_threshold
    removed: int = 0
    cancelled: bool = False
    latency_ms: float = 0.0
    summary: str = ""


@dataclass
class EvolutionStats:
    """Confidence statistics for a workspace"""
    total_contexts: int = 0
    average_confidence: float = 0.0
    low_confidence_contexts: int = 0


def feedback_signal(event: FeedbackEvent) -> float:
    """Map feedback to [0, 1]: the rating when present, otherwise helpful/unhelpful"""
    if event.rating is not None:
        return (event.rating - 1) / 4.0
    return 1.0 if event.helpful else 0.0


def _coerce(value: Any, model):
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except pydantic.ValidationError as e:
        raise ValidationError(str(e)) from e


class ContextEvolutionEngine:
    """
    Feedback ingestion and temporal decay.

    Usage:
        engine = ContextEvolutionEngine(storage, config.evolution)
        await engine.process_feedback(FeedbackEvent(context_id=cid, helpful=True))
        result = await engine.evolve(EvolutionRequest(workspace_id="ws-1"))
    """

    def __init__(
        self,
        storage: ContextStorage,
        config: Optional[EvolutionConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._config = config or EvolutionConfig()
        self._clock = clock

    @property
    def config(self) -> EvolutionConfig:
        return self._config

    async def _write_confidence(
        self, context: Context, confidence: float, create_version: bool = True
    ) -> Optional[Context]:
        return await self._storage.update(
            UpdateContextRequest(
                context_id=context.id,
                metadata={"confidence": confidence},
                regenerate_embeddings=False,
                preserve_updated_at=True,
                create_version=create_version,
            )
        )

    # ========================================================================
    # Feedback
    # ========================================================================

    def smoothed_confidence(self, current: float, signal: float) -> float:
        alpha = self._config.feedback_smoothing
        return max(0.0, min(1.0, current * (1 - alpha) + signal * alpha))

    async def process_feedback(self, event: Union[FeedbackEvent, Dict[str, Any]]) -> None:
        """
        Apply one feedback event to a context's confidence.

        Unknown contexts (or a workspace mismatch) are logged and ignored.
        `used=True` also records an access, like a retrieval would.
        """
        event = _coerce(event, FeedbackEvent)

        context = await self._storage.get_context(event.context_id)
        if context is None:
            logger.warning("Feedback for unknown context_id=%s ignored", event.context_id)
            return
        if event.workspace_id and event.workspace_id != context.workspace_id:
            logger.warning(
                "Feedback for context_id=%s names workspace %s but it belongs to %s, ignored",
                event.context_id, event.workspace_id, context.workspace_id,
            )
            return

        current = context.metadata.effective_confidence
        signal = feedback_signal(event)
        new_confidence = self.smoothed_confidence(current, signal)

        await self._write_confidence(context, new_confidence)
        if event.used:
            await self._storage.primary_store.record_access(context.id, event.timestamp)
        logger.info(
            "Feedback applied to context_id=%s: confidence %.3f -> %.3f (signal=%.2f)",
            context.id, current, new_confidence, signal,
        )

    # ========================================================================
    # Temporal decay
    # ========================================================================

    def decayed_confidence(self, confidence: float, age_days: float) -> float:
        return confidence * math.exp(-self._config.temporal_decay_rate * max(0.0, age_days))

    async def _decay_context(self, context: Context, now: datetime, result: EvolutionResult) -> None:
        current = context.metadata.effective_confidence
        age_days = (now - context.updated_at).total_seconds() / SECONDS_PER_DAY
        new_confidence = self.decayed_confidence(current, age_days)

        if new_confidence < self._config.min_confidence_threshold:
            result.flagged.append(context.id)
            if self._config.delete_below_threshold:
                if await self._storage.delete(context.id):
                    result.removed += 1
                    logger.info(
                        "Context removed due to low confidence: context_id=%s (%.3f)",
                        context.id, new_confidence,
                    )
                return

        if abs(current - new_confidence) > self._config.change_epsilon:
            # No snapshot for decay writes
            if await self._write_confidence(context, new_confidence, create_version=False) is not None:
                result.updated += 1

    async def apply_temporal_decay(
        self,
        workspace_id: str,
        result: Optional[EvolutionResult] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EvolutionResult:
        """
        Decay every context of a workspace, in keyset-paginated batches.

        The cancel event is checked before each batch.
        """
        result = result or EvolutionResult()
        now = self._clock()
        after_id = None

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Temporal decay for workspace %s cancelled", workspace_id)
                result.cancelled = True
                break

            batch = await self._storage.list_contexts(
                workspace_id, limit=self._config.batch_size, after_id=after_id
            )
            if not batch:
                break

            for context in batch:
                await self._decay_context(context, now, result)
            after_id = batch[-1].id

            # Cancellation point between batches
            await asyncio.sleep(0)

        return result

    async def evolve(
        self,
        request: Union[EvolutionRequest, Dict[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EvolutionResult:
        """
        Run an evolution pass over a workspace.

        Args:
            request: EvolutionRequest or an equivalent dict
            cancel_event: Set to stop the sweep between batches

        Returns:
            EvolutionResult
        """
        request = _coerce(request, EvolutionRequest)
        start = time.perf_counter()
        result = EvolutionResult()

        if request.apply_temporal_decay:
            await self.apply_temporal_decay(request.workspace_id, result, cancel_event)

        if request.consolidate_similar:
            logger.info("Context consolidation is not supported, skipping (workspace %s)", request.workspace_id)
        if request.resolve_conflicts:
            logger.info("Conflict resolution is not supported, skipping (workspace %s)", request.workspace_id)

        result.latency_ms = (time.perf_counter() - start) * 1000
        result.summary = (
            f"Updated {result.updated} contexts, flagged {len(result.flagged)}, "
            f"removed {result.removed}"
            + (" (cancelled)" if result.cancelled else "")
        )
        logger.info("Evolution for workspace %s: %s in %.1fms", request.workspace_id, result.summary, result.latency_ms)
        return result

    # ========================================================================
    # Statistics
    # ========================================================================

    async def get_evolution_stats(self, workspace_id: str) -> EvolutionStats:
        """Total, average confidence and low-confidence count for a workspace"""
        stats = EvolutionStats()
        total_confidence = 0.0
        after_id = None

        while True:
            batch = await self._storage.list_contexts(
                workspace_id, limit=self._config.batch_size, after_id=after_id
            )
            if not batch:
                break
            for context in batch:
                confidence = context.metadata.effective_confidence
                stats.total_contexts += 1
                total_confidence += confidence
                if confidence < self._config.min_confidence_threshold:
                    stats.low_confidence_contexts += 1
            after_id = batch[-1].id

        if stats.total_contexts:
            stats.average_confidence = total_confidence / stats.total_contexts
        return stats
