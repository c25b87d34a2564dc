from __future__ import annotations

import logging
from collections.abc import Sequence

from clip_recommender.models import (
    GenerationResult,
    Recommendation,
    RecommendationKind,
    ScoredCandidate,
    TargetMode,
)
from clip_recommender.persistence.record_store import RecordStore, new_id
from clip_recommender.strategies.base import clamp

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
DEFAULT_REASON = "Recommendation"
TIME_PRECISION = 3


class RecommendationGateway:
    """Idempotent upsert of a ranked batch plus pruning of stale proposals."""

    def __init__(self, store: RecordStore, processor: str | None = None):
        self.store = store
        self.processor = processor

    def persist(
        self,
        *,
        kind: RecommendationKind,
        workspace_id: str,
        target_id: str,
        query_hash: str,
        candidates: Sequence[ScoredCandidate],
        target_mode: TargetMode | None = None,
        seed_clip_id: str | None = None,
    ) -> GenerationResult:
        rows = [
            self._to_recommendation(
                candidate,
                kind=kind,
                workspace_id=workspace_id,
                target_id=target_id,
                query_hash=query_hash,
                target_mode=target_mode,
                seed_clip_id=seed_clip_id,
            )
            for candidate in candidates
        ]

        with self.store.transaction() as conn:
            saved = [self.store.upsert_recommendation(row, conn) for row in rows]
            pruned = self.store.prune_recommendations(
                kind,
                workspace_id,
                target_id,
                query_hash,
                [row.id for row in saved if row.id is not None],
                conn,
            )

        logger.info(
            "Persisted %d %s recommendations for %s (hash=%s, pruned=%d)",
            len(saved),
            kind.value,
            target_id,
            query_hash,
            pruned,
        )
        return GenerationResult(generated=len(saved), pruned=pruned, query_hash=query_hash, recommendations=saved)

    def _to_recommendation(
        self,
        candidate: ScoredCandidate,
        *,
        kind: RecommendationKind,
        workspace_id: str,
        target_id: str,
        query_hash: str,
        target_mode: TargetMode | None,
        seed_clip_id: str | None,
    ) -> Recommendation:
        if candidate.strategy is None or candidate.rank is None:
            raise ValueError("Candidates must be merged and ranked before they are persisted.")
        if kind is RecommendationKind.TIMELINE and candidate.clip_id is None:
            raise ValueError("Timeline recommendations must reference an existing media clip.")

        return Recommendation(
            id=new_id(),
            kind=kind,
            workspace_id=workspace_id,
            target_id=target_id,
            strategy=candidate.strategy,
            label_type=candidate.label_type,
            start_seconds=round(candidate.start_seconds, TIME_PRECISION),
            end_seconds=round(candidate.end_seconds, TIME_PRECISION),
            score=round(clamp(candidate.score), 6),
            rank=candidate.rank,
            reason=sanitize_reason(candidate.reason),
            reason_data=dict(candidate.reason_data),
            query_hash=query_hash,
            clip_id=candidate.clip_id,
            target_mode=(target_mode or TargetMode.APPEND) if kind is RecommendationKind.TIMELINE else None,
            seed_clip_id=seed_clip_id if kind is RecommendationKind.TIMELINE else None,
            processor=self.processor,
        )


def sanitize_reason(reason: str | None) -> str:
    text = (reason or "").strip()
    if not text:
        return DEFAULT_REASON
    if len(text) > MAX_REASON_LENGTH:
        return text[: MAX_REASON_LENGTH - 3] + "..."
    return text
