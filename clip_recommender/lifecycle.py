from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Connection

from clip_recommender.errors import InvalidState, NotFound
from clip_recommender.models import (
    AcceptOptions,
    MediaClip,
    Recommendation,
    RecommendationKind,
    TargetMode,
    TimelineClip,
)
from clip_recommender.persistence.record_store import RecordStore, new_id, utc_now

logger = logging.getLogger(__name__)

RECOMMENDATION_CLIP_TYPE = "recommendation"


@dataclass(slots=True)
class AcceptResult:
    recommendation: Recommendation
    clip: MediaClip | TimelineClip | None


class _StateChanged(Exception):
    """Guarded update matched no row; another caller settled the recommendation first."""


class LifecycleManager:
    """Accept/dismiss transitions. Proposed is the only non-terminal state."""

    def __init__(self, store: RecordStore, processor: str | None = None):
        self.store = store
        self.processor = processor

    def accept(self, recommendation_id: str, options: AcceptOptions | None = None) -> AcceptResult:
        options = options or AcceptOptions()
        recommendation = self._require(recommendation_id)
        if recommendation.status != "proposed":
            return self._settled_accept(recommendation)

        try:
            with self.store.transaction() as conn:
                if recommendation.kind is RecommendationKind.MEDIA:
                    clip: MediaClip | TimelineClip = self._materialize_media_clip(recommendation, conn)
                    reused_clip_id = clip.id
                else:
                    clip = self._materialize_timeline_clip(recommendation, options, conn)
                    reused_clip_id = None

                accepted = self.store.mark_accepted(
                    recommendation,
                    accepted_clip_id=clip.id,
                    clip_id=reused_clip_id,
                    accepted_at=utc_now(),
                    conn=conn,
                )
                if not accepted:
                    raise _StateChanged(recommendation_id)
        except _StateChanged:
            logger.info("Recommendation %s changed state during accept; re-reading", recommendation_id)
            return self._settled_accept(self._require(recommendation_id))

        refreshed = self._require(recommendation_id)
        logger.info(
            "Accepted %s recommendation %s as clip %s",
            refreshed.kind.value,
            recommendation_id,
            clip.id,
        )
        return AcceptResult(recommendation=refreshed, clip=clip)

    def dismiss(self, recommendation_id: str) -> Recommendation:
        recommendation = self._require(recommendation_id)
        if recommendation.status == "accepted":
            raise InvalidState(f"Recommendation '{recommendation_id}' is already accepted.")
        if recommendation.status == "dismissed":
            return recommendation

        with self.store.transaction() as conn:
            dismissed = self.store.mark_dismissed(recommendation, dismissed_at=utc_now(), conn=conn)

        refreshed = self._require(recommendation_id)
        if not dismissed and refreshed.status == "accepted":
            raise InvalidState(f"Recommendation '{recommendation_id}' is already accepted.")

        logger.info("Dismissed %s recommendation %s", refreshed.kind.value, recommendation_id)
        return refreshed

    def _require(self, recommendation_id: str) -> Recommendation:
        recommendation = self.store.get_recommendation(recommendation_id)
        if recommendation is None:
            raise NotFound(f"Recommendation '{recommendation_id}' not found.")
        return recommendation

    def _settled_accept(self, recommendation: Recommendation) -> AcceptResult:
        if recommendation.status == "dismissed":
            raise InvalidState(f"Recommendation '{recommendation.id}' is already dismissed.")

        clip: MediaClip | TimelineClip | None = None
        if recommendation.accepted_clip_id is not None:
            if recommendation.kind is RecommendationKind.MEDIA:
                clip = self.store.get_media_clip(recommendation.workspace_id, recommendation.accepted_clip_id)
            else:
                clip = self.store.get_timeline_clip(recommendation.workspace_id, recommendation.accepted_clip_id)
        return AcceptResult(recommendation=recommendation, clip=clip)

    def _materialize_media_clip(self, recommendation: Recommendation, conn: Connection) -> MediaClip:
        if recommendation.clip_id is not None:
            existing = self.store.get_media_clip(recommendation.workspace_id, recommendation.clip_id, conn)
            if existing is not None:
                return existing

        clip = MediaClip(
            id=new_id(),
            workspace_id=recommendation.workspace_id,
            media_id=recommendation.target_id,
            start_seconds=recommendation.start_seconds,
            end_seconds=recommendation.end_seconds,
            clip_type=RECOMMENDATION_CLIP_TYPE,
            meta={
                "sourceId": recommendation.id,
                "sourceType": "recommendation",
                "labelType": recommendation.label_type.value,
                "strategy": recommendation.strategy.value,
                "score": recommendation.score,
                "rank": recommendation.rank,
                "reasonData": recommendation.reason_data,
                "processor": self.processor or recommendation.processor,
            },
        )
        return self.store.add_media_clip(clip, conn)

    def _materialize_timeline_clip(
        self,
        recommendation: Recommendation,
        options: AcceptOptions,
        conn: Connection,
    ) -> TimelineClip:
        workspace_id = recommendation.workspace_id
        timeline_id = recommendation.target_id

        source = self.store.get_media_clip(workspace_id, recommendation.clip_id or "", conn)
        if source is None:
            raise NotFound(f"Recommended clip '{recommendation.clip_id}' no longer exists.")

        replaced: TimelineClip | None = None
        if recommendation.target_mode is TargetMode.REPLACE and recommendation.seed_clip_id is not None:
            replaced = self.store.get_timeline_clip(workspace_id, recommendation.seed_clip_id, conn)
            if replaced is not None and replaced.timeline_id != timeline_id:
                replaced = None

        if replaced is not None:
            order = replaced.order
        elif options.order is not None:
            order = options.order
        else:
            order = self.store.max_timeline_order(workspace_id, timeline_id, conn) + 1

        clip = TimelineClip(
            id=new_id(),
            workspace_id=workspace_id,
            timeline_id=timeline_id,
            media_id=source.media_id,
            media_clip_id=source.id,
            order=order,
            start_seconds=source.start_seconds,
            end_seconds=source.end_seconds,
            meta={
                "sourceId": recommendation.id,
                "sourceType": "recommendation",
                "strategy": recommendation.strategy.value,
                "score": recommendation.score,
                "reasonData": recommendation.reason_data,
            },
        )
        if replaced is not None:
            self.store.delete_timeline_clip(workspace_id, replaced.id, conn)
        self.store.add_timeline_clip(clip, conn)
        return clip
