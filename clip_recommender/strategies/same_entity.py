from __future__ import annotations

from clip_recommender.models import (
    MediaStrategyContext,
    RecommendationStrategy,
    ScoredCandidate,
    TimelineStrategyContext,
)
from clip_recommender.strategies.base import (
    clip_candidate,
    detections_within,
    find_matching_clip,
    passes_filters,
)

BASE_SHARED_SCORE = 0.5
PER_ENTITY_BONUS = 0.1
MAX_ENTITY_BONUS = 0.5


class SameEntityStrategy:
    """Recommend windows and clips featuring the same tracked identity."""

    name = RecommendationStrategy.SAME_ENTITY

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        candidates: list[ScoredCandidate] = []

        for detection in context.labels.detections():
            entity = context.labels.entity(detection.entity_id)
            if entity is None:
                continue
            if not passes_filters(
                start_seconds=detection.start_seconds,
                end_seconds=detection.end_seconds,
                confidence=detection.confidence,
                label_type=detection.label_type,
                filters=context.filter_params,
            ):
                continue

            matching = find_matching_clip(context.existing_clips, detection.start_seconds, detection.end_seconds)
            candidates.append(
                ScoredCandidate(
                    start_seconds=detection.start_seconds,
                    end_seconds=detection.end_seconds,
                    clip_id=matching.id if matching else None,
                    score=detection.confidence,
                    reason=f"Contains {entity.canonical_name}",
                    reason_data={
                        "entityId": entity.id,
                        "entityName": entity.canonical_name,
                        "type": detection.label_type.value,
                    },
                    label_type=detection.label_type,
                )
            )

        return candidates

    def execute_for_timeline(self, context: TimelineStrategyContext) -> list[ScoredCandidate]:
        seed = context.seed_clip
        if seed is None:
            return []

        detections = context.labels.detections()
        seed_entity_ids = {
            detection.entity_id
            for detection in detections_within(detections, seed)
            if detection.entity_id is not None
        }
        if not seed_entity_ids:
            return []

        candidates: list[ScoredCandidate] = []
        for clip in context.available_clips:
            if clip.id == seed.id:
                continue

            shared: list[str] = []
            for detection in detections_within(detections, clip):
                if detection.entity_id not in seed_entity_ids:
                    continue
                entity = context.labels.entity(detection.entity_id)
                if entity is not None and entity.canonical_name not in shared:
                    shared.append(entity.canonical_name)

            if not shared:
                continue

            candidates.append(
                clip_candidate(
                    clip,
                    score=BASE_SHARED_SCORE + min(MAX_ENTITY_BONUS, len(shared) * PER_ENTITY_BONUS),
                    reason=f"Shares entities: {', '.join(shared)}",
                    reason_data={"sharedEntities": shared},
                )
            )

        return candidates
