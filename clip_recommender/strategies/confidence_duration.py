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

HIGH_CONFIDENCE_THRESHOLD = 0.7
MAX_DURATION_DELTA_SECONDS = 5.0


class ConfidenceDurationStrategy:
    """Recommend high-confidence detections and clips close to the seed's length."""

    name = RecommendationStrategy.CONFIDENCE_DURATION

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        candidates: list[ScoredCandidate] = []

        for detection in context.labels.detections():
            if detection.confidence < HIGH_CONFIDENCE_THRESHOLD:
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
                    reason=f"{detection.label_type.value.capitalize()} detection",
                    reason_data={"confidence": detection.confidence, "type": detection.label_type.value},
                    label_type=detection.label_type,
                )
            )

        return candidates

    def execute_for_timeline(self, context: TimelineStrategyContext) -> list[ScoredCandidate]:
        seed = context.seed_clip
        seed_duration = seed.duration_seconds if seed is not None else None
        detections = context.labels.detections()
        candidates: list[ScoredCandidate] = []

        for clip in context.available_clips:
            if seed is not None and clip.id == seed.id:
                continue

            inside = detections_within(detections, clip)
            if not inside:
                continue

            mean_confidence = sum(detection.confidence for detection in inside) / len(inside)
            if mean_confidence < HIGH_CONFIDENCE_THRESHOLD:
                continue

            duration_score = 1.0
            if seed_duration is not None:
                delta = abs(clip.duration_seconds - seed_duration)
                duration_score = max(0.0, 1.0 - delta / MAX_DURATION_DELTA_SECONDS)

            candidates.append(
                clip_candidate(
                    clip,
                    score=(mean_confidence + duration_score) / 2,
                    reason="High confidence and similar duration",
                    reason_data={
                        "confidence": mean_confidence,
                        "durationScore": duration_score,
                        "detectionCount": len(inside),
                    },
                )
            )

        return candidates
