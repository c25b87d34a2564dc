from __future__ import annotations

from clip_recommender.models import (
    MediaStrategyContext,
    RecommendationStrategy,
    ScoredCandidate,
    TimelineStrategyContext,
)
from clip_recommender.strategies.base import (
    absolute_seconds,
    clip_candidate,
    find_matching_clip,
    passes_filters,
)

DEFAULT_TIME_WINDOW_SECONDS = 60.0


class TemporalNearbyStrategy:
    """Recommend material captured around the same time, within a configurable window."""

    name = RecommendationStrategy.TEMPORAL_NEARBY

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        window = getattr(context.filter_params, "time_window", None) or DEFAULT_TIME_WINDOW_SECONDS
        detections = sorted(context.labels.detections(), key=lambda detection: detection.start_seconds)
        candidates: list[ScoredCandidate] = []

        for index, detection in enumerate(detections):
            if not passes_filters(
                start_seconds=detection.start_seconds,
                end_seconds=detection.end_seconds,
                confidence=detection.confidence,
                label_type=detection.label_type,
                filters=context.filter_params,
            ):
                continue

            deltas = [
                abs(other.start_seconds - detection.start_seconds)
                for other_index, other in enumerate(detections)
                if other_index != index and abs(other.start_seconds - detection.start_seconds) <= window
            ]
            if not deltas:
                continue

            mean_delta = sum(deltas) / len(deltas)
            matching = find_matching_clip(context.existing_clips, detection.start_seconds, detection.end_seconds)
            candidates.append(
                ScoredCandidate(
                    start_seconds=detection.start_seconds,
                    end_seconds=detection.end_seconds,
                    clip_id=matching.id if matching else None,
                    score=min(1.0, (detection.confidence + (1.0 - mean_delta / window)) / 2),
                    reason=f"Temporal cluster of {len(deltas) + 1} detections",
                    reason_data={
                        "timeDelta": mean_delta,
                        "nearbyCount": len(deltas),
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

        window = context.search_params.time_window or DEFAULT_TIME_WINDOW_SECONDS
        seed_abs_start = absolute_seconds(context.media, seed.media_id, seed.start_seconds)
        candidates: list[ScoredCandidate] = []

        for clip in context.available_clips:
            if clip.id == seed.id:
                continue

            delta: float | None = None
            if clip.media_id == seed.media_id:
                delta = min(
                    abs(clip.start_seconds - seed.start_seconds),
                    abs(clip.end_seconds - seed.end_seconds),
                    abs(clip.start_seconds - seed.end_seconds),
                    abs(clip.end_seconds - seed.start_seconds),
                )
            elif seed_abs_start is not None:
                clip_abs_start = absolute_seconds(context.media, clip.media_id, clip.start_seconds)
                if clip_abs_start is not None:
                    start_distance = abs(clip_abs_start - seed_abs_start)
                    end_distance = abs(
                        (clip_abs_start + clip.duration_seconds) - (seed_abs_start + seed.duration_seconds)
                    )
                    delta = min(start_distance, end_distance)

            if delta is None or delta > window:
                continue

            candidates.append(
                clip_candidate(
                    clip,
                    score=1.0 - delta / window,
                    reason=f"Shot around the same time ({round(delta)}s)",
                    reason_data={"timeDelta": delta, "timeWindow": window},
                )
            )

        return candidates
