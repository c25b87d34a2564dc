from __future__ import annotations

from clip_recommender.models import (
    LabelType,
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

SAME_MEDIA_MIN_GAP_SECONDS = -0.5
SAME_MEDIA_MAX_GAP_SECONDS = 10.0
SAME_MEDIA_DECAY_SECONDS = 20.0
IMMEDIATE_GAP_SECONDS = 0.1
CROSS_MEDIA_MIN_GAP_SECONDS = -5.0
CROSS_MEDIA_MAX_GAP_SECONDS = 60.0
CROSS_MEDIA_BASE_SCORE = 0.9
CROSS_MEDIA_DECAY_SECONDS = 100.0


class TemporalContinuityStrategy:
    """Recommend what comes right before/after in time.

    Within one media item this walks the shot sequence. On a timeline it looks
    for pool clips that continue the seed clip, either later in the same media
    or in another recording whose capture time picks up where the seed ends.
    """

    name = RecommendationStrategy.ADJACENT_SHOT

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        shots = sorted(context.labels.shots, key=lambda shot: shot.start_seconds)
        candidates: list[ScoredCandidate] = []

        for index, shot in enumerate(shots):
            if not passes_filters(
                start_seconds=shot.start_seconds,
                end_seconds=shot.end_seconds,
                confidence=shot.confidence,
                label_type=LabelType.SHOT,
                filters=context.filter_params,
            ):
                continue

            neighbours = []
            if index > 0:
                neighbours.append(("previous", index - 1, "Previous segment"))
            if index < len(shots) - 1:
                neighbours.append(("next", index + 1, "Next segment"))

            for direction, neighbour_index, reason in neighbours:
                neighbour = shots[neighbour_index]
                matching = find_matching_clip(
                    context.existing_clips,
                    neighbour.start_seconds,
                    neighbour.end_seconds,
                )
                candidates.append(
                    ScoredCandidate(
                        start_seconds=neighbour.start_seconds,
                        end_seconds=neighbour.end_seconds,
                        clip_id=matching.id if matching else None,
                        score=neighbour.confidence,
                        reason=reason,
                        reason_data={"direction": direction, "shotIndex": neighbour_index},
                        label_type=LabelType.SHOT,
                    )
                )

        return candidates

    def execute_for_timeline(self, context: TimelineStrategyContext) -> list[ScoredCandidate]:
        seed = context.seed_clip
        if seed is None:
            return []

        seed_abs_end = absolute_seconds(context.media, seed.media_id, seed.end_seconds)
        candidates: list[ScoredCandidate] = []

        for clip in context.available_clips:
            if clip.id == seed.id:
                continue

            same_media = clip.media_id == seed.media_id
            score = 0.0
            reason = ""
            gap = 0.0

            if same_media:
                gap = clip.start_seconds - seed.end_seconds
                if SAME_MEDIA_MIN_GAP_SECONDS <= gap < SAME_MEDIA_MAX_GAP_SECONDS:
                    score = 1.0 - max(0.0, gap) / SAME_MEDIA_DECAY_SECONDS
                    reason = "Continues immediately" if gap <= IMMEDIATE_GAP_SECONDS else f"Follows after {gap:.1f}s"
            elif seed_abs_end is not None:
                clip_abs_start = absolute_seconds(context.media, clip.media_id, clip.start_seconds)
                if clip_abs_start is not None:
                    gap = clip_abs_start - seed_abs_end
                    if CROSS_MEDIA_MIN_GAP_SECONDS <= gap < CROSS_MEDIA_MAX_GAP_SECONDS:
                        score = CROSS_MEDIA_BASE_SCORE - abs(gap) / CROSS_MEDIA_DECAY_SECONDS
                        reason = f"Timeline continues (Gap: {gap:.1f}s)"

            if score <= 0:
                continue

            candidates.append(
                clip_candidate(
                    clip,
                    score=score,
                    reason=reason,
                    reason_data={
                        "timeGap": gap,
                        "sameMedia": same_media,
                        "absContinuity": not same_media,
                    },
                )
            )

        return candidates
