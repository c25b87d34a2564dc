from __future__ import annotations

import math

from clip_recommender.models import (
    BoundingBox,
    LabelTrack,
    LabelType,
    MediaStrategyContext,
    RecommendationStrategy,
    ScoredCandidate,
    TimelineStrategyContext,
)
from clip_recommender.strategies.base import clip_candidate, find_matching_clip, normalize_score, passes_filters

DEFAULT_MIN_TRACK_CONFIDENCE = 0.5
LONG_TRACK_SECONDS = 2.0
LONG_TRACK_BONUS = 1.1
# Seed tracks must be on screen in the last second; candidate tracks in the first.
EDGE_WINDOW_SECONDS = 1.0
MIN_SPATIAL_SIMILARITY = 0.6


class ObjectPositionStrategy:
    """Recommend prominent object tracks, and cuts that keep the seed's object in the same place."""

    name = RecommendationStrategy.OBJECT_POSITION_MATCHER

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        min_confidence = context.filter_params.min_confidence or DEFAULT_MIN_TRACK_CONFIDENCE
        candidates: list[ScoredCandidate] = []

        for track in context.labels.tracks:
            if track.media_id != context.media.id or track.confidence < min_confidence:
                continue
            if not passes_filters(
                start_seconds=track.start_seconds,
                end_seconds=track.end_seconds,
                confidence=track.confidence,
                label_type=LabelType.OBJECT,
                filters=context.filter_params,
            ):
                continue

            score = track.confidence
            if track.duration_seconds > LONG_TRACK_SECONDS:
                score *= LONG_TRACK_BONUS

            matching = find_matching_clip(context.existing_clips, track.start_seconds, track.end_seconds)
            candidates.append(
                ScoredCandidate(
                    start_seconds=track.start_seconds,
                    end_seconds=track.end_seconds,
                    clip_id=matching.id if matching else None,
                    score=normalize_score(score, 0.0, LONG_TRACK_BONUS),
                    reason=f"Prominent object track (ID: {track.track_id})",
                    reason_data={
                        "trackId": track.track_id,
                        "entityId": track.entity_id,
                        "duration": track.duration_seconds,
                    },
                    label_type=LabelType.OBJECT,
                )
            )

        return candidates

    def execute_for_timeline(self, context: TimelineStrategyContext) -> list[ScoredCandidate]:
        seed = context.seed_clip
        if seed is None:
            return []

        window_start = max(0.0, seed.end_seconds - EDGE_WINDOW_SECONDS)
        seed_tracks = [
            track
            for track in context.labels.tracks
            if track.media_id == seed.media_id
            and track.end_seconds >= window_start
            and track.start_seconds <= seed.end_seconds
        ]
        if not seed_tracks:
            return []

        target = max(seed_tracks, key=lambda track: track.confidence)
        if target.bounding_box is None:
            return []

        candidates: list[ScoredCandidate] = []
        for clip in context.available_clips:
            if clip.id == seed.id:
                continue

            best: tuple[float, LabelTrack] | None = None
            for track in context.labels.tracks:
                if (
                    track.media_id != clip.media_id
                    or track.bounding_box is None
                    or track.start_seconds > clip.start_seconds + EDGE_WINDOW_SECONDS
                    or track.end_seconds < clip.start_seconds
                ):
                    continue
                similarity = spatial_similarity(target.bounding_box, track.bounding_box)
                if similarity > MIN_SPATIAL_SIMILARITY and (best is None or similarity > best[0]):
                    best = (similarity, track)

            if best is None:
                continue

            similarity, match = best
            candidates.append(
                clip_candidate(
                    clip,
                    score=similarity,
                    reason=f"Spatial match with seed object ({similarity * 100:.0f}%)",
                    reason_data={
                        "score": similarity,
                        "targetTrackId": target.track_id,
                        "matchTrackId": match.track_id,
                    },
                    label_type=LabelType.OBJECT,
                )
            )

        return candidates


def spatial_similarity(first: BoundingBox, second: BoundingBox) -> float:
    """1.0 for boxes sharing a centre, falling linearly with centre distance to 0."""

    (first_x, first_y), (second_x, second_y) = first.center, second.center
    return max(0.0, 1.0 - math.hypot(first_x - second_x, first_y - second_y))
