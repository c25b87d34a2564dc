from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol

from clip_recommender.models import (
    FilterParams,
    LabelFact,
    LabelType,
    Media,
    MediaClip,
    MediaStrategyContext,
    RecommendationStrategy,
    ScoredCandidate,
    TimelineStrategyContext,
)

CLIP_MATCH_TOLERANCE_SECONDS = 0.1


class Strategy(Protocol):
    """Pure scoring heuristic over an immutable strategy context."""

    name: RecommendationStrategy

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        ...

    def execute_for_timeline(self, context: TimelineStrategyContext) -> list[ScoredCandidate]:
        ...


def passes_filters(
    *,
    start_seconds: float,
    end_seconds: float,
    confidence: float,
    label_type: LabelType,
    filters: FilterParams,
) -> bool:
    """Apply label-type allow-list, confidence floor and duration range."""

    if filters.label_types and label_type not in filters.label_types:
        return False

    if filters.min_confidence is not None and confidence < filters.min_confidence:
        return False

    if filters.duration_range is not None:
        duration = end_seconds - start_seconds
        if duration < filters.duration_range.min:
            return False
        if filters.duration_range.max is not None and duration > filters.duration_range.max:
            return False

    return True


def find_matching_clip(
    clips: Iterable[MediaClip],
    start_seconds: float,
    end_seconds: float,
    *,
    tolerance: float = CLIP_MATCH_TOLERANCE_SECONDS,
) -> MediaClip | None:
    for clip in clips:
        if abs(clip.start_seconds - start_seconds) < tolerance and abs(clip.end_seconds - end_seconds) < tolerance:
            return clip
    return None


def detections_within(detections: Iterable[LabelFact], clip: MediaClip) -> list[LabelFact]:
    return [
        detection
        for detection in detections
        if detection.media_id == clip.media_id
        and detection.start_seconds >= clip.start_seconds
        and detection.end_seconds <= clip.end_seconds
    ]


def absolute_seconds(media: Mapping[str, Media], media_id: str, offset_seconds: float) -> float | None:
    """Real-world capture time (epoch seconds) of an offset inside a media item."""

    item = media.get(media_id)
    if item is None or item.media_date is None:
        return None
    return item.media_date.timestamp() + offset_seconds


def clip_candidate(
    clip: MediaClip,
    *,
    score: float,
    reason: str,
    reason_data: dict,
    label_type: LabelType = LabelType.SEGMENT,
) -> ScoredCandidate:
    return ScoredCandidate(
        start_seconds=clip.start_seconds,
        end_seconds=clip.end_seconds,
        clip_id=clip.id,
        score=score,
        reason=reason,
        reason_data=reason_data,
        label_type=label_type,
    )


def normalize_score(score: float, minimum: float, maximum: float) -> float:
    if maximum == minimum:
        return 1.0
    return clamp((score - minimum) / (maximum - minimum))


def clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))
