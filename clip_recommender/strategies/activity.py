from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace

from clip_recommender.models import (
    FilterParams,
    LabelFacts,
    LabelType,
    MediaClip,
    MediaStrategyContext,
    RecommendationStrategy,
    ScoredCandidate,
    TimelineStrategyContext,
)
from clip_recommender.strategies.base import clip_candidate, passes_filters

MIN_ACTIVE_LABELS = 2
FULL_COUNT_SCORE_LABELS = 5


@dataclass(frozen=True, slots=True)
class ActivityLabel:
    key: str
    media_id: str
    start_seconds: float
    end_seconds: float
    confidence: float
    label_type: LabelType
    entity_id: str | None = None


@dataclass(frozen=True, slots=True)
class ActivitySegment:
    start_seconds: float
    end_seconds: float
    active: tuple[ActivityLabel, ...]


@dataclass(frozen=True, slots=True)
class SegmentSummary:
    score: float
    average_confidence: float
    primary_label_type: LabelType
    reason: str
    reason_data: dict


class ActivityStrategy:
    """Recommend stretches where several faces, people, objects or voices are active at once."""

    name = RecommendationStrategy.ACTIVITY_STRATEGY

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        labels = activity_labels(context.labels, context.filter_params)
        candidates: list[ScoredCandidate] = []

        for segment in collect_segments(labels):
            summary = summarize_segment(segment.active, context.labels)
            if summary is None:
                continue
            if not passes_filters(
                start_seconds=segment.start_seconds,
                end_seconds=segment.end_seconds,
                confidence=summary.average_confidence,
                label_type=summary.primary_label_type,
                filters=context.filter_params,
            ):
                continue

            containing = next(
                (
                    clip
                    for clip in context.existing_clips
                    if clip.start_seconds <= segment.start_seconds and clip.end_seconds >= segment.end_seconds
                ),
                None,
            )
            candidates.append(
                ScoredCandidate(
                    start_seconds=segment.start_seconds,
                    end_seconds=segment.end_seconds,
                    clip_id=containing.id if containing else None,
                    score=summary.score,
                    reason=summary.reason,
                    reason_data=summary.reason_data,
                    label_type=summary.primary_label_type,
                )
            )

        return candidates

    def execute_for_timeline(self, context: TimelineStrategyContext) -> list[ScoredCandidate]:
        labels = activity_labels(context.labels, context.search_params)
        if not labels:
            return []

        seed_id = context.seed_clip.id if context.seed_clip is not None else None
        candidates: list[ScoredCandidate] = []

        for clip in context.available_clips:
            if clip.id == seed_id:
                continue

            segments = collect_segments(_clipped_to(labels, clip))
            best: SegmentSummary | None = None
            for segment in segments:
                summary = summarize_segment(segment.active, context.labels)
                if summary is not None and (best is None or summary.score > best.score):
                    best = summary
            if best is None:
                continue

            candidates.append(
                clip_candidate(
                    clip,
                    score=best.score,
                    reason=best.reason,
                    reason_data=best.reason_data,
                )
            )

        return candidates


def activity_labels(labels: LabelFacts, filters: FilterParams) -> list[ActivityLabel]:
    """Faces, people, objects and speech as one list, narrowed by confidence and label type."""

    min_confidence = filters.min_confidence or 0.0
    collected = [
        ActivityLabel(
            key=f"{fact.label_type.value}:{fact.id}",
            media_id=fact.media_id,
            start_seconds=fact.start_seconds,
            end_seconds=fact.end_seconds,
            confidence=fact.confidence,
            label_type=fact.label_type,
            entity_id=fact.entity_id,
        )
        for fact in labels.detections()
    ]
    collected.extend(
        ActivityLabel(
            key=f"speech:{segment.id}",
            media_id=segment.media_id,
            start_seconds=segment.start_seconds,
            end_seconds=segment.end_seconds,
            confidence=segment.confidence,
            label_type=LabelType.SPEECH,
            entity_id=segment.entity_id,
        )
        for segment in labels.speech
    )

    return [
        label
        for label in collected
        if label.confidence >= min_confidence
        and (not filters.label_types or label.label_type in filters.label_types)
    ]


def collect_segments(labels: Iterable[ActivityLabel]) -> list[ActivitySegment]:
    """Sweep label start/end events and emit every span with two or more active labels.

    Labels on different media never overlap each other.
    """

    by_media: dict[str, list[ActivityLabel]] = {}
    for label in labels:
        by_media.setdefault(label.media_id, []).append(label)

    segments: list[ActivitySegment] = []
    for media_id in sorted(by_media):
        segments.extend(_sweep(by_media[media_id]))
    return segments


def _sweep(labels: list[ActivityLabel]) -> list[ActivitySegment]:
    if len(labels) < MIN_ACTIVE_LABELS:
        return []

    # (time, 0 for start / 1 for end): starts sort ahead of ends at the same instant.
    events = sorted(
        [(label.start_seconds, 0, index) for index, label in enumerate(labels)]
        + [(label.end_seconds, 1, index) for index, label in enumerate(labels)]
    )

    active: dict[str, ActivityLabel] = {}
    segments: list[ActivitySegment] = []
    last_time: float | None = None

    for time, kind, index in events:
        if last_time is not None and time > last_time and len(active) >= MIN_ACTIVE_LABELS:
            segments.append(ActivitySegment(last_time, time, tuple(active.values())))

        label = labels[index]
        if kind == 0:
            active[label.key] = label
        else:
            active.pop(label.key, None)
        last_time = time

    return segments


def summarize_segment(active: tuple[ActivityLabel, ...], labels: LabelFacts) -> SegmentSummary | None:
    if len(active) < MIN_ACTIVE_LABELS:
        return None

    count = len(active)
    average_confidence = sum(label.confidence for label in active) / count
    count_score = min(1.0, (count - 1) / (FULL_COUNT_SCORE_LABELS - 1))
    score = min(1.0, 0.5 * average_confidence + 0.5 * count_score)

    primary = active[0]
    for label in active[1:]:
        if label.confidence > primary.confidence:
            primary = label

    label_types = list(dict.fromkeys(label.label_type.value for label in active))
    entity_names: list[str] = []
    for label in active:
        entity = labels.entity(label.entity_id)
        if entity is not None and entity.canonical_name not in entity_names:
            entity_names.append(entity.canonical_name)

    return SegmentSummary(
        score=score,
        average_confidence=average_confidence,
        primary_label_type=primary.label_type,
        reason=f"Activity overlap ({count}): {', '.join(label_types)}",
        reason_data={
            "activeCount": count,
            "activeLabelTypes": label_types,
            "activeEntities": entity_names,
            "averageConfidence": average_confidence,
        },
    )


def _clipped_to(labels: list[ActivityLabel], clip: MediaClip) -> list[ActivityLabel]:
    return [
        replace(
            label,
            start_seconds=max(label.start_seconds, clip.start_seconds),
            end_seconds=min(label.end_seconds, clip.end_seconds),
        )
        for label in labels
        if label.media_id == clip.media_id
        and label.start_seconds < clip.end_seconds
        and label.end_seconds > clip.start_seconds
    ]
