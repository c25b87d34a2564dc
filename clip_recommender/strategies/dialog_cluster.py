from __future__ import annotations

from clip_recommender.models import (
    LabelType,
    MediaStrategyContext,
    RecommendationStrategy,
    ScoredCandidate,
    SpeechSegment,
    TimelineStrategyContext,
)
from clip_recommender.strategies.base import clip_candidate, normalize_score, passes_filters

MAX_SILENCE_GAP_SECONDS = 2.0
PREFERRED_MIN_SECONDS = 5.0
PREFERRED_MAX_SECONDS = 30.0
SHORT_CLUSTER_SECONDS = 2.0
PREFERRED_BONUS = 1.2
SHORT_PENALTY = 0.5
MIN_SPEECH_COVERAGE = 0.3
TRANSCRIPT_SAMPLE_CHARS = 50


class DialogClusterStrategy:
    """Recommend stretches of continuous dialog."""

    name = RecommendationStrategy.DIALOG_CLUSTER

    def execute_for_media(self, context: MediaStrategyContext) -> list[ScoredCandidate]:
        candidates: list[ScoredCandidate] = []

        for cluster in _cluster_speech(context.labels.speech):
            start = cluster[0].start_seconds
            end = max(segment.end_seconds for segment in cluster)
            duration = end - start
            mean_confidence = sum(segment.confidence for segment in cluster) / len(cluster)

            if not passes_filters(
                start_seconds=start,
                end_seconds=end,
                confidence=mean_confidence,
                label_type=LabelType.SPEECH,
                filters=context.filter_params,
            ):
                continue

            score = mean_confidence
            if PREFERRED_MIN_SECONDS <= duration <= PREFERRED_MAX_SECONDS:
                score *= PREFERRED_BONUS
            elif duration < SHORT_CLUSTER_SECONDS:
                score *= SHORT_PENALTY

            speakers = sorted({segment.speaker_tag for segment in cluster if segment.speaker_tag})
            transcript = cluster[0].transcript
            sample = transcript[:TRANSCRIPT_SAMPLE_CHARS] + ("..." if len(transcript) > TRANSCRIPT_SAMPLE_CHARS else "")

            candidates.append(
                ScoredCandidate(
                    start_seconds=start,
                    end_seconds=end,
                    score=normalize_score(score, 0.0, PREFERRED_BONUS),
                    reason=f"Dialog cluster with {len(speakers)} speaker(s) ({len(cluster)} segments)",
                    reason_data={
                        "speakerCount": len(speakers),
                        "segmentCount": len(cluster),
                        "transcriptSample": sample,
                    },
                    label_type=LabelType.SPEECH,
                )
            )

        return candidates

    def execute_for_timeline(self, context: TimelineStrategyContext) -> list[ScoredCandidate]:
        seed_id = context.seed_clip.id if context.seed_clip is not None else None
        candidates: list[ScoredCandidate] = []

        for clip in context.available_clips:
            if clip.id == seed_id or clip.duration_seconds <= 0:
                continue

            overlapping = [
                segment
                for segment in context.labels.speech
                if segment.media_id == clip.media_id
                and segment.start_seconds < clip.end_seconds
                and segment.end_seconds > clip.start_seconds
            ]
            if not overlapping:
                continue

            speech_seconds = sum(
                max(0.0, min(segment.end_seconds, clip.end_seconds) - max(segment.start_seconds, clip.start_seconds))
                for segment in overlapping
            )
            coverage = min(1.0, speech_seconds / clip.duration_seconds)
            if coverage <= MIN_SPEECH_COVERAGE:
                continue

            candidates.append(
                clip_candidate(
                    clip,
                    score=coverage,
                    reason=f"Contains {coverage * 100:.0f}% speech",
                    reason_data={"coverage": coverage, "speechCount": len(overlapping)},
                    label_type=LabelType.SPEECH,
                )
            )

        return candidates


def _cluster_speech(segments: tuple[SpeechSegment, ...]) -> list[list[SpeechSegment]]:
    clusters: list[list[SpeechSegment]] = []
    current: list[SpeechSegment] = []

    for segment in sorted(segments, key=lambda item: item.start_seconds):
        if current and segment.start_seconds - current[-1].end_seconds > MAX_SILENCE_GAP_SECONDS:
            clusters.append(current)
            current = []
        current.append(segment)

    if current:
        clusters.append(current)
    return clusters
