from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from clip_recommender.models import (
    BoundingBox,
    DurationRange,
    FilterParams,
    LabelEntity,
    LabelFact,
    LabelFacts,
    LabelTrack,
    LabelType,
    Media,
    MediaClip,
    MediaStrategyContext,
    SearchParams,
    SpeechSegment,
    Timeline,
    TimelineStrategyContext,
)
from clip_recommender.strategies.activity import ActivityStrategy
from clip_recommender.strategies.base import find_matching_clip, passes_filters
from clip_recommender.strategies.confidence_duration import ConfidenceDurationStrategy
from clip_recommender.strategies.dialog_cluster import DialogClusterStrategy
from clip_recommender.strategies.object_position import ObjectPositionStrategy, spatial_similarity
from clip_recommender.strategies.same_entity import SameEntityStrategy
from clip_recommender.strategies.temporal_continuity import TemporalContinuityStrategy
from clip_recommender.strategies.temporal_nearby import TemporalNearbyStrategy

WS = "ws"
T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def _clip(clip_id: str, media_id: str, start: float, end: float) -> MediaClip:
    return MediaClip(id=clip_id, workspace_id=WS, media_id=media_id, start_seconds=start, end_seconds=end)


def _fact(fact_id: str, media_id: str, start: float, end: float, confidence: float, **kwargs) -> LabelFact:
    return LabelFact(
        id=fact_id,
        media_id=media_id,
        label_type=kwargs.pop("label_type", LabelType.FACE),
        start_seconds=start,
        end_seconds=end,
        confidence=confidence,
        **kwargs,
    )


def _media_context(labels: LabelFacts, *, clips=(), filters: FilterParams | None = None) -> MediaStrategyContext:
    return MediaStrategyContext(
        workspace_id=WS,
        media=Media(id="m1", workspace_id=WS, media_date=T0),
        labels=labels,
        existing_clips=tuple(clips),
        filter_params=filters or FilterParams(),
    )


def _timeline_context(
    seed: MediaClip | None,
    pool: list[MediaClip],
    *,
    labels: LabelFacts | None = None,
    media_offsets: dict[str, float] | None = None,
    search: SearchParams | None = None,
) -> TimelineStrategyContext:
    offsets = media_offsets or {"m1": 0.0}
    media = {
        media_id: Media(id=media_id, workspace_id=WS, media_date=T0.fromtimestamp(T0.timestamp() + offset, tz=timezone.utc))
        for media_id, offset in offsets.items()
    }
    return TimelineStrategyContext(
        workspace_id=WS,
        timeline=Timeline(id="t1", workspace_id=WS),
        timeline_clips=(),
        available_clips=tuple(pool if seed is None else [seed, *pool]),
        labels=labels or LabelFacts(),
        media=media,
        search_params=search or SearchParams(),
        seed_clip=seed,
    )


def test_continuity_scores_immediate_same_media_continuation() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    context = _timeline_context(seed, [_clip("next", "m1", 10.05, 16.0)])

    [candidate] = TemporalContinuityStrategy().execute_for_timeline(context)

    assert candidate.clip_id == "next"
    assert candidate.score == pytest.approx(0.9975)
    assert candidate.reason == "Continues immediately"
    assert candidate.reason_data["sameMedia"] is True


def test_continuity_rejects_same_media_gap_beyond_limit() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    context = _timeline_context(seed, [_clip("far", "m1", 25.0, 35.0)])

    assert TemporalContinuityStrategy().execute_for_timeline(context) == []


def test_continuity_reports_gap_for_later_same_media_clip() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    context = _timeline_context(seed, [_clip("later", "m1", 14.0, 20.0)])

    [candidate] = TemporalContinuityStrategy().execute_for_timeline(context)

    assert candidate.reason == "Follows after 4.0s"
    assert candidate.score == pytest.approx(0.8)


def test_continuity_uses_capture_time_across_media() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    context = _timeline_context(
        seed,
        [_clip("other", "m2", 0.0, 12.0)],
        media_offsets={"m1": 0.0, "m2": 15.0},
    )

    [candidate] = TemporalContinuityStrategy().execute_for_timeline(context)

    assert candidate.score == pytest.approx(0.85)
    assert candidate.reason == "Timeline continues (Gap: 5.0s)"
    assert candidate.reason_data["absContinuity"] is True


def test_continuity_without_seed_returns_nothing() -> None:
    context = _timeline_context(None, [_clip("a", "m1", 0.0, 10.0)])

    assert TemporalContinuityStrategy().execute_for_timeline(context) == []


def test_continuity_media_mode_emits_neighbouring_shots() -> None:
    shots = (
        _fact("s1", "m1", 0.0, 10.0, 0.9, label_type=LabelType.SHOT),
        _fact("s2", "m1", 10.0, 20.0, 0.8, label_type=LabelType.SHOT),
    )
    context = _media_context(LabelFacts(shots=shots), clips=[_clip("c1", "m1", 0.05, 9.95)])

    candidates = TemporalContinuityStrategy().execute_for_media(context)

    assert [(c.reason, c.start_seconds) for c in candidates] == [("Next segment", 10.0), ("Previous segment", 0.0)]
    assert candidates[1].clip_id == "c1"
    assert candidates[1].score == pytest.approx(0.9)


def test_min_confidence_filter_excludes_low_confidence_detection() -> None:
    labels = LabelFacts(
        faces=(
            _fact("low", "m1", 0.0, 6.0, 0.5, entity_id="e1"),
            _fact("high", "m1", 10.0, 16.0, 0.9, entity_id="e1"),
        ),
        entities=(LabelEntity(id="e1", workspace_id=WS, canonical_name="Alice"),),
    )
    context = _media_context(labels, filters=FilterParams(min_confidence=0.6))

    candidates = SameEntityStrategy().execute_for_media(context)

    assert [candidate.start_seconds for candidate in candidates] == [10.0]


def test_confidence_duration_keeps_only_high_confidence_detections() -> None:
    labels = LabelFacts(
        objects=(
            _fact("weak", "m1", 0.0, 6.0, 0.65, label_type=LabelType.OBJECT),
            _fact("strong", "m1", 10.0, 16.0, 0.9, label_type=LabelType.OBJECT),
        )
    )

    candidates = ConfidenceDurationStrategy().execute_for_media(_media_context(labels))

    assert [candidate.start_seconds for candidate in candidates] == [10.0]
    assert candidates[0].reason == "Object detection"


def test_confidence_duration_timeline_blends_confidence_and_length() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    pool = [_clip("similar", "m1", 20.0, 32.0)]
    labels = LabelFacts(faces=(_fact("f", "m1", 21.0, 30.0, 0.9),))

    [candidate] = ConfidenceDurationStrategy().execute_for_timeline(_timeline_context(seed, pool, labels=labels))

    assert candidate.score == pytest.approx((0.9 + 0.6) / 2)
    assert candidate.reason == "High confidence and similar duration"


def test_same_entity_names_the_entity_in_media_mode() -> None:
    labels = LabelFacts(
        faces=(_fact("f1", "m1", 0.0, 6.0, 0.8, entity_id="e1"), _fact("f2", "m1", 8.0, 14.0, 0.7)),
        entities=(LabelEntity(id="e1", workspace_id=WS, canonical_name="Alice"),),
    )

    candidates = SameEntityStrategy().execute_for_media(_media_context(labels))

    assert [candidate.reason for candidate in candidates] == ["Contains Alice"]
    assert candidates[0].reason_data["entityId"] == "e1"


def test_same_entity_timeline_scores_shared_entities() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    pool = [_clip("match", "m2", 0.0, 10.0), _clip("stranger", "m2", 20.0, 30.0)]
    labels = LabelFacts(
        faces=(
            _fact("a", "m1", 1.0, 5.0, 0.9, entity_id="alice"),
            _fact("b", "m1", 2.0, 6.0, 0.9, entity_id="bob"),
            _fact("a2", "m2", 1.0, 5.0, 0.9, entity_id="alice"),
            _fact("b2", "m2", 2.0, 6.0, 0.9, entity_id="bob"),
            _fact("c", "m2", 21.0, 25.0, 0.9, entity_id="carol"),
        ),
        entities=(
            LabelEntity(id="alice", workspace_id=WS, canonical_name="Alice"),
            LabelEntity(id="bob", workspace_id=WS, canonical_name="Bob"),
            LabelEntity(id="carol", workspace_id=WS, canonical_name="Carol"),
        ),
    )

    candidates = SameEntityStrategy().execute_for_timeline(
        _timeline_context(seed, pool, labels=labels, media_offsets={"m1": 0.0, "m2": 0.0})
    )

    assert [candidate.clip_id for candidate in candidates] == ["match"]
    assert candidates[0].score == pytest.approx(0.7)
    assert candidates[0].reason == "Shares entities: Alice, Bob"


def test_temporal_nearby_media_requires_a_neighbour_inside_the_window() -> None:
    labels = LabelFacts(
        faces=(
            _fact("a", "m1", 0.0, 6.0, 0.8),
            _fact("b", "m1", 30.0, 36.0, 0.6),
            _fact("lonely", "m1", 500.0, 506.0, 0.9),
        )
    )

    candidates = TemporalNearbyStrategy().execute_for_media(_media_context(labels))

    assert [candidate.start_seconds for candidate in candidates] == [0.0, 30.0]
    assert candidates[0].score == pytest.approx((0.8 + 0.5) / 2)
    assert candidates[0].reason == "Temporal cluster of 2 detections"


def test_temporal_nearby_timeline_honours_custom_window() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    pool = [_clip("near", "m1", 15.0, 25.0), _clip("far", "m1", 100.0, 110.0)]

    candidates = TemporalNearbyStrategy().execute_for_timeline(
        _timeline_context(seed, pool, search=SearchParams(time_window=20.0))
    )

    assert [candidate.clip_id for candidate in candidates] == ["near"]
    assert candidates[0].score == pytest.approx(1.0 - 5.0 / 20.0)


def test_dialog_cluster_groups_speech_with_short_gaps() -> None:
    labels = LabelFacts(
        speech=(
            SpeechSegment(id="a", media_id="m1", start_seconds=0.0, end_seconds=4.0, confidence=0.9, speaker_tag="A"),
            SpeechSegment(id="b", media_id="m1", start_seconds=5.0, end_seconds=9.0, confidence=0.7, speaker_tag="B"),
            SpeechSegment(id="c", media_id="m1", start_seconds=30.0, end_seconds=31.0, confidence=0.8),
        )
    )

    candidates = DialogClusterStrategy().execute_for_media(_media_context(labels))

    assert [(c.start_seconds, c.end_seconds) for c in candidates] == [(0.0, 9.0), (30.0, 31.0)]
    assert candidates[0].score == pytest.approx(0.8)
    assert candidates[0].reason_data["speakerCount"] == 2
    assert candidates[1].score == pytest.approx(0.8 * 0.5 / 1.2)


def test_dialog_cluster_timeline_requires_speech_coverage() -> None:
    pool = [_clip("talky", "m1", 0.0, 10.0), _clip("quiet", "m1", 20.0, 30.0)]
    labels = LabelFacts(
        speech=(
            SpeechSegment(id="a", media_id="m1", start_seconds=1.0, end_seconds=7.0, confidence=0.9),
            SpeechSegment(id="b", media_id="m1", start_seconds=20.0, end_seconds=22.0, confidence=0.9),
        )
    )

    candidates = DialogClusterStrategy().execute_for_timeline(_timeline_context(None, pool, labels=labels))

    assert [candidate.clip_id for candidate in candidates] == ["talky"]
    assert candidates[0].score == pytest.approx(0.6)
    assert candidates[0].label_type is LabelType.SPEECH


def test_activity_media_emits_overlap_spans_with_entities() -> None:
    labels = LabelFacts(
        faces=(_fact("f", "m1", 0.0, 10.0, 0.9, entity_id="e-alice"),),
        objects=(_fact("o", "m1", 4.0, 8.0, 0.7, label_type=LabelType.OBJECT, entity_id="e-dog"),),
        speech=(SpeechSegment(id="s", media_id="m1", start_seconds=6.0, end_seconds=12.0, confidence=0.8),),
        entities=(
            LabelEntity(id="e-alice", workspace_id=WS, canonical_name="Alice"),
            LabelEntity(id="e-dog", workspace_id=WS, canonical_name="Dog"),
        ),
    )
    context = _media_context(labels, clips=[_clip("c1", "m1", 0.0, 10.0)])

    candidates = ActivityStrategy().execute_for_media(context)

    assert [(c.start_seconds, c.end_seconds) for c in candidates] == [(4.0, 6.0), (6.0, 8.0), (8.0, 10.0)]
    assert [c.score for c in candidates] == pytest.approx([0.525, 0.65, 0.55])
    busiest = candidates[1]
    assert busiest.reason == "Activity overlap (3): face, object, speech"
    assert busiest.reason_data["activeEntities"] == ["Alice", "Dog"]
    assert busiest.label_type is LabelType.FACE
    assert {c.clip_id for c in candidates} == {"c1"}


def test_activity_media_honours_label_type_and_confidence_filters() -> None:
    labels = LabelFacts(
        faces=(_fact("f", "m1", 0.0, 10.0, 0.9),),
        objects=(_fact("o", "m1", 4.0, 8.0, 0.7, label_type=LabelType.OBJECT),),
        speech=(SpeechSegment(id="s", media_id="m1", start_seconds=6.0, end_seconds=12.0, confidence=0.8),),
    )
    typed = _media_context(labels, filters=FilterParams(label_types=(LabelType.FACE, LabelType.SPEECH)))
    confident = _media_context(labels, filters=FilterParams(min_confidence=0.85))

    [candidate] = ActivityStrategy().execute_for_media(typed)

    assert (candidate.start_seconds, candidate.end_seconds) == (6.0, 10.0)
    assert candidate.reason_data["activeLabelTypes"] == ["face", "speech"]
    assert ActivityStrategy().execute_for_media(confident) == []


def test_activity_touching_labels_do_not_overlap() -> None:
    labels = LabelFacts(faces=(_fact("a", "m1", 0.0, 5.0, 0.9), _fact("b", "m1", 5.0, 10.0, 0.9)))

    assert ActivityStrategy().execute_for_media(_media_context(labels)) == []


def test_activity_timeline_scores_best_span_inside_each_clip() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    pool = [_clip("busy", "m1", 20.0, 30.0), _clip("other", "m2", 20.0, 30.0)]
    labels = LabelFacts(
        faces=(_fact("f", "m1", 18.0, 26.0, 0.9),),
        objects=(_fact("o", "m1", 22.0, 40.0, 0.6, label_type=LabelType.OBJECT),),
        speech=(SpeechSegment(id="s", media_id="m2", start_seconds=20.0, end_seconds=30.0, confidence=0.9),),
    )

    candidates = ActivityStrategy().execute_for_timeline(_timeline_context(seed, pool, labels=labels))

    assert [candidate.clip_id for candidate in candidates] == ["busy"]
    assert candidates[0].score == pytest.approx(0.5)
    assert candidates[0].reason == "Activity overlap (2): face, object"


def _track(track_id: str, media_id: str, start: float, end: float, confidence: float, box=None) -> LabelTrack:
    return LabelTrack(
        id=f"row-{track_id}",
        media_id=media_id,
        track_id=track_id,
        start_seconds=start,
        end_seconds=end,
        confidence=confidence,
        bounding_box=BoundingBox(*box) if box is not None else None,
    )


def test_object_position_media_scores_tracks_with_long_track_bonus() -> None:
    labels = LabelFacts(
        tracks=(
            _track("trk-1", "m1", 0.0, 6.0, 0.8),
            _track("trk-2", "m1", 10.0, 11.5, 0.9),
            _track("trk-3", "m1", 20.0, 30.0, 0.4),
        )
    )
    context = _media_context(labels, clips=[_clip("c1", "m1", 0.0, 6.0)])

    candidates = ObjectPositionStrategy().execute_for_media(context)

    assert [c.reason for c in candidates] == ["Prominent object track (ID: trk-1)", "Prominent object track (ID: trk-2)"]
    assert [c.score for c in candidates] == pytest.approx([0.8, 0.9 / 1.1])
    assert candidates[0].clip_id == "c1"
    assert candidates[0].label_type is LabelType.OBJECT
    assert candidates[1].reason_data["duration"] == pytest.approx(1.5)

    relaxed = _media_context(labels, filters=FilterParams(min_confidence=0.3))
    assert len(ObjectPositionStrategy().execute_for_media(relaxed)) == 3


def test_object_position_timeline_matches_object_placement_at_the_cut() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    pool = [
        _clip("near", "m2", 0.0, 8.0),
        _clip("far", "m2", 20.0, 30.0),
        _clip("late", "m2", 40.0, 50.0),
        _clip("nobox", "m3", 0.0, 5.0),
    ]
    labels = LabelFacts(
        tracks=(
            _track("A", "m1", 8.0, 10.0, 0.9, box=(0.4, 0.4, 0.6, 0.6)),
            _track("B", "m1", 9.0, 10.0, 0.5, box=(0.0, 0.0, 0.1, 0.1)),
            _track("C", "m2", 0.5, 5.0, 0.7, box=(0.45, 0.5, 0.65, 0.7)),
            _track("D", "m2", 20.0, 25.0, 0.7, box=(0.0, 0.0, 0.2, 0.2)),
            _track("E", "m2", 42.0, 45.0, 0.7, box=(0.4, 0.4, 0.6, 0.6)),
            _track("F", "m3", 0.0, 5.0, 0.7),
        )
    )

    candidates = ObjectPositionStrategy().execute_for_timeline(_timeline_context(seed, pool, labels=labels))

    [candidate] = candidates
    assert candidate.clip_id == "near"
    assert candidate.score == pytest.approx(1 - math.hypot(0.1, 0.05))
    assert candidate.reason == "Spatial match with seed object (89%)"
    assert candidate.reason_data["targetTrackId"] == "A"
    assert candidate.reason_data["matchTrackId"] == "C"


def test_object_position_timeline_needs_a_boxed_seed_track() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    pool = [_clip("near", "m2", 0.0, 8.0)]
    labels = LabelFacts(
        tracks=(
            _track("A", "m1", 8.0, 10.0, 0.9),
            _track("C", "m2", 0.5, 5.0, 0.7, box=(0.4, 0.4, 0.6, 0.6)),
        )
    )

    assert ObjectPositionStrategy().execute_for_timeline(_timeline_context(seed, pool, labels=labels)) == []
    assert ObjectPositionStrategy().execute_for_timeline(_timeline_context(None, pool, labels=labels)) == []


def test_spatial_similarity_falls_with_centre_distance() -> None:
    box = BoundingBox(top=0.4, left=0.4, bottom=0.6, right=0.6)

    assert spatial_similarity(box, box) == 1.0
    corner = BoundingBox(top=0.0, left=0.0, bottom=0.1, right=0.1)
    assert spatial_similarity(corner, BoundingBox(top=0.9, left=0.9, bottom=1.0, right=1.0)) == 0.0
    assert spatial_similarity(box, corner) == pytest.approx(1 - math.hypot(0.45, 0.45))


def test_strategies_do_not_mutate_context() -> None:
    seed = _clip("seed", "m1", 0.0, 10.0)
    context = _timeline_context(seed, [_clip("next", "m1", 10.0, 20.0)])
    before = (context.available_clips, context.labels, dict(context.media))

    for strategy in (
        TemporalContinuityStrategy(),
        TemporalNearbyStrategy(),
        ConfidenceDurationStrategy(),
        ActivityStrategy(),
        ObjectPositionStrategy(),
    ):
        strategy.execute_for_timeline(context)

    assert (context.available_clips, context.labels, dict(context.media)) == before


def test_passes_filters_checks_type_confidence_and_inclusive_duration() -> None:
    filters = FilterParams(
        label_types=(LabelType.FACE,),
        min_confidence=0.5,
        duration_range=DurationRange(min=5.0, max=10.0),
    )

    def _check(label_type: LabelType, confidence: float, duration: float) -> bool:
        return passes_filters(
            start_seconds=0.0,
            end_seconds=duration,
            confidence=confidence,
            label_type=label_type,
            filters=filters,
        )

    assert _check(LabelType.FACE, 0.5, 5.0)
    assert _check(LabelType.FACE, 0.9, 10.0)
    assert not _check(LabelType.OBJECT, 0.9, 6.0)
    assert not _check(LabelType.FACE, 0.49, 6.0)
    assert not _check(LabelType.FACE, 0.9, 10.5)


def test_find_matching_clip_uses_tolerance_on_both_bounds() -> None:
    clips = [_clip("c1", "m1", 10.0, 20.0)]

    assert find_matching_clip(clips, 10.05, 19.95) is clips[0]
    assert find_matching_clip(clips, 10.05, 20.5) is None
