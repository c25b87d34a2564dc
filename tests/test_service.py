from __future__ import annotations

import copy

import pytest

import clip_recommender.service as service_module
from clip_recommender.config import Settings
from clip_recommender.errors import NotFound, StrategyExecutionError, ValidationError
from clip_recommender.models import LabelType, ListOptions, RecommendationKind, RecommendationStrategy, TargetMode
from clip_recommender.persistence.fixtures import load_fixture
from clip_recommender.service import RecommendationService

from conftest import SNAPSHOT, WORKSPACE


def test_media_generation_ranks_and_merges_across_strategies(service: RecommendationService) -> None:
    result = service.generate_media_recommendations(WORKSPACE, "m1")

    recommendations = result.recommendations
    assert result.generated == len(recommendations) == 7
    assert [item.rank for item in recommendations] == list(range(7))
    assert all(recommendations[i].score >= recommendations[i + 1].score for i in range(6))

    top = recommendations[0]
    assert (top.start_seconds, top.end_seconds) == (20.0, 30.0)
    assert top.strategy is RecommendationStrategy.ADJACENT_SHOT
    assert top.label_type is LabelType.SHOT

    alice = recommendations[1]
    assert alice.reason == "Contains Alice"
    merged = {entry["strategy"] for entry in alice.reason_data["mergedFrom"]}
    assert merged == {"confidence_duration", "temporal_nearby"}

    matched = next(item for item in recommendations if item.start_seconds == 0.0)
    assert matched.clip_id == "c1"


def test_media_generation_is_idempotent(service: RecommendationService) -> None:
    first = service.generate_media_recommendations(WORKSPACE, "m1")
    second = service.generate_media_recommendations(WORKSPACE, "m1")

    assert first.query_hash == second.query_hash
    assert [item.id for item in first.recommendations] == [item.id for item in second.recommendations]
    assert {item.version for item in second.recommendations} == {2}
    assert second.pruned == 0
    assert service.list_recommendations("m1").total_items == 7


def test_changed_parameters_prune_previous_generation(service: RecommendationService) -> None:
    service.generate_media_recommendations(WORKSPACE, "m1")

    result = service.generate_media_recommendations(WORKSPACE, "m1", filter_params={"duration_range": {"min": 8}})

    assert result.generated == 4
    assert result.pruned == 7
    page = service.list_recommendations("m1")
    assert {item.query_hash for item in page.items} == {result.query_hash}
    assert all(item.end_seconds - item.start_seconds >= 8 for item in page.items)


def test_media_generation_with_single_strategy(service: RecommendationService) -> None:
    result = service.generate_media_recommendations(WORKSPACE, "m1", strategies=["dialog_cluster"])

    [dialog] = result.recommendations
    assert (dialog.start_seconds, dialog.end_seconds) == (40.0, 49.0)
    assert dialog.label_type is LabelType.SPEECH


def test_zero_max_results_clears_proposals(service: RecommendationService) -> None:
    service.generate_media_recommendations(WORKSPACE, "m1", max_results=3)

    result = service.generate_media_recommendations(WORKSPACE, "m1", max_results=0)

    assert result.generated == 0
    assert service.list_recommendations("m1").total_items == 0


def test_timeline_generation_filters_placed_and_short_clips(service: RecommendationService) -> None:
    result = service.generate_timeline_recommendations(WORKSPACE, "t1", seed_clip_id="tc1")

    assert [item.clip_id for item in result.recommendations] == ["c2", "c4", "c3"]
    first, cross_media, dialog = result.recommendations
    assert first.strategy is RecommendationStrategy.TEMPORAL_NEARBY
    assert cross_media.strategy is RecommendationStrategy.ADJACENT_SHOT
    assert cross_media.score == pytest.approx(0.85)
    assert dialog.strategy is RecommendationStrategy.DIALOG_CLUSTER
    assert all(item.kind is RecommendationKind.TIMELINE for item in result.recommendations)
    assert {item.target_mode for item in result.recommendations} == {TargetMode.APPEND}


def test_replacement_recommendations_use_replace_mode(service: RecommendationService) -> None:
    service.generate_timeline_recommendations(WORKSPACE, "t1", seed_clip_id="tc1")

    result = service.replacement_recommendations(WORKSPACE, "t1", "tc1")

    assert result.pruned == 3
    assert {item.target_mode for item in result.recommendations} == {TargetMode.REPLACE}
    assert {item.seed_clip_id for item in result.recommendations} == {"tc1"}
    assert "c1" not in {item.clip_id for item in result.recommendations}

    replaced = service.accept_recommendation(result.recommendations[0].id)
    clips = service.store.list_timeline_clips(WORKSPACE, "t1")
    assert [clip.id for clip in clips] == [replaced.clip.id]


def test_replacement_requires_clip_on_timeline(service: RecommendationService) -> None:
    with pytest.raises(NotFound):
        service.replacement_recommendations(WORKSPACE, "t1", "missing")


def test_accept_and_dismiss_through_service(service: RecommendationService) -> None:
    generated = service.generate_timeline_recommendations(WORKSPACE, "t1", seed_clip_id="tc1")
    first, second, _ = generated.recommendations

    accepted = service.accept_recommendation(first.id, {"order": 4})
    dismissed = service.dismiss_recommendation(second.id)

    assert accepted.clip is not None and accepted.clip.order == 4
    assert dismissed.status == "dismissed"

    open_items = service.list_recommendations("t1", ListOptions(exclude_accepted=True, exclude_dismissed=True))
    assert open_items.total_items == 1

    stats = service.recommendation_stats(WORKSPACE, target_id="t1")
    assert stats["total"] == 3
    assert stats["accepted"] == 1
    assert stats["dismissed"] == 1
    assert stats["pending"] == 1
    assert stats["acceptance_rate"] == pytest.approx(1 / 3)
    assert stats["by_strategy"]["temporal_nearby"]["accepted"] == 1
    assert stats["by_strategy"]["adjacent_shot"]["dismissal_rate"] == pytest.approx(1.0)


def test_list_recommendations_filters_and_pages(service: RecommendationService) -> None:
    service.generate_media_recommendations(WORKSPACE, "m1")

    first_page = service.list_recommendations("m1", {"min_score": 0.8}, page=1, per_page=2)
    second_page = service.list_recommendations("m1", {"min_score": 0.8}, page=2, per_page=2)
    entity_only = service.list_recommendations("m1", {"strategy": "same_entity"})

    assert first_page.total_items == 6
    assert first_page.total_pages == 3
    assert [item.rank for item in first_page.items + second_page.items] == [0, 1, 2, 3]
    assert {item.strategy for item in entity_only.items} == {RecommendationStrategy.SAME_ENTITY}


def test_get_recommendation_reports_kind(service: RecommendationService) -> None:
    media = service.generate_media_recommendations(WORKSPACE, "m1").recommendations[0]
    timeline = service.generate_timeline_recommendations(WORKSPACE, "t1", seed_clip_id="tc1").recommendations[0]

    assert service.get_recommendation(media.id).kind is RecommendationKind.MEDIA
    assert service.get_recommendation(timeline.id).kind is RecommendationKind.TIMELINE
    with pytest.raises(NotFound):
        service.get_recommendation("missing")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"filter_params": {"duration_range": {"min": 10, "max": 5}}},
        {"filter_params": {"min_confidence": 1.5}},
        {"filter_params": {"unknown": True}},
        {"strategies": ["made_up"]},
        {"weights": {"made_up": 1.0}},
        {"weights": {"adjacent_shot": -0.5}},
    ],
)
def test_invalid_media_requests_raise_validation_error(service: RecommendationService, kwargs) -> None:
    with pytest.raises(ValidationError):
        service.generate_media_recommendations(WORKSPACE, "m1", **kwargs)


def test_invalid_timeline_requests_raise_validation_error(service: RecommendationService) -> None:
    with pytest.raises(ValidationError):
        service.generate_timeline_recommendations(WORKSPACE, "t1", seed_clip_id="tc1", search_params={"time_window": -5})
    with pytest.raises(ValidationError):
        service.generate_timeline_recommendations(WORKSPACE, "t1", target_mode="replace")
    with pytest.raises(ValidationError):
        service.list_recommendations("t1", per_page=0)


def test_foreign_targets_are_not_found(service: RecommendationService) -> None:
    with pytest.raises(NotFound):
        service.generate_media_recommendations(WORKSPACE, "m-foreign")
    with pytest.raises(NotFound):
        service.generate_timeline_recommendations(WORKSPACE, "t-foreign")


def test_strategy_failure_persists_nothing(service: RecommendationService, monkeypatch) -> None:
    class _Broken:
        name = RecommendationStrategy.SAME_ENTITY

        def execute_for_media(self, context):
            raise KeyError("entity")

        execute_for_timeline = execute_for_media

    monkeypatch.setattr(service_module, "build_strategies", lambda names: [_Broken()])

    with pytest.raises(StrategyExecutionError) as excinfo:
        service.generate_media_recommendations(WORKSPACE, "m1")

    assert excinfo.value.strategy == "same_entity"
    assert service.list_recommendations("m1").total_items == 0


def test_weights_scale_scores(service: RecommendationService) -> None:
    result = service.generate_media_recommendations(
        WORKSPACE,
        "m1",
        strategies=["adjacent_shot"],
        weights={"adjacent_shot": 0.5},
    )

    assert result.recommendations[0].score == pytest.approx(0.475)


def test_weights_above_one_boost_scores_up_to_the_cap(service: RecommendationService) -> None:
    boosted = service.generate_media_recommendations(
        WORKSPACE,
        "m1",
        strategies=["adjacent_shot"],
        weights={"adjacent_shot": 2.0},
    )

    assert boosted.recommendations[0].score == pytest.approx(1.0)


def test_object_tracks_drive_timeline_placement_match(store) -> None:
    snapshot = copy.deepcopy(SNAPSHOT)
    box = {"top": 0.3, "left": 0.3, "bottom": 0.7, "right": 0.7}
    snapshot["tracks"] = [
        {"id": "tr-seed", "media_id": "m1", "track_id": "1", "start_seconds": 7.0, "end_seconds": 10.0, "confidence": 0.9, "bounding_box": box},
        {"id": "tr-next", "media_id": "m2", "track_id": "2", "start_seconds": 0.0, "end_seconds": 4.0, "confidence": 0.8, "bounding_box": box},
    ]
    load_fixture(store, snapshot)
    service = RecommendationService(store, Settings())

    result = service.generate_timeline_recommendations(
        WORKSPACE, "t1", seed_clip_id="tc1", strategies=["object_position_matcher"]
    )

    [match] = result.recommendations
    assert match.clip_id == "c4"
    assert match.strategy is RecommendationStrategy.OBJECT_POSITION_MATCHER
    assert match.score == pytest.approx(1.0)
    assert match.reason_data == {"score": 1.0, "targetTrackId": "1", "matchTrackId": "2"}
    stored = service.get_recommendation(match.id)
    assert stored.strategy is RecommendationStrategy.OBJECT_POSITION_MATCHER
