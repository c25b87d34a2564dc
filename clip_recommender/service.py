from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel

from clip_recommender.config import Settings
from clip_recommender.context_builder import build_media_context, build_timeline_context
from clip_recommender.errors import NotFound, ValidationError
from clip_recommender.lifecycle import AcceptResult, LifecycleManager
from clip_recommender.models import (
    AcceptOptions,
    FilterParams,
    GenerationResult,
    ListOptions,
    Page,
    Recommendation,
    RecommendationKind,
    RecommendationStrategy,
    ScoredCandidate,
    SearchParams,
    TargetMode,
    TimelineStrategyContext,
)
from clip_recommender.persistence.gateway import RecommendationGateway
from clip_recommender.persistence.query_hash import build_query_hash
from clip_recommender.persistence.record_store import RecordStore, create_store_engine
from clip_recommender.scoring.merge_rank import CandidateFilter, generate
from clip_recommender.strategies.catalog import build_strategies, parse_strategy_names

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 500

ParamsT = TypeVar("ParamsT", bound=BaseModel)


class RecommendationService:
    """Caller-facing entry point: generation, listing, lifecycle and feedback stats."""

    def __init__(self, store: RecordStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or Settings()
        processor = self.settings.generation.processor
        self.gateway = RecommendationGateway(store, processor=processor)
        self.lifecycle = LifecycleManager(store, processor=processor)

    @classmethod
    def from_settings(cls, settings: Settings) -> RecommendationService:
        return cls(RecordStore(create_store_engine(settings.store)), settings)

    def generate_media_recommendations(
        self,
        workspace_id: str,
        media_id: str,
        filter_params: FilterParams | Mapping[str, Any] | None = None,
        max_results: int | None = None,
        strategies: Iterable[str | RecommendationStrategy] | None = None,
        weights: Mapping[str, float] | None = None,
    ) -> GenerationResult:
        filters = _coerce(FilterParams, filter_params)
        selected = parse_strategy_names(list(strategies) if strategies is not None else None)
        resolved_weights = self._resolve_weights(weights)
        limit = self.settings.generation.media_max_results if max_results is None else max_results

        context = build_media_context(self.store, workspace_id, media_id, filters)
        query_hash = build_query_hash(
            kind=RecommendationKind.MEDIA,
            workspace_id=workspace_id,
            target_id=media_id,
            strategies=selected,
            params=filters,
        )
        ranked = self._run(context, selected, resolved_weights, limit, self._duration_filter(filters))
        return self.gateway.persist(
            kind=RecommendationKind.MEDIA,
            workspace_id=workspace_id,
            target_id=media_id,
            query_hash=query_hash,
            candidates=ranked,
        )

    def generate_timeline_recommendations(
        self,
        workspace_id: str,
        timeline_id: str,
        seed_clip_id: str | None = None,
        target_mode: TargetMode | str = TargetMode.APPEND,
        strategies: Iterable[str | RecommendationStrategy] | None = None,
        weights: Mapping[str, float] | None = None,
        search_params: SearchParams | Mapping[str, Any] | None = None,
        max_results: int | None = None,
    ) -> GenerationResult:
        params = _coerce(SearchParams, search_params)
        mode = _parse_target_mode(target_mode)
        if mode is TargetMode.REPLACE and seed_clip_id is None:
            raise ValidationError("Replace mode requires a seed clip.")
        selected = parse_strategy_names(list(strategies) if strategies is not None else None)
        resolved_weights = self._resolve_weights(weights)
        limit = self.settings.generation.timeline_max_results if max_results is None else max_results

        context = build_timeline_context(self.store, workspace_id, timeline_id, seed_clip_id, params)
        query_hash = build_query_hash(
            kind=RecommendationKind.TIMELINE,
            workspace_id=workspace_id,
            target_id=timeline_id,
            strategies=selected,
            params=params,
            target_mode=mode,
            seed_clip_id=seed_clip_id,
        )
        ranked = self._run(
            context,
            selected,
            resolved_weights,
            limit,
            self._timeline_filter(context, params, mode),
        )
        return self.gateway.persist(
            kind=RecommendationKind.TIMELINE,
            workspace_id=workspace_id,
            target_id=timeline_id,
            query_hash=query_hash,
            candidates=ranked,
            target_mode=mode,
            seed_clip_id=seed_clip_id,
        )

    def replacement_recommendations(
        self,
        workspace_id: str,
        timeline_id: str,
        timeline_clip_id: str,
        strategies: Iterable[str | RecommendationStrategy] | None = None,
        weights: Mapping[str, float] | None = None,
        search_params: SearchParams | Mapping[str, Any] | None = None,
        max_results: int | None = None,
    ) -> GenerationResult:
        """Alternatives for a clip already placed on the timeline."""

        clip = self.store.get_timeline_clip(workspace_id, timeline_clip_id)
        if clip is None or clip.timeline_id != timeline_id:
            raise NotFound(f"Timeline clip '{timeline_clip_id}' not found on timeline '{timeline_id}'.")
        if clip.media_clip_id is None:
            raise NotFound(f"Timeline clip '{timeline_clip_id}' has no media clip reference.")

        return self.generate_timeline_recommendations(
            workspace_id,
            timeline_id,
            seed_clip_id=timeline_clip_id,
            target_mode=TargetMode.REPLACE,
            strategies=strategies,
            weights=weights,
            search_params=search_params,
            max_results=max_results,
        )

    def accept_recommendation(
        self,
        recommendation_id: str,
        options: AcceptOptions | Mapping[str, Any] | None = None,
    ) -> AcceptResult:
        return self.lifecycle.accept(recommendation_id, _coerce(AcceptOptions, options))

    def dismiss_recommendation(self, recommendation_id: str) -> Recommendation:
        return self.lifecycle.dismiss(recommendation_id)

    def get_recommendation(self, recommendation_id: str) -> Recommendation:
        recommendation = self.store.get_recommendation(recommendation_id)
        if recommendation is None:
            raise NotFound(f"Recommendation '{recommendation_id}' not found.")
        return recommendation

    def list_recommendations(
        self,
        target_id: str,
        options: ListOptions | Mapping[str, Any] | None = None,
        page: int = 1,
        per_page: int = 50,
        *,
        kind: RecommendationKind | None = None,
        query_hash: str | None = None,
    ) -> Page:
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}.")
        if not 1 <= per_page <= MAX_PER_PAGE:
            raise ValidationError(f"per_page must be between 1 and {MAX_PER_PAGE}, got {per_page}.")
        return self.store.list_recommendations(
            target_id,
            _coerce(ListOptions, options),
            page,
            per_page,
            kind=kind,
            query_hash=query_hash,
        )

    def recommendation_stats(
        self,
        workspace_id: str,
        target_id: str | None = None,
        strategy: RecommendationStrategy | str | None = None,
    ) -> dict[str, Any]:
        """Acceptance and dismissal rates overall and per strategy."""

        resolved_strategy = parse_strategy_names([strategy])[0] if strategy is not None else None
        counts = self.store.feedback_counts(workspace_id, target_id=target_id, strategy=resolved_strategy)

        by_strategy = {name: _rates(bucket) for name, bucket in sorted(counts.items())}
        overall = _rates(
            {
                "total": sum(bucket["total"] for bucket in counts.values()),
                "accepted": sum(bucket["accepted"] for bucket in counts.values()),
                "dismissed": sum(bucket["dismissed"] for bucket in counts.values()),
            }
        )
        return {**overall, "by_strategy": by_strategy}

    def _run(
        self,
        context: Any,
        selected: list[RecommendationStrategy],
        weights: dict[str, float],
        max_results: int,
        candidate_filter: CandidateFilter,
    ) -> list[ScoredCandidate]:
        generation = self.settings.generation
        return generate(
            context,
            build_strategies(selected),
            strategy_weights=weights,
            max_results=max_results,
            candidate_filter=candidate_filter,
            max_workers=generation.max_workers,
            timeout_seconds=generation.strategy_timeout_seconds,
        )

    def _resolve_weights(self, overrides: Mapping[str, float] | None) -> dict[str, float]:
        weights = self.settings.weights.model_dump(mode="python")
        for key, value in (overrides or {}).items():
            name = key.value if isinstance(key, RecommendationStrategy) else str(key)
            if name not in weights:
                raise ValidationError(f"Unknown strategy weight '{name}'.")
            try:
                weights[name] = float(value)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Weight for '{name}' must be a number, got {value!r}.") from exc
            if weights[name] < 0:
                raise ValidationError(f"Weight for '{name}' must not be negative, got {value!r}.")
        return weights

    def _min_duration(self, filters: FilterParams) -> float:
        floor = self.settings.generation.min_duration_seconds
        if filters.duration_range is not None:
            return max(floor, filters.duration_range.min)
        return floor

    def _duration_filter(self, filters: FilterParams) -> CandidateFilter:
        min_duration = self._min_duration(filters)
        max_duration = filters.duration_range.max if filters.duration_range is not None else None

        def _keep(candidate: ScoredCandidate) -> bool:
            if candidate.duration_seconds < min_duration:
                return False
            return max_duration is None or candidate.duration_seconds <= max_duration

        return _keep

    def _timeline_filter(
        self,
        context: TimelineStrategyContext,
        params: SearchParams,
        mode: TargetMode,
    ) -> CandidateFilter:
        duration_ok = self._duration_filter(params)
        pool = {clip.id: clip for clip in context.available_clips}
        replaced_id = context.seed_timeline_clip.id if mode is TargetMode.REPLACE and context.seed_timeline_clip else None
        placed = [clip for clip in context.timeline_clips if clip.id != replaced_id]
        placed_clip_ids = {clip.media_clip_id for clip in context.timeline_clips if clip.media_clip_id}

        def _keep(candidate: ScoredCandidate) -> bool:
            clip = pool.get(candidate.clip_id or "")
            if clip is None or not duration_ok(candidate):
                return False
            if clip.id in placed_clip_ids:
                return False
            for existing in placed:
                source = pool.get(existing.media_clip_id or "")
                if source is None or source.media_id != clip.media_id:
                    continue
                if max(source.start_seconds, clip.start_seconds) < min(source.end_seconds, clip.end_seconds):
                    return False
            return True

        return _keep


def _coerce(model: type[ParamsT], value: ParamsT | Mapping[str, Any] | None) -> ParamsT:
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(dict(value))
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid {model.__name__}: {exc}") from exc


def _parse_target_mode(value: TargetMode | str) -> TargetMode:
    try:
        return TargetMode(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported target mode '{value}'. Expected 'append' or 'replace'.") from exc


def _rates(bucket: Mapping[str, int]) -> dict[str, Any]:
    total = bucket["total"]
    accepted = bucket["accepted"]
    dismissed = bucket["dismissed"]
    return {
        "total": total,
        "accepted": accepted,
        "dismissed": dismissed,
        "pending": total - accepted - dismissed,
        "acceptance_rate": accepted / total if total else 0.0,
        "dismissal_rate": dismissed / total if total else 0.0,
    }
