from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from time import perf_counter
from typing import Any

from clip_recommender.errors import StrategyExecutionError
from clip_recommender.models import (
    MediaStrategyContext,
    RecommendationStrategy,
    ScoredCandidate,
    TimelineStrategyContext,
)
from clip_recommender.strategies.base import Strategy, clamp

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 10
MERGE_OVERLAP_THRESHOLD = 0.9

StrategyContext = MediaStrategyContext | TimelineStrategyContext
CandidateFilter = Callable[[ScoredCandidate], bool]


def generate(
    context: StrategyContext,
    strategies: Sequence[Strategy],
    strategy_weights: Mapping[str, float] | None = None,
    max_results: int = DEFAULT_MAX_RESULTS,
    *,
    candidate_filter: CandidateFilter | None = None,
    max_workers: int = 4,
    timeout_seconds: float | None = None,
) -> list[ScoredCandidate]:
    """Run strategies, merge their candidates and return a ranked, truncated list.

    Pipeline:
    1) fan strategies out over a thread pool (fail-fast on the first error)
    2) apply per-strategy weights and drop non-positive scores
    3) collapse duplicates (same clip, or near-identical window) keeping the best
    4) sort by pre-assigned rank, then score, then strategy declaration order
    5) assign contiguous 0-based ranks and truncate
    """

    if max_results <= 0 or not strategies:
        return []

    started_at = perf_counter()
    outputs = run_strategies(context, strategies, max_workers=max_workers, timeout_seconds=timeout_seconds)

    weighted: list[ScoredCandidate] = []
    for strategy in strategies:
        weight = _resolve_weight(strategy_weights, strategy.name)
        for candidate in outputs[strategy.name]:
            scored = replace(
                candidate,
                strategy=strategy.name,
                score=clamp(candidate.score * weight),
                reason_data=dict(candidate.reason_data),
            )
            if scored.score <= 0:
                continue
            if candidate_filter is not None and not candidate_filter(scored):
                continue
            weighted.append(scored)

    order = {strategy.name: index for index, strategy in enumerate(strategies)}
    merged = merge_candidates(weighted, strategy_order=order)
    ranked = rank_candidates(merged, strategy_order=order)[:max_results]

    logger.info(
        "Generated %d ranked candidates from %d raw candidates across %d strategies in %.3fs",
        len(ranked),
        len(weighted),
        len(strategies),
        perf_counter() - started_at,
    )
    return ranked


def run_strategies(
    context: StrategyContext,
    strategies: Sequence[Strategy],
    *,
    max_workers: int = 4,
    timeout_seconds: float | None = None,
) -> dict[RecommendationStrategy, list[ScoredCandidate]]:
    timeline_mode = isinstance(context, TimelineStrategyContext)
    executor = ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(strategies))))
    try:
        futures: dict[Future[list[ScoredCandidate]], Strategy] = {
            executor.submit(
                strategy.execute_for_timeline if timeline_mode else strategy.execute_for_media,
                context,
            ): strategy
            for strategy in strategies
        }
        done, not_done = wait(futures, timeout=timeout_seconds, return_when=FIRST_EXCEPTION)

        for future in done:
            error = future.exception()
            if error is not None:
                name = futures[future].name.value
                logger.error("Strategy %s failed: %s", name, error)
                raise StrategyExecutionError(name, str(error)) from error

        if not_done:
            pending = sorted(futures[future].name.value for future in not_done)
            raise StrategyExecutionError(pending[0], f"timed out after {timeout_seconds}s")

        outputs = {futures[future].name: list(future.result()) for future in done}
    finally:
        # Joins in-flight strategies; queued ones are cancelled.
        executor.shutdown(wait=True, cancel_futures=True)

    for name, candidates in outputs.items():
        logger.debug("Strategy %s produced %d candidates", name.value, len(candidates))
    return outputs


def merge_candidates(
    candidates: Sequence[ScoredCandidate],
    *,
    strategy_order: Mapping[RecommendationStrategy | None, int] | None = None,
    overlap_threshold: float = MERGE_OVERLAP_THRESHOLD,
) -> list[ScoredCandidate]:
    """Collapse candidates pointing at the same clip or the same time window."""

    order = strategy_order or {}
    indexed = sorted(
        enumerate(candidates),
        key=lambda item: (-item[1].score, order.get(item[1].strategy, len(order)), item[0]),
    )

    kept: list[ScoredCandidate] = []
    for _, candidate in indexed:
        duplicate_of = _same_clip(kept, candidate.clip_id)
        if duplicate_of is None:
            duplicate_of = next(
                (existing for existing in kept if _is_duplicate(existing, candidate, overlap_threshold)),
                None,
            )
        if duplicate_of is None:
            kept.append(replace(candidate, reason_data=dict(candidate.reason_data)))
            continue

        merged_from: list[dict[str, Any]] = duplicate_of.reason_data.setdefault("mergedFrom", [])
        merged_from.append(
            {
                "strategy": candidate.strategy.value if candidate.strategy else None,
                "score": candidate.score,
                "reason": candidate.reason,
                "reasonData": candidate.reason_data,
            }
        )
        # A kept candidate holding this clip id would have matched above, so adopting it stays unique.
        if duplicate_of.clip_id is None and candidate.clip_id is not None:
            duplicate_of.clip_id = candidate.clip_id

    return kept


def rank_candidates(
    candidates: Sequence[ScoredCandidate],
    *,
    strategy_order: Mapping[RecommendationStrategy | None, int] | None = None,
) -> list[ScoredCandidate]:
    order = strategy_order or {}
    indexed = sorted(
        enumerate(candidates),
        key=lambda item: (
            item[1].rank is None,
            item[1].rank if item[1].rank is not None else 0,
            -item[1].score,
            order.get(item[1].strategy, len(order)),
            item[0],
        ),
    )
    return [replace(candidate, rank=index) for index, (_, candidate) in enumerate(indexed)]


def window_overlap_ratio(first: ScoredCandidate, second: ScoredCandidate) -> float:
    """Intersection over union of two time windows."""

    intersection = min(first.end_seconds, second.end_seconds) - max(first.start_seconds, second.start_seconds)
    if intersection <= 0:
        return 0.0
    union = max(first.end_seconds, second.end_seconds) - min(first.start_seconds, second.start_seconds)
    if union <= 0:
        return 0.0
    return intersection / union


def _same_clip(kept: Sequence[ScoredCandidate], clip_id: str | None) -> ScoredCandidate | None:
    if clip_id is None:
        return None
    return next((existing for existing in kept if existing.clip_id == clip_id), None)


def _is_duplicate(kept: ScoredCandidate, candidate: ScoredCandidate, overlap_threshold: float) -> bool:
    if kept.clip_id is not None and candidate.clip_id is not None:
        return kept.clip_id == candidate.clip_id
    return window_overlap_ratio(kept, candidate) >= overlap_threshold


def _resolve_weight(weights: Mapping[str, float] | None, name: RecommendationStrategy) -> float:
    if not weights:
        return 1.0
    raw = weights.get(name.value, weights.get(name, 1.0))  # type: ignore[call-overload]
    return max(0.0, float(raw))
