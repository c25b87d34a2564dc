from __future__ import annotations

from collections.abc import Iterable
from types import MappingProxyType

from clip_recommender.errors import ValidationError
from clip_recommender.models import RecommendationStrategy
from clip_recommender.strategies.activity import ActivityStrategy
from clip_recommender.strategies.base import Strategy
from clip_recommender.strategies.confidence_duration import ConfidenceDurationStrategy
from clip_recommender.strategies.dialog_cluster import DialogClusterStrategy
from clip_recommender.strategies.object_position import ObjectPositionStrategy
from clip_recommender.strategies.same_entity import SameEntityStrategy
from clip_recommender.strategies.temporal_continuity import TemporalContinuityStrategy
from clip_recommender.strategies.temporal_nearby import TemporalNearbyStrategy

# Declaration order doubles as the tie-break order when ranking.
STRATEGY_TYPES = MappingProxyType(
    {
        RecommendationStrategy.SAME_ENTITY: SameEntityStrategy,
        RecommendationStrategy.ADJACENT_SHOT: TemporalContinuityStrategy,
        RecommendationStrategy.TEMPORAL_NEARBY: TemporalNearbyStrategy,
        RecommendationStrategy.CONFIDENCE_DURATION: ConfidenceDurationStrategy,
        RecommendationStrategy.DIALOG_CLUSTER: DialogClusterStrategy,
        RecommendationStrategy.ACTIVITY_STRATEGY: ActivityStrategy,
        RecommendationStrategy.OBJECT_POSITION_MATCHER: ObjectPositionStrategy,
    }
)


def parse_strategy_names(names: Iterable[str | RecommendationStrategy] | None) -> list[RecommendationStrategy]:
    """Resolve requested names to strategy tags; ``None`` or empty selects all."""

    if not names:
        return list(STRATEGY_TYPES)

    resolved: list[RecommendationStrategy] = []
    for name in names:
        try:
            strategy = RecommendationStrategy(name)
        except ValueError as exc:
            expected = ", ".join(item.value for item in RecommendationStrategy)
            raise ValidationError(f"Unsupported strategy '{name}'. Expected one of: {expected}.") from exc
        if strategy not in resolved:
            resolved.append(strategy)
    return resolved


def build_strategies(names: Iterable[str | RecommendationStrategy] | None = None) -> list[Strategy]:
    """Construct fresh strategy instances in declaration order."""

    selected = set(parse_strategy_names(names))
    return [strategy_type() for tag, strategy_type in STRATEGY_TYPES.items() if tag in selected]
