from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from enum import Enum
from typing import Any

from clip_recommender.models import FilterParams, RecommendationKind, RecommendationStrategy, TargetMode

QUERY_HASH_LENGTH = 32


def build_query_hash(
    *,
    kind: RecommendationKind,
    workspace_id: str,
    target_id: str,
    strategies: Iterable[RecommendationStrategy | str],
    params: FilterParams | None = None,
    target_mode: TargetMode | None = None,
    seed_clip_id: str | None = None,
) -> str:
    """Deterministic digest of a recommendation request.

    Identical inputs always give the same hash regardless of strategy order or
    mapping key order, which makes regeneration an idempotent upsert.
    """

    payload = {
        "kind": kind,
        "workspaceId": workspace_id,
        "targetId": target_id,
        "strategies": sorted({_plain(strategy) for strategy in strategies}),
        "params": params.canonical() if params is not None else {},
        "targetMode": target_mode,
        "seedClipId": seed_clip_id,
    }
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()[:QUERY_HASH_LENGTH]


def canonical_json(value: Any) -> str:
    return json.dumps(_normalize(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items() if item is not None}
    if isinstance(value, list | tuple):
        return [_normalize(item) for item in value]
    return _plain(value)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value
