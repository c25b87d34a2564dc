from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "CLIP_RECOMMENDER_"


class StoreSettings(BaseModel):
    database_url: str = "sqlite:///data/recommendations.db"
    timeout_seconds: float = 10.0
    echo_sql: bool = False


class GenerationSettings(BaseModel):
    media_max_results: int = 10
    timeline_max_results: int = 10
    min_duration_seconds: float = 5.0
    max_workers: int = 4
    strategy_timeout_seconds: float = 30.0
    processor: str = "clip-recommender:0.1.0"


class WeightSettings(BaseModel):
    same_entity: float = Field(default=1.0, ge=0.0)
    adjacent_shot: float = Field(default=1.0, ge=0.0)
    temporal_nearby: float = Field(default=1.0, ge=0.0)
    confidence_duration: float = Field(default=1.0, ge=0.0)
    dialog_cluster: float = Field(default=1.0, ge=0.0)
    activity_strategy: float = Field(default=1.0, ge=0.0)
    object_position_matcher: float = Field(default=1.0, ge=0.0)


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    store: StoreSettings = Field(default_factory=StoreSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    weights: WeightSettings = Field(default_factory=WeightSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config: dict[str, Any] = {}
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
