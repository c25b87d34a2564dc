from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RecommendationStrategy(str, Enum):
    SAME_ENTITY = "same_entity"
    ADJACENT_SHOT = "adjacent_shot"
    TEMPORAL_NEARBY = "temporal_nearby"
    CONFIDENCE_DURATION = "confidence_duration"
    DIALOG_CLUSTER = "dialog_cluster"
    ACTIVITY_STRATEGY = "activity_strategy"
    OBJECT_POSITION_MATCHER = "object_position_matcher"


class LabelType(str, Enum):
    OBJECT = "object"
    SHOT = "shot"
    PERSON = "person"
    SPEECH = "speech"
    FACE = "face"
    SEGMENT = "segment"
    TEXT = "text"


class TargetMode(str, Enum):
    APPEND = "append"
    REPLACE = "replace"


class RecommendationKind(str, Enum):
    MEDIA = "media"
    TIMELINE = "timeline"


class DurationRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float = Field(default=0.0, ge=0.0)
    max: float | None = Field(default=None, gt=0.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> DurationRange:
        if self.max is not None and self.min > self.max:
            raise ValueError(f"duration range min ({self.min}) must not exceed max ({self.max})")
        return self


class FilterParams(BaseModel):
    """Caller-supplied narrowing of media candidates."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    label_types: tuple[LabelType, ...] | None = None
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    duration_range: DurationRange | None = None

    def canonical(self) -> dict[str, Any]:
        """Key-order and list-order independent view used for query hashing."""

        data = self.model_dump(mode="json", exclude_none=True)
        if "label_types" in data:
            data["label_types"] = sorted(set(data["label_types"]))
        return data


class SearchParams(FilterParams):
    """Filter params plus the adjacency window used by temporal strategies."""

    time_window: float | None = Field(default=None, gt=0.0)


@dataclass(frozen=True, slots=True)
class Media:
    id: str
    workspace_id: str
    name: str = ""
    duration: float | None = None
    media_date: datetime | None = None
    version: int = 1


@dataclass(frozen=True, slots=True)
class MediaClip:
    id: str
    workspace_id: str
    media_id: str
    start_seconds: float
    end_seconds: float
    clip_type: str = "user"
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass(frozen=True, slots=True)
class Timeline:
    id: str
    workspace_id: str
    name: str = ""


@dataclass(frozen=True, slots=True)
class TimelineClip:
    id: str
    workspace_id: str
    timeline_id: str
    media_id: str
    media_clip_id: str | None
    order: int
    start_seconds: float
    end_seconds: float
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LabelEntity:
    id: str
    workspace_id: str
    canonical_name: str
    label_type: LabelType | None = None


@dataclass(frozen=True, slots=True)
class LabelFact:
    """A detection (shot, face, person, object) produced by the label pipeline."""

    id: str
    media_id: str
    label_type: LabelType
    start_seconds: float
    end_seconds: float
    confidence: float
    entity_id: str | None = None


@dataclass(frozen=True, slots=True)
class SpeechSegment:
    id: str
    media_id: str
    start_seconds: float
    end_seconds: float
    confidence: float
    transcript: str = ""
    speaker_tag: str | None = None
    entity_id: str | None = None


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Normalised (0-1) frame box of a tracked object."""

    top: float
    left: float
    bottom: float
    right: float

    @property
    def center(self) -> tuple[float, float]:
        return (self.left + self.right) / 2, (self.top + self.bottom) / 2


@dataclass(frozen=True, slots=True)
class LabelTrack:
    """An object followed across frames; the box summarises its position."""

    id: str
    media_id: str
    track_id: str
    start_seconds: float
    end_seconds: float
    confidence: float
    entity_id: str | None = None
    bounding_box: BoundingBox | None = None

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass(frozen=True, slots=True)
class LabelFacts:
    """Label data for one or more media items, grouped by collection."""

    shots: tuple[LabelFact, ...] = ()
    faces: tuple[LabelFact, ...] = ()
    people: tuple[LabelFact, ...] = ()
    objects: tuple[LabelFact, ...] = ()
    speech: tuple[SpeechSegment, ...] = ()
    tracks: tuple[LabelTrack, ...] = ()
    entities: tuple[LabelEntity, ...] = ()

    def detections(self) -> list[LabelFact]:
        return [*self.faces, *self.people, *self.objects]

    def entity(self, entity_id: str | None) -> LabelEntity | None:
        if entity_id is None:
            return None
        for entity in self.entities:
            if entity.id == entity_id:
                return entity
        return None


@dataclass(frozen=True, slots=True)
class MediaStrategyContext:
    workspace_id: str
    media: Media
    labels: LabelFacts
    existing_clips: tuple[MediaClip, ...]
    filter_params: FilterParams = field(default_factory=FilterParams)


@dataclass(frozen=True, slots=True)
class TimelineStrategyContext:
    workspace_id: str
    timeline: Timeline
    timeline_clips: tuple[TimelineClip, ...]
    available_clips: tuple[MediaClip, ...]
    labels: LabelFacts
    media: dict[str, Media]
    search_params: SearchParams = field(default_factory=SearchParams)
    seed_clip: MediaClip | None = None
    seed_timeline_clip: TimelineClip | None = None


@dataclass(slots=True)
class ScoredCandidate:
    """Strategy output prior to merge, rank and persistence."""

    start_seconds: float
    end_seconds: float
    score: float
    reason: str
    label_type: LabelType
    reason_data: dict[str, Any] = field(default_factory=dict)
    clip_id: str | None = None
    strategy: RecommendationStrategy | None = None
    rank: int | None = None

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass(slots=True)
class Recommendation:
    """Stable recommendation schema shared by persistence, lifecycle and export."""

    id: str | None
    kind: RecommendationKind
    workspace_id: str
    target_id: str
    strategy: RecommendationStrategy
    label_type: LabelType
    start_seconds: float
    end_seconds: float
    score: float
    rank: int
    reason: str
    reason_data: dict[str, Any]
    query_hash: str
    clip_id: str | None = None
    version: int = 1
    target_mode: TargetMode | None = None
    seed_clip_id: str | None = None
    accepted_at: datetime | None = None
    dismissed_at: datetime | None = None
    accepted_clip_id: str | None = None
    processor: str | None = None

    @property
    def status(self) -> str:
        if self.accepted_at is not None:
            return "accepted"
        if self.dismissed_at is not None:
            return "dismissed"
        return "proposed"


@dataclass(slots=True)
class GenerationResult:
    generated: int
    pruned: int
    query_hash: str
    recommendations: list[Recommendation]


class ListOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    exclude_accepted: bool = False
    exclude_dismissed: bool = False
    strategy: RecommendationStrategy | None = None
    target_mode: TargetMode | None = None
    min_score: float | None = Field(default=None, ge=0.0, le=1.0)


class AcceptOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order: int | None = Field(default=None, ge=0)


@dataclass(slots=True)
class Page:
    items: list[Recommendation]
    page: int
    per_page: int
    total_items: int

    @property
    def total_pages(self) -> int:
        if self.per_page <= 0:
            return 0
        return (self.total_items + self.per_page - 1) // self.per_page
