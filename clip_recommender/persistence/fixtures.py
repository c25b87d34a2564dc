from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from clip_recommender.models import (
    LabelEntity,
    LabelFact,
    LabelTrack,
    LabelType,
    Media,
    MediaClip,
    SpeechSegment,
    Timeline,
    TimelineClip,
)
from clip_recommender.persistence.record_store import RecordStore, parse_bounding_box

logger = logging.getLogger(__name__)

_DETECTION_SECTIONS = {
    "shots": LabelType.SHOT,
    "faces": LabelType.FACE,
    "people": LabelType.PERSON,
    "objects": LabelType.OBJECT,
}


def load_fixture_file(store: RecordStore, path: str | Path) -> dict[str, int]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    return load_fixture(store, payload)


def load_fixture(store: RecordStore, payload: dict[str, Any]) -> dict[str, int]:
    """Insert a workspace snapshot (media, clips, timelines, labels, tracks) in one transaction.

    Every row inherits the top-level ``workspace_id`` unless it sets its own.
    """

    if not isinstance(payload, dict):
        raise ValueError("Fixture must be a JSON object.")

    workspace_id = payload.get("workspace_id")
    counts: dict[str, int] = {}

    def _rows(section: str) -> list[dict[str, Any]]:
        rows = payload.get(section) or []
        if not isinstance(rows, list):
            raise ValueError(f"Fixture section '{section}' must be a list.")
        for idx, row in enumerate(rows, start=1):
            if not isinstance(row, dict):
                raise ValueError(f"Fixture row {idx} of '{section}' must be an object.")
        counts[section] = len(rows)
        return rows

    def _workspace(row: dict[str, Any]) -> str:
        value = row.get("workspace_id", workspace_id)
        if not value:
            raise ValueError(f"Fixture row {row.get('id')!r} has no workspace_id.")
        return str(value)

    with store.transaction() as conn:
        for row in _rows("media"):
            store.add_media(
                Media(
                    id=str(row["id"]),
                    workspace_id=_workspace(row),
                    name=str(row.get("name", "")),
                    duration=float(row["duration"]) if row.get("duration") is not None else None,
                    media_date=datetime.fromisoformat(str(row["media_date"]).replace("Z", "+00:00"))
                    if row.get("media_date")
                    else None,
                    version=int(row.get("version", 1)),
                ),
                conn,
            )

        for row in _rows("entities"):
            store.add_entity(
                LabelEntity(
                    id=str(row["id"]),
                    workspace_id=_workspace(row),
                    canonical_name=str(row["canonical_name"]),
                    label_type=LabelType(row["label_type"]) if row.get("label_type") else None,
                ),
                conn,
            )

        for row in _rows("media_clips"):
            store.add_media_clip(
                MediaClip(
                    id=str(row["id"]),
                    workspace_id=_workspace(row),
                    media_id=str(row["media_id"]),
                    start_seconds=float(row["start_seconds"]),
                    end_seconds=float(row["end_seconds"]),
                    clip_type=str(row.get("clip_type", "user")),
                    meta=dict(row.get("meta") or {}),
                ),
                conn,
            )

        for row in _rows("timelines"):
            store.add_timeline(Timeline(id=str(row["id"]), workspace_id=_workspace(row), name=str(row.get("name", ""))), conn)

        for row in _rows("timeline_clips"):
            store.add_timeline_clip(
                TimelineClip(
                    id=str(row["id"]),
                    workspace_id=_workspace(row),
                    timeline_id=str(row["timeline_id"]),
                    media_id=str(row["media_id"]),
                    media_clip_id=row.get("media_clip_id"),
                    order=int(row["order"]),
                    start_seconds=float(row["start_seconds"]),
                    end_seconds=float(row["end_seconds"]),
                    meta=dict(row.get("meta") or {}),
                ),
                conn,
            )

        for section, label_type in _DETECTION_SECTIONS.items():
            for row in _rows(section):
                store.add_label_fact(
                    _workspace(row),
                    LabelFact(
                        id=str(row["id"]),
                        media_id=str(row["media_id"]),
                        label_type=label_type,
                        start_seconds=float(row["start_seconds"]),
                        end_seconds=float(row["end_seconds"]),
                        confidence=float(row["confidence"]),
                        entity_id=row.get("entity_id"),
                    ),
                    conn,
                )

        for row in _rows("speech"):
            store.add_speech_segment(
                _workspace(row),
                SpeechSegment(
                    id=str(row["id"]),
                    media_id=str(row["media_id"]),
                    start_seconds=float(row["start_seconds"]),
                    end_seconds=float(row["end_seconds"]),
                    confidence=float(row["confidence"]),
                    transcript=str(row.get("transcript", "")),
                    speaker_tag=row.get("speaker_tag"),
                    entity_id=row.get("entity_id"),
                ),
                conn,
            )

        for row in _rows("tracks"):
            store.add_label_track(
                _workspace(row),
                LabelTrack(
                    id=str(row["id"]),
                    media_id=str(row["media_id"]),
                    track_id=str(row.get("track_id", row["id"])),
                    start_seconds=float(row["start_seconds"]),
                    end_seconds=float(row["end_seconds"]),
                    confidence=float(row["confidence"]),
                    entity_id=row.get("entity_id"),
                    bounding_box=parse_bounding_box(row.get("bounding_box")),
                ),
                conn,
            )

    logger.info("Loaded fixture: %s", ", ".join(f"{key}={value}" for key, value in counts.items() if value))
    return counts
