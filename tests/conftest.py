from __future__ import annotations

import copy
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from clip_recommender.config import Settings
from clip_recommender.persistence.fixtures import load_fixture
from clip_recommender.persistence.record_store import RecordStore
from clip_recommender.persistence.schema import create_schema
from clip_recommender.service import RecommendationService

WORKSPACE = "ws-1"

# m2 was recorded 15s after m1 started, so m1 0-10s is followed 5s later by m2 0-12s.
SNAPSHOT: dict[str, Any] = {
    "workspace_id": WORKSPACE,
    "media": [
        {"id": "m1", "name": "interview.mp4", "duration": 120.0, "media_date": "2024-05-01T10:00:00Z"},
        {"id": "m2", "name": "broll.mp4", "duration": 90.0, "media_date": "2024-05-01T10:00:15Z"},
        {"id": "m-foreign", "workspace_id": "ws-2", "name": "other.mp4", "duration": 30.0},
    ],
    "entities": [
        {"id": "e-alice", "canonical_name": "Alice", "label_type": "person"},
        {"id": "e-dog", "canonical_name": "Dog", "label_type": "object"},
    ],
    "media_clips": [
        {"id": "c1", "media_id": "m1", "start_seconds": 0.0, "end_seconds": 10.0},
        {"id": "c2", "media_id": "m1", "start_seconds": 10.2, "end_seconds": 20.0},
        {"id": "c3", "media_id": "m1", "start_seconds": 40.0, "end_seconds": 50.0},
        {"id": "c4", "media_id": "m2", "start_seconds": 0.0, "end_seconds": 12.0},
        {"id": "c5", "media_id": "m2", "start_seconds": 30.0, "end_seconds": 33.0},
        {"id": "c-foreign", "workspace_id": "ws-2", "media_id": "m-foreign", "start_seconds": 0.0, "end_seconds": 10.0},
    ],
    "timelines": [
        {"id": "t1", "name": "Rough cut"},
        {"id": "t-foreign", "workspace_id": "ws-2", "name": "Not yours"},
    ],
    "timeline_clips": [
        {
            "id": "tc1",
            "timeline_id": "t1",
            "media_id": "m1",
            "media_clip_id": "c1",
            "order": 0,
            "start_seconds": 0.0,
            "end_seconds": 10.0,
        },
    ],
    "shots": [
        {"id": "s1", "media_id": "m1", "start_seconds": 0.0, "end_seconds": 10.0, "confidence": 0.9},
        {"id": "s2", "media_id": "m1", "start_seconds": 10.0, "end_seconds": 20.0, "confidence": 0.8},
        {"id": "s3", "media_id": "m1", "start_seconds": 20.0, "end_seconds": 30.0, "confidence": 0.95},
    ],
    "faces": [
        {"id": "f1", "media_id": "m1", "entity_id": "e-alice", "start_seconds": 1.0, "end_seconds": 8.0, "confidence": 0.92},
        {"id": "f2", "media_id": "m1", "entity_id": "e-alice", "start_seconds": 11.0, "end_seconds": 18.0, "confidence": 0.85},
        {"id": "f3", "media_id": "m2", "entity_id": "e-alice", "start_seconds": 2.0, "end_seconds": 9.0, "confidence": 0.88},
    ],
    "objects": [
        {"id": "o1", "media_id": "m1", "entity_id": "e-dog", "start_seconds": 41.0, "end_seconds": 48.0, "confidence": 0.5},
    ],
    "speech": [
        {
            "id": "sp1",
            "media_id": "m1",
            "start_seconds": 40.0,
            "end_seconds": 44.0,
            "confidence": 0.9,
            "transcript": "Hello there",
            "speaker_tag": "A",
        },
        {
            "id": "sp2",
            "media_id": "m1",
            "start_seconds": 45.0,
            "end_seconds": 49.0,
            "confidence": 0.8,
            "transcript": "General Kenobi",
            "speaker_tag": "B",
        },
    ],
}


def memory_engine() -> Engine:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    create_schema(engine)
    return engine


@pytest.fixture()
def store() -> RecordStore:
    return RecordStore(memory_engine())


@pytest.fixture()
def seeded_store(store: RecordStore) -> RecordStore:
    load_fixture(store, copy.deepcopy(SNAPSHOT))
    return store


@pytest.fixture()
def service(seeded_store: RecordStore) -> RecommendationService:
    return RecommendationService(seeded_store, Settings())
