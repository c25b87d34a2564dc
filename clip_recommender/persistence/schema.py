from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

LABEL_TABLES = ("label_shots", "label_faces", "label_people", "label_objects")

_CONTENT_DDL = [
    """
    CREATE TABLE IF NOT EXISTS media (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        name text NOT NULL DEFAULT '',
        duration double precision NULL,
        media_date text NULL,
        version integer NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_media_workspace ON media (workspace_id)",
    """
    CREATE TABLE IF NOT EXISTS media_clips (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        media_id text NOT NULL REFERENCES media (id),
        start_seconds double precision NOT NULL,
        end_seconds double precision NOT NULL,
        clip_type text NOT NULL DEFAULT 'user',
        meta text NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_media_clips_workspace_media ON media_clips (workspace_id, media_id)",
    """
    CREATE TABLE IF NOT EXISTS timelines (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        name text NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS timeline_clips (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        timeline_id text NOT NULL REFERENCES timelines (id),
        media_id text NOT NULL REFERENCES media (id),
        media_clip_id text NULL REFERENCES media_clips (id),
        clip_order integer NOT NULL,
        start_seconds double precision NOT NULL,
        end_seconds double precision NOT NULL,
        meta text NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_timeline_clips_timeline ON timeline_clips (timeline_id, clip_order)",
    """
    CREATE TABLE IF NOT EXISTS label_entities (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        canonical_name text NOT NULL,
        label_type text NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS label_speech (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        media_id text NOT NULL REFERENCES media (id),
        entity_id text NULL REFERENCES label_entities (id),
        start_seconds double precision NOT NULL,
        end_seconds double precision NOT NULL,
        confidence double precision NOT NULL,
        transcript text NOT NULL DEFAULT '',
        speaker_tag text NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_label_speech_media ON label_speech (workspace_id, media_id)",
    """
    CREATE TABLE IF NOT EXISTS label_tracks (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        media_id text NOT NULL REFERENCES media (id),
        entity_id text NULL REFERENCES label_entities (id),
        track_id text NOT NULL,
        start_seconds double precision NOT NULL,
        end_seconds double precision NOT NULL,
        confidence double precision NOT NULL,
        bounding_box text NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_label_tracks_media ON label_tracks (workspace_id, media_id)",
]

_LABEL_DDL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        media_id text NOT NULL REFERENCES media (id),
        entity_id text NULL REFERENCES label_entities (id),
        start_seconds double precision NOT NULL,
        end_seconds double precision NOT NULL,
        confidence double precision NOT NULL
    )
"""

_RECOMMENDATION_COLUMNS = """
        id text PRIMARY KEY,
        workspace_id text NOT NULL,
        target_id text NOT NULL,
        strategy text NOT NULL CHECK (strategy IN (
            'same_entity', 'adjacent_shot', 'temporal_nearby', 'confidence_duration', 'dialog_cluster',
            'activity_strategy', 'object_position_matcher'
        )),
        label_type text NOT NULL CHECK (label_type IN (
            'object', 'shot', 'person', 'speech', 'face', 'segment', 'text'
        )),
        start_seconds double precision NOT NULL,
        end_seconds double precision NOT NULL,
        clip_id text NULL,
        score double precision NOT NULL CHECK (score >= 0 AND score <= 1),
        rank integer NOT NULL CHECK (rank >= 0),
        reason text NOT NULL,
        reason_data text NOT NULL DEFAULT '{}',
        query_hash text NOT NULL,
        version integer NOT NULL DEFAULT 1,
        processor text NULL,
        accepted_at text NULL,
        dismissed_at text NULL,
        accepted_clip_id text NULL,
        created_at text NOT NULL,
        updated_at text NOT NULL
"""

_RECOMMENDATION_CONSTRAINTS = """
        CHECK (start_seconds < end_seconds),
        CHECK (accepted_at IS NULL OR dismissed_at IS NULL)
"""

_RECOMMENDATION_DDL = [
    f"CREATE TABLE IF NOT EXISTS media_recommendations ({_RECOMMENDATION_COLUMNS}, {_RECOMMENDATION_CONSTRAINTS})",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_media_rec_hash_segment
        ON media_recommendations (query_hash, start_seconds, end_seconds)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_media_rec_context
        ON media_recommendations (workspace_id, target_id, query_hash)
    """,
    "CREATE INDEX IF NOT EXISTS idx_media_rec_rank ON media_recommendations (query_hash, rank)",
    f"""
    CREATE TABLE IF NOT EXISTS timeline_recommendations ({_RECOMMENDATION_COLUMNS},
        target_mode text NOT NULL DEFAULT 'append' CHECK (target_mode IN ('append', 'replace')),
        seed_clip_id text NULL,
        {_RECOMMENDATION_CONSTRAINTS}
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_timeline_rec_hash_clip
        ON timeline_recommendations (query_hash, clip_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_timeline_rec_context
        ON timeline_recommendations (workspace_id, target_id, query_hash)
    """,
    "CREATE INDEX IF NOT EXISTS idx_timeline_rec_rank ON timeline_recommendations (query_hash, rank)",
    """
    CREATE INDEX IF NOT EXISTS idx_timeline_rec_feedback
        ON timeline_recommendations (strategy, accepted_at, dismissed_at)
    """,
]


def ddl_statements() -> list[str]:
    statements = list(_CONTENT_DDL)
    for table in LABEL_TABLES:
        statements.append(_LABEL_DDL.format(table=table))
        statements.append(f"CREATE INDEX IF NOT EXISTS idx_{table}_media ON {table} (workspace_id, media_id)")
    statements.extend(_RECOMMENDATION_DDL)
    return statements


def create_schema(engine: Engine) -> None:
    """Create record-store and recommendation tables if they do not exist."""

    with engine.begin() as conn:
        for statement in ddl_statements():
            conn.execute(text(statement))
    logger.info("Record-store schema ready (%d statements)", len(ddl_statements()))
