from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from clip_recommender.config import StoreSettings
from clip_recommender.errors import PersistenceError
from clip_recommender.models import (
    BoundingBox,
    LabelEntity,
    LabelFact,
    LabelFacts,
    LabelTrack,
    LabelType,
    ListOptions,
    Media,
    MediaClip,
    Page,
    Recommendation,
    RecommendationKind,
    RecommendationStrategy,
    SpeechSegment,
    TargetMode,
    Timeline,
    TimelineClip,
)
from clip_recommender.persistence.schema import LABEL_TABLES

logger = logging.getLogger(__name__)

RECOMMENDATION_TABLES = {
    RecommendationKind.MEDIA: "media_recommendations",
    RecommendationKind.TIMELINE: "timeline_recommendations",
}

_LABEL_TYPES_BY_TABLE = {
    "label_shots": LabelType.SHOT,
    "label_faces": LabelType.FACE,
    "label_people": LabelType.PERSON,
    "label_objects": LabelType.OBJECT,
}

_UPSERT_CONFLICT_KEYS = {
    RecommendationKind.MEDIA: "query_hash, start_seconds, end_seconds",
    RecommendationKind.TIMELINE: "query_hash, clip_id",
}


def create_store_engine(settings: StoreSettings) -> Engine:
    """Build an engine whose connect/lock waits are bounded by the store timeout."""

    url = make_url(settings.database_url)
    kwargs: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.echo_sql}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"timeout": settings.timeout_seconds, "check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_timeout"] = settings.timeout_seconds
        if url.get_backend_name() == "postgresql":
            kwargs["connect_args"] = {
                "connect_timeout": max(1, int(settings.timeout_seconds)),
                "options": f"-c statement_timeout={int(settings.timeout_seconds * 1000)}",
            }

    return create_engine(url, **kwargs)


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore:
    """
    Central SQL for content records, label facts and recommendations.

    Every read is scoped by workspace and target. Methods accept an optional
    connection so callers can compose several writes into one transaction.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self._translate("transaction"):
            with self.engine.begin() as conn:
                yield conn

    # --- content reads ---
    def get_media(self, workspace_id: str, media_id: str, conn: Connection | None = None) -> Media | None:
        sql = text(
            """
            SELECT id, workspace_id, name, duration, media_date, version
            FROM media
            WHERE id = :media_id AND workspace_id = :workspace_id
            """
        )
        with self._connect(conn, "get_media") as c:
            row = c.execute(sql, {"media_id": media_id, "workspace_id": workspace_id}).mappings().first()
        return _media_from_row(row) if row else None

    def list_media(self, workspace_id: str, media_ids: Iterable[str], conn: Connection | None = None) -> dict[str, Media]:
        ids = sorted(set(media_ids))
        if not ids:
            return {}
        sql = text(
            """
            SELECT id, workspace_id, name, duration, media_date, version
            FROM media
            WHERE workspace_id = :workspace_id AND id IN :media_ids
            """
        ).bindparams(bindparam("media_ids", expanding=True))
        with self._connect(conn, "list_media") as c:
            rows = c.execute(sql, {"workspace_id": workspace_id, "media_ids": ids}).mappings().all()
        return {row["id"]: _media_from_row(row) for row in rows}

    def get_timeline(self, workspace_id: str, timeline_id: str, conn: Connection | None = None) -> Timeline | None:
        sql = text(
            """
            SELECT id, workspace_id, name
            FROM timelines
            WHERE id = :timeline_id AND workspace_id = :workspace_id
            """
        )
        with self._connect(conn, "get_timeline") as c:
            row = c.execute(sql, {"timeline_id": timeline_id, "workspace_id": workspace_id}).mappings().first()
        return Timeline(id=row["id"], workspace_id=row["workspace_id"], name=row["name"]) if row else None

    def get_media_clip(self, workspace_id: str, clip_id: str, conn: Connection | None = None) -> MediaClip | None:
        sql = text(
            """
            SELECT id, workspace_id, media_id, start_seconds, end_seconds, clip_type, meta
            FROM media_clips
            WHERE id = :clip_id AND workspace_id = :workspace_id
            """
        )
        with self._connect(conn, "get_media_clip") as c:
            row = c.execute(sql, {"clip_id": clip_id, "workspace_id": workspace_id}).mappings().first()
        return _media_clip_from_row(row) if row else None

    def list_media_clips(
        self,
        workspace_id: str,
        media_id: str | None = None,
        conn: Connection | None = None,
    ) -> list[MediaClip]:
        clauses = ["workspace_id = :workspace_id"]
        params: dict[str, Any] = {"workspace_id": workspace_id}
        if media_id is not None:
            clauses.append("media_id = :media_id")
            params["media_id"] = media_id
        sql = text(
            f"""
            SELECT id, workspace_id, media_id, start_seconds, end_seconds, clip_type, meta
            FROM media_clips
            WHERE {' AND '.join(clauses)}
            ORDER BY media_id, start_seconds, id
            """
        )
        with self._connect(conn, "list_media_clips") as c:
            rows = c.execute(sql, params).mappings().all()
        return [_media_clip_from_row(row) for row in rows]

    def list_timeline_clips(self, workspace_id: str, timeline_id: str, conn: Connection | None = None) -> list[TimelineClip]:
        sql = text(
            """
            SELECT id, workspace_id, timeline_id, media_id, media_clip_id, clip_order,
                   start_seconds, end_seconds, meta
            FROM timeline_clips
            WHERE workspace_id = :workspace_id AND timeline_id = :timeline_id
            ORDER BY clip_order, id
            """
        )
        with self._connect(conn, "list_timeline_clips") as c:
            rows = c.execute(sql, {"workspace_id": workspace_id, "timeline_id": timeline_id}).mappings().all()
        return [_timeline_clip_from_row(row) for row in rows]

    def load_label_facts(self, workspace_id: str, media_ids: Iterable[str], conn: Connection | None = None) -> LabelFacts:
        ids = sorted(set(media_ids))
        if not ids:
            return LabelFacts()

        grouped: dict[str, tuple[LabelFact, ...]] = {}
        with self._connect(conn, "load_label_facts") as c:
            for table in LABEL_TABLES:
                sql = text(
                    f"""
                    SELECT id, media_id, entity_id, start_seconds, end_seconds, confidence
                    FROM {table}
                    WHERE workspace_id = :workspace_id AND media_id IN :media_ids
                    ORDER BY media_id, start_seconds, id
                    """
                ).bindparams(bindparam("media_ids", expanding=True))
                rows = c.execute(sql, {"workspace_id": workspace_id, "media_ids": ids}).mappings().all()
                grouped[table] = tuple(
                    LabelFact(
                        id=row["id"],
                        media_id=row["media_id"],
                        label_type=_LABEL_TYPES_BY_TABLE[table],
                        start_seconds=float(row["start_seconds"]),
                        end_seconds=float(row["end_seconds"]),
                        confidence=float(row["confidence"]),
                        entity_id=row["entity_id"],
                    )
                    for row in rows
                )

            speech_sql = text(
                """
                SELECT id, media_id, entity_id, start_seconds, end_seconds, confidence, transcript, speaker_tag
                FROM label_speech
                WHERE workspace_id = :workspace_id AND media_id IN :media_ids
                ORDER BY media_id, start_seconds, id
                """
            ).bindparams(bindparam("media_ids", expanding=True))
            speech_rows = c.execute(speech_sql, {"workspace_id": workspace_id, "media_ids": ids}).mappings().all()
            speech = tuple(
                SpeechSegment(
                    id=row["id"],
                    media_id=row["media_id"],
                    start_seconds=float(row["start_seconds"]),
                    end_seconds=float(row["end_seconds"]),
                    confidence=float(row["confidence"]),
                    transcript=row["transcript"] or "",
                    speaker_tag=row["speaker_tag"],
                    entity_id=row["entity_id"],
                )
                for row in speech_rows
            )

            track_sql = text(
                """
                SELECT id, media_id, entity_id, track_id, start_seconds, end_seconds, confidence, bounding_box
                FROM label_tracks
                WHERE workspace_id = :workspace_id AND media_id IN :media_ids
                ORDER BY media_id, start_seconds, id
                """
            ).bindparams(bindparam("media_ids", expanding=True))
            track_rows = c.execute(track_sql, {"workspace_id": workspace_id, "media_ids": ids}).mappings().all()
            tracks = tuple(_label_track_from_row(row) for row in track_rows)

            entity_ids = sorted(
                {
                    fact.entity_id
                    for facts in grouped.values()
                    for fact in facts
                    if fact.entity_id is not None
                }
                | {segment.entity_id for segment in speech if segment.entity_id is not None}
                | {track.entity_id for track in tracks if track.entity_id is not None}
            )
            entities: tuple[LabelEntity, ...] = ()
            if entity_ids:
                entity_sql = text(
                    """
                    SELECT id, workspace_id, canonical_name, label_type
                    FROM label_entities
                    WHERE workspace_id = :workspace_id AND id IN :entity_ids
                    ORDER BY id
                    """
                ).bindparams(bindparam("entity_ids", expanding=True))
                entity_rows = c.execute(entity_sql, {"workspace_id": workspace_id, "entity_ids": entity_ids}).mappings().all()
                entities = tuple(
                    LabelEntity(
                        id=row["id"],
                        workspace_id=row["workspace_id"],
                        canonical_name=row["canonical_name"],
                        label_type=LabelType(row["label_type"]) if row["label_type"] else None,
                    )
                    for row in entity_rows
                )

        return LabelFacts(
            shots=grouped["label_shots"],
            faces=grouped["label_faces"],
            people=grouped["label_people"],
            objects=grouped["label_objects"],
            speech=speech,
            tracks=tracks,
            entities=entities,
        )

    # --- content writes ---
    def add_media(self, media: Media, conn: Connection | None = None) -> Media:
        sql = text(
            """
            INSERT INTO media (id, workspace_id, name, duration, media_date, version)
            VALUES (:id, :workspace_id, :name, :duration, :media_date, :version)
            """
        )
        with self._connect(conn, "add_media", write=True) as c:
            c.execute(
                sql,
                {
                    "id": media.id,
                    "workspace_id": media.workspace_id,
                    "name": media.name,
                    "duration": media.duration,
                    "media_date": _format_datetime(media.media_date),
                    "version": media.version,
                },
            )
        return media

    def add_media_clip(self, clip: MediaClip, conn: Connection | None = None) -> MediaClip:
        sql = text(
            """
            INSERT INTO media_clips (id, workspace_id, media_id, start_seconds, end_seconds, clip_type, meta)
            VALUES (:id, :workspace_id, :media_id, :start_seconds, :end_seconds, :clip_type, :meta)
            """
        )
        with self._connect(conn, "add_media_clip", write=True) as c:
            c.execute(
                sql,
                {
                    "id": clip.id,
                    "workspace_id": clip.workspace_id,
                    "media_id": clip.media_id,
                    "start_seconds": clip.start_seconds,
                    "end_seconds": clip.end_seconds,
                    "clip_type": clip.clip_type,
                    "meta": json.dumps(clip.meta, sort_keys=True),
                },
            )
        return clip

    def add_timeline(self, timeline: Timeline, conn: Connection | None = None) -> Timeline:
        sql = text("INSERT INTO timelines (id, workspace_id, name) VALUES (:id, :workspace_id, :name)")
        with self._connect(conn, "add_timeline", write=True) as c:
            c.execute(sql, {"id": timeline.id, "workspace_id": timeline.workspace_id, "name": timeline.name})
        return timeline

    def add_timeline_clip(self, clip: TimelineClip, conn: Connection | None = None) -> TimelineClip:
        sql = text(
            """
            INSERT INTO timeline_clips (
                id, workspace_id, timeline_id, media_id, media_clip_id, clip_order,
                start_seconds, end_seconds, meta
            )
            VALUES (
                :id, :workspace_id, :timeline_id, :media_id, :media_clip_id, :clip_order,
                :start_seconds, :end_seconds, :meta
            )
            """
        )
        with self._connect(conn, "add_timeline_clip", write=True) as c:
            c.execute(
                sql,
                {
                    "id": clip.id,
                    "workspace_id": clip.workspace_id,
                    "timeline_id": clip.timeline_id,
                    "media_id": clip.media_id,
                    "media_clip_id": clip.media_clip_id,
                    "clip_order": clip.order,
                    "start_seconds": clip.start_seconds,
                    "end_seconds": clip.end_seconds,
                    "meta": json.dumps(clip.meta, sort_keys=True),
                },
            )
        return clip

    def delete_timeline_clip(self, workspace_id: str, clip_id: str, conn: Connection | None = None) -> int:
        sql = text("DELETE FROM timeline_clips WHERE id = :clip_id AND workspace_id = :workspace_id")
        with self._connect(conn, "delete_timeline_clip", write=True) as c:
            return c.execute(sql, {"clip_id": clip_id, "workspace_id": workspace_id}).rowcount

    def max_timeline_order(self, workspace_id: str, timeline_id: str, conn: Connection | None = None) -> int:
        sql = text(
            """
            SELECT MAX(clip_order) AS max_order
            FROM timeline_clips
            WHERE workspace_id = :workspace_id AND timeline_id = :timeline_id
            """
        )
        with self._connect(conn, "max_timeline_order") as c:
            row = c.execute(sql, {"workspace_id": workspace_id, "timeline_id": timeline_id}).mappings().first()
        value = row["max_order"] if row else None
        return int(value) if value is not None else -1

    def get_timeline_clip(self, workspace_id: str, clip_id: str, conn: Connection | None = None) -> TimelineClip | None:
        sql = text(
            """
            SELECT id, workspace_id, timeline_id, media_id, media_clip_id, clip_order,
                   start_seconds, end_seconds, meta
            FROM timeline_clips
            WHERE id = :clip_id AND workspace_id = :workspace_id
            """
        )
        with self._connect(conn, "get_timeline_clip") as c:
            row = c.execute(sql, {"clip_id": clip_id, "workspace_id": workspace_id}).mappings().first()
        return _timeline_clip_from_row(row) if row else None

    def add_entity(self, entity: LabelEntity, conn: Connection | None = None) -> LabelEntity:
        sql = text(
            """
            INSERT INTO label_entities (id, workspace_id, canonical_name, label_type)
            VALUES (:id, :workspace_id, :canonical_name, :label_type)
            """
        )
        with self._connect(conn, "add_entity", write=True) as c:
            c.execute(
                sql,
                {
                    "id": entity.id,
                    "workspace_id": entity.workspace_id,
                    "canonical_name": entity.canonical_name,
                    "label_type": entity.label_type.value if entity.label_type else None,
                },
            )
        return entity

    def add_label_fact(self, workspace_id: str, fact: LabelFact, conn: Connection | None = None) -> LabelFact:
        table = _label_table(fact.label_type)
        sql = text(
            f"""
            INSERT INTO {table} (id, workspace_id, media_id, entity_id, start_seconds, end_seconds, confidence)
            VALUES (:id, :workspace_id, :media_id, :entity_id, :start_seconds, :end_seconds, :confidence)
            """
        )
        with self._connect(conn, "add_label_fact", write=True) as c:
            c.execute(
                sql,
                {
                    "id": fact.id,
                    "workspace_id": workspace_id,
                    "media_id": fact.media_id,
                    "entity_id": fact.entity_id,
                    "start_seconds": fact.start_seconds,
                    "end_seconds": fact.end_seconds,
                    "confidence": fact.confidence,
                },
            )
        return fact

    def add_speech_segment(self, workspace_id: str, segment: SpeechSegment, conn: Connection | None = None) -> SpeechSegment:
        sql = text(
            """
            INSERT INTO label_speech (
                id, workspace_id, media_id, entity_id, start_seconds, end_seconds,
                confidence, transcript, speaker_tag
            )
            VALUES (
                :id, :workspace_id, :media_id, :entity_id, :start_seconds, :end_seconds,
                :confidence, :transcript, :speaker_tag
            )
            """
        )
        with self._connect(conn, "add_speech_segment", write=True) as c:
            c.execute(
                sql,
                {
                    "id": segment.id,
                    "workspace_id": workspace_id,
                    "media_id": segment.media_id,
                    "entity_id": segment.entity_id,
                    "start_seconds": segment.start_seconds,
                    "end_seconds": segment.end_seconds,
                    "confidence": segment.confidence,
                    "transcript": segment.transcript,
                    "speaker_tag": segment.speaker_tag,
                },
            )
        return segment

    def add_label_track(self, workspace_id: str, track: LabelTrack, conn: Connection | None = None) -> LabelTrack:
        sql = text(
            """
            INSERT INTO label_tracks (
                id, workspace_id, media_id, entity_id, track_id, start_seconds, end_seconds,
                confidence, bounding_box
            )
            VALUES (
                :id, :workspace_id, :media_id, :entity_id, :track_id, :start_seconds, :end_seconds,
                :confidence, :bounding_box
            )
            """
        )
        box = track.bounding_box
        with self._connect(conn, "add_label_track", write=True) as c:
            c.execute(
                sql,
                {
                    "id": track.id,
                    "workspace_id": workspace_id,
                    "media_id": track.media_id,
                    "entity_id": track.entity_id,
                    "track_id": track.track_id,
                    "start_seconds": track.start_seconds,
                    "end_seconds": track.end_seconds,
                    "confidence": track.confidence,
                    "bounding_box": json.dumps(
                        {"top": box.top, "left": box.left, "bottom": box.bottom, "right": box.right}
                    )
                    if box is not None
                    else None,
                },
            )
        return track

    # --- recommendations ---
    def upsert_recommendation(self, recommendation: Recommendation, conn: Connection) -> Recommendation:
        """Insert, or refresh in place the row sharing the same dedup key."""

        kind = recommendation.kind
        table = RECOMMENDATION_TABLES[kind]
        now = _format_datetime(utc_now())
        timeline_columns = ", target_mode, seed_clip_id" if kind is RecommendationKind.TIMELINE else ""
        timeline_values = ", :target_mode, :seed_clip_id" if kind is RecommendationKind.TIMELINE else ""
        timeline_updates = (
            ", target_mode = excluded.target_mode, seed_clip_id = excluded.seed_clip_id"
            if kind is RecommendationKind.TIMELINE
            else ""
        )
        sql = text(
            f"""
            INSERT INTO {table} (
                id, workspace_id, target_id, strategy, label_type, start_seconds, end_seconds,
                clip_id, score, rank, reason, reason_data, query_hash, version, processor,
                created_at, updated_at{timeline_columns}
            )
            VALUES (
                :id, :workspace_id, :target_id, :strategy, :label_type, :start_seconds, :end_seconds,
                :clip_id, :score, :rank, :reason, :reason_data, :query_hash, 1, :processor,
                :now, :now{timeline_values}
            )
            ON CONFLICT ({_UPSERT_CONFLICT_KEYS[kind]}) DO UPDATE SET
                strategy = excluded.strategy,
                label_type = excluded.label_type,
                start_seconds = excluded.start_seconds,
                end_seconds = excluded.end_seconds,
                clip_id = COALESCE(excluded.clip_id, {table}.clip_id),
                score = excluded.score,
                rank = excluded.rank,
                reason = excluded.reason,
                reason_data = excluded.reason_data,
                processor = excluded.processor,
                version = {table}.version + 1,
                updated_at = excluded.updated_at{timeline_updates}
            """
        )
        conn.execute(
            sql,
            {
                "id": recommendation.id or new_id(),
                "workspace_id": recommendation.workspace_id,
                "target_id": recommendation.target_id,
                "strategy": recommendation.strategy.value,
                "label_type": recommendation.label_type.value,
                "start_seconds": recommendation.start_seconds,
                "end_seconds": recommendation.end_seconds,
                "clip_id": recommendation.clip_id,
                "score": recommendation.score,
                "rank": recommendation.rank,
                "reason": recommendation.reason,
                "reason_data": json.dumps(recommendation.reason_data, sort_keys=True),
                "query_hash": recommendation.query_hash,
                "processor": recommendation.processor,
                "now": now,
                "target_mode": recommendation.target_mode.value if recommendation.target_mode else TargetMode.APPEND.value,
                "seed_clip_id": recommendation.seed_clip_id,
            },
        )

        if kind is RecommendationKind.MEDIA:
            key_clause = "start_seconds = :start_seconds AND end_seconds = :end_seconds"
            key_params = {"start_seconds": recommendation.start_seconds, "end_seconds": recommendation.end_seconds}
        else:
            key_clause = "clip_id = :clip_id"
            key_params = {"clip_id": recommendation.clip_id}
        row = (
            conn.execute(
                text(f"SELECT * FROM {table} WHERE query_hash = :query_hash AND {key_clause}"),
                {"query_hash": recommendation.query_hash, **key_params},
            )
            .mappings()
            .one()
        )
        return _recommendation_from_row(kind, row)

    def prune_recommendations(
        self,
        kind: RecommendationKind,
        workspace_id: str,
        target_id: str,
        query_hash: str,
        surviving_ids: Sequence[str],
        conn: Connection,
    ) -> int:
        """Delete proposed rows of this target that the latest generation did not keep."""

        table = RECOMMENDATION_TABLES[kind]
        sql = text(
            f"""
            DELETE FROM {table}
            WHERE workspace_id = :workspace_id
              AND target_id = :target_id
              AND accepted_at IS NULL
              AND dismissed_at IS NULL
              AND (query_hash <> :query_hash OR id NOT IN :surviving_ids)
            """
        ).bindparams(bindparam("surviving_ids", expanding=True))
        result = conn.execute(
            sql,
            {
                "workspace_id": workspace_id,
                "target_id": target_id,
                "query_hash": query_hash,
                "surviving_ids": list(surviving_ids),
            },
        )
        return int(result.rowcount or 0)

    def get_recommendation(
        self,
        recommendation_id: str,
        kind: RecommendationKind | None = None,
        conn: Connection | None = None,
    ) -> Recommendation | None:
        kinds = [kind] if kind is not None else list(RECOMMENDATION_TABLES)
        with self._connect(conn, "get_recommendation") as c:
            for candidate_kind in kinds:
                row = (
                    c.execute(
                        text(f"SELECT * FROM {RECOMMENDATION_TABLES[candidate_kind]} WHERE id = :id"),
                        {"id": recommendation_id},
                    )
                    .mappings()
                    .first()
                )
                if row:
                    return _recommendation_from_row(candidate_kind, row)
        return None

    def mark_accepted(
        self,
        recommendation: Recommendation,
        *,
        accepted_clip_id: str,
        clip_id: str | None,
        accepted_at: datetime,
        conn: Connection,
    ) -> bool:
        """Move a proposed row to accepted; False when it is no longer proposed."""

        table = RECOMMENDATION_TABLES[recommendation.kind]
        sql = text(
            f"""
            UPDATE {table}
            SET accepted_at = :accepted_at,
                accepted_clip_id = :accepted_clip_id,
                clip_id = COALESCE(clip_id, :clip_id),
                updated_at = :accepted_at
            WHERE id = :id AND accepted_at IS NULL AND dismissed_at IS NULL
            """
        )
        result = conn.execute(
            sql,
            {
                "id": recommendation.id,
                "accepted_at": _format_datetime(accepted_at),
                "accepted_clip_id": accepted_clip_id,
                "clip_id": clip_id,
            },
        )
        return result.rowcount == 1

    def mark_dismissed(self, recommendation: Recommendation, *, dismissed_at: datetime, conn: Connection) -> bool:
        table = RECOMMENDATION_TABLES[recommendation.kind]
        sql = text(
            f"""
            UPDATE {table}
            SET dismissed_at = :dismissed_at, updated_at = :dismissed_at
            WHERE id = :id AND accepted_at IS NULL AND dismissed_at IS NULL
            """
        )
        result = conn.execute(sql, {"id": recommendation.id, "dismissed_at": _format_datetime(dismissed_at)})
        return result.rowcount == 1

    def list_recommendations(
        self,
        target_id: str,
        options: ListOptions,
        page: int = 1,
        per_page: int = 50,
        *,
        kind: RecommendationKind | None = None,
        query_hash: str | None = None,
    ) -> Page:
        kinds = [kind] if kind is not None else list(RECOMMENDATION_TABLES)
        if options.target_mode is not None:
            kinds = [item for item in kinds if item is RecommendationKind.TIMELINE]

        clauses = ["target_id = :target_id"]
        params: dict[str, Any] = {"target_id": target_id}
        if options.exclude_accepted:
            clauses.append("accepted_at IS NULL")
        if options.exclude_dismissed:
            clauses.append("dismissed_at IS NULL")
        if options.strategy is not None:
            clauses.append("strategy = :strategy")
            params["strategy"] = options.strategy.value
        if options.min_score is not None:
            clauses.append("score >= :min_score")
            params["min_score"] = options.min_score
        if query_hash is not None:
            clauses.append("query_hash = :query_hash")
            params["query_hash"] = query_hash

        items: list[Recommendation] = []
        total = 0
        with self._connect(None, "list_recommendations") as c:
            for candidate_kind in kinds:
                table = RECOMMENDATION_TABLES[candidate_kind]
                kind_clauses = list(clauses)
                if candidate_kind is RecommendationKind.TIMELINE and options.target_mode is not None:
                    kind_clauses.append("target_mode = :target_mode")
                    params["target_mode"] = options.target_mode.value
                where = " AND ".join(kind_clauses)
                total += int(c.execute(text(f"SELECT COUNT(*) FROM {table} WHERE {where}"), params).scalar_one())
                rows = c.execute(
                    text(f"SELECT * FROM {table} WHERE {where} ORDER BY rank, score DESC, id"),
                    params,
                ).mappings().all()
                items.extend(_recommendation_from_row(candidate_kind, row) for row in rows)

        items.sort(key=lambda item: (item.rank, -item.score, item.id or ""))
        offset = max(page - 1, 0) * per_page
        return Page(items=items[offset : offset + per_page], page=page, per_page=per_page, total_items=total)

    def feedback_counts(
        self,
        workspace_id: str,
        *,
        target_id: str | None = None,
        strategy: RecommendationStrategy | None = None,
    ) -> dict[str, dict[str, int]]:
        """Per-strategy totals of accepted, dismissed and pending rows."""

        clauses = ["workspace_id = :workspace_id"]
        params: dict[str, Any] = {"workspace_id": workspace_id}
        if target_id is not None:
            clauses.append("target_id = :target_id")
            params["target_id"] = target_id
        if strategy is not None:
            clauses.append("strategy = :strategy")
            params["strategy"] = strategy.value

        counts: dict[str, dict[str, int]] = {}
        with self._connect(None, "feedback_counts") as c:
            for table in RECOMMENDATION_TABLES.values():
                rows = c.execute(
                    text(
                        f"""
                        SELECT strategy,
                               COUNT(*) AS total,
                               SUM(CASE WHEN accepted_at IS NOT NULL THEN 1 ELSE 0 END) AS accepted,
                               SUM(CASE WHEN dismissed_at IS NOT NULL THEN 1 ELSE 0 END) AS dismissed
                        FROM {table}
                        WHERE {' AND '.join(clauses)}
                        GROUP BY strategy
                        """
                    ),
                    params,
                ).mappings().all()
                for row in rows:
                    bucket = counts.setdefault(row["strategy"], {"total": 0, "accepted": 0, "dismissed": 0})
                    bucket["total"] += int(row["total"] or 0)
                    bucket["accepted"] += int(row["accepted"] or 0)
                    bucket["dismissed"] += int(row["dismissed"] or 0)
        return counts

    # --- helpers ---
    @contextmanager
    def _connect(self, conn: Connection | None, action: str, *, write: bool = False) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self._translate(action):
            if write:
                with self.engine.begin() as fresh:
                    yield fresh
            else:
                with self.engine.connect() as fresh:
                    yield fresh

    @contextmanager
    def _translate(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Record-store %s failed: %s", action, exc)
            raise PersistenceError(f"Record-store {action} failed: {exc}") from exc


def _label_table(label_type: LabelType) -> str:
    for table, table_type in _LABEL_TYPES_BY_TABLE.items():
        if table_type is label_type:
            return table
    raise ValueError(f"Label type '{label_type.value}' is not stored as a detection table.")


def _label_track_from_row(row: Any) -> LabelTrack:
    return LabelTrack(
        id=row["id"],
        media_id=row["media_id"],
        track_id=str(row["track_id"]),
        start_seconds=float(row["start_seconds"]),
        end_seconds=float(row["end_seconds"]),
        confidence=float(row["confidence"]),
        entity_id=row["entity_id"],
        bounding_box=parse_bounding_box(_load_json(row["bounding_box"])),
    )


def parse_bounding_box(raw: Any) -> BoundingBox | None:
    """Build a box from a {top, left, bottom, right} mapping; partial boxes yield ``None``."""

    if not isinstance(raw, dict):
        return None
    try:
        return BoundingBox(
            top=float(raw["top"]),
            left=float(raw["left"]),
            bottom=float(raw["bottom"]),
            right=float(raw["right"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _media_from_row(row: Any) -> Media:
    return Media(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"] or "",
        duration=float(row["duration"]) if row["duration"] is not None else None,
        media_date=_parse_datetime(row["media_date"]),
        version=int(row["version"] or 1),
    )


def _media_clip_from_row(row: Any) -> MediaClip:
    return MediaClip(
        id=row["id"],
        workspace_id=row["workspace_id"],
        media_id=row["media_id"],
        start_seconds=float(row["start_seconds"]),
        end_seconds=float(row["end_seconds"]),
        clip_type=row["clip_type"],
        meta=_load_json(row["meta"]),
    )


def _timeline_clip_from_row(row: Any) -> TimelineClip:
    return TimelineClip(
        id=row["id"],
        workspace_id=row["workspace_id"],
        timeline_id=row["timeline_id"],
        media_id=row["media_id"],
        media_clip_id=row["media_clip_id"],
        order=int(row["clip_order"]),
        start_seconds=float(row["start_seconds"]),
        end_seconds=float(row["end_seconds"]),
        meta=_load_json(row["meta"]),
    )


def _recommendation_from_row(kind: RecommendationKind, row: Any) -> Recommendation:
    is_timeline = kind is RecommendationKind.TIMELINE
    return Recommendation(
        id=row["id"],
        kind=kind,
        workspace_id=row["workspace_id"],
        target_id=row["target_id"],
        strategy=RecommendationStrategy(row["strategy"]),
        label_type=LabelType(row["label_type"]),
        start_seconds=float(row["start_seconds"]),
        end_seconds=float(row["end_seconds"]),
        score=float(row["score"]),
        rank=int(row["rank"]),
        reason=row["reason"],
        reason_data=_load_json(row["reason_data"]),
        query_hash=row["query_hash"],
        clip_id=row["clip_id"],
        version=int(row["version"]),
        target_mode=TargetMode(row["target_mode"]) if is_timeline and row["target_mode"] else None,
        seed_clip_id=row["seed_clip_id"] if is_timeline else None,
        accepted_at=_parse_datetime(row["accepted_at"]),
        dismissed_at=_parse_datetime(row["dismissed_at"]),
        accepted_clip_id=row["accepted_clip_id"],
        processor=row["processor"],
    )


def _load_json(raw: Any) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    return json.loads(raw)


def _format_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
