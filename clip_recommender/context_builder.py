from __future__ import annotations

import logging

from clip_recommender.errors import NotFound
from clip_recommender.models import (
    FilterParams,
    MediaClip,
    MediaStrategyContext,
    SearchParams,
    TimelineStrategyContext,
)
from clip_recommender.persistence.record_store import RecordStore

logger = logging.getLogger(__name__)


def build_media_context(
    store: RecordStore,
    workspace_id: str,
    media_id: str,
    filter_params: FilterParams | None = None,
) -> MediaStrategyContext:
    """Load labels and existing clips of one media item."""

    media = store.get_media(workspace_id, media_id)
    if media is None:
        raise NotFound(f"Media '{media_id}' not found in workspace '{workspace_id}'.")

    labels = store.load_label_facts(workspace_id, [media.id])
    clips = store.list_media_clips(workspace_id, media.id)
    logger.debug(
        "Media context %s: %d shots, %d detections, %d speech segments, %d tracks, %d clips",
        media.id,
        len(labels.shots),
        len(labels.detections()),
        len(labels.speech),
        len(labels.tracks),
        len(clips),
    )
    return MediaStrategyContext(
        workspace_id=workspace_id,
        media=media,
        labels=labels,
        existing_clips=tuple(clips),
        filter_params=filter_params or FilterParams(),
    )


def build_timeline_context(
    store: RecordStore,
    workspace_id: str,
    timeline_id: str,
    seed_clip_id: str | None = None,
    search_params: SearchParams | None = None,
) -> TimelineStrategyContext:
    """Load the timeline, its clip pool and the labels of every media in the pool.

    ``seed_clip_id`` names a clip placed on the timeline; it is resolved to the
    media clip it plays so strategies can compare pool clips against it.
    """

    timeline = store.get_timeline(workspace_id, timeline_id)
    if timeline is None:
        raise NotFound(f"Timeline '{timeline_id}' not found in workspace '{workspace_id}'.")

    timeline_clips = store.list_timeline_clips(workspace_id, timeline.id)
    available_clips = store.list_media_clips(workspace_id)

    seed_timeline_clip = None
    seed_clip = None
    if seed_clip_id is not None:
        seed_timeline_clip = next((clip for clip in timeline_clips if clip.id == seed_clip_id), None)
        if seed_timeline_clip is None:
            raise NotFound(f"Seed clip '{seed_clip_id}' is not on timeline '{timeline_id}'.")

        if seed_timeline_clip.media_clip_id is not None:
            seed_clip = next(
                (clip for clip in available_clips if clip.id == seed_timeline_clip.media_clip_id),
                None,
            )
        if seed_clip is None:
            # Timeline clip without a backing media clip; compare on its own bounds.
            seed_clip = MediaClip(
                id=seed_timeline_clip.media_clip_id or seed_timeline_clip.id,
                workspace_id=workspace_id,
                media_id=seed_timeline_clip.media_id,
                start_seconds=seed_timeline_clip.start_seconds,
                end_seconds=seed_timeline_clip.end_seconds,
                clip_type="timeline",
            )

    media_ids = {clip.media_id for clip in available_clips} | {clip.media_id for clip in timeline_clips}
    media = store.list_media(workspace_id, media_ids)
    labels = store.load_label_facts(workspace_id, media.keys())

    logger.debug(
        "Timeline context %s: %d timeline clips, %d pool clips across %d media, seed=%s",
        timeline.id,
        len(timeline_clips),
        len(available_clips),
        len(media),
        seed_clip_id,
    )
    return TimelineStrategyContext(
        workspace_id=workspace_id,
        timeline=timeline,
        timeline_clips=tuple(timeline_clips),
        available_clips=tuple(available_clips),
        labels=labels,
        media=media,
        search_params=search_params or SearchParams(),
        seed_clip=seed_clip,
        seed_timeline_clip=seed_timeline_clip,
    )
