"""Receiving side of push sync (``POST /api/sync/receive``).

An incoming batch is partitioned by owning shelter and every shelter group
is applied in its own transaction with its own ``receive`` SyncLog, so a
constraint violation in one group never rolls back another.

Records are inserted if absent: an id that is already stored counts as
applied and is neither updated nor counted again, which makes re-sending a
batch harmless.
"""

import logging
import time
from dataclasses import dataclass
from dataclasses import field
from typing import Dict
from typing import List
from typing import Optional

from shelter_sync import database
from shelter_sync.crud import crud
from shelter_sync.database import db_session
from shelter_sync.metrics import sync_attempts_total
from shelter_sync.metrics import sync_duration_seconds
from shelter_sync.metrics import sync_records_total
from shelter_sync.models.enums import SyncType
from shelter_sync.schemas.schemas import CommentRecord
from shelter_sync.schemas.schemas import LocationTrackRecord
from shelter_sync.schemas.schemas import MediaRecord
from shelter_sync.schemas.schemas import PostRecord
from shelter_sync.schemas.schemas import ReceiveResult
from shelter_sync.schemas.schemas import ShelterSyncResult
from shelter_sync.schemas.schemas import SyncBatch

logger = logging.getLogger(__name__)


@dataclass
class ShelterGroup:
    shelter_id: int
    posts: List[PostRecord] = field(default_factory=list)
    comments: List[CommentRecord] = field(default_factory=list)
    location_tracks: List[LocationTrackRecord] = field(default_factory=list)
    media: List[MediaRecord] = field(default_factory=list)


@dataclass
class _Applied:
    posts: int = 0
    comments: int = 0
    location_tracks: int = 0
    media: int = 0
    skipped: int = 0


def _error_text(exc: Exception) -> str:
    # IntegrityError & friends carry the driver message on ``orig``.
    return str(getattr(exc, "orig", None) or exc)


class SyncReceiver:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    @property
    def session_factory(self):
        return self._session_factory or database.default_session_factory

    def receive(self, batch: SyncBatch) -> ReceiveResult:
        if batch.is_empty:
            return ReceiveResult(success=True)

        started = time.perf_counter()
        groups, unresolved = self.group_by_shelter(batch)

        results = [self._apply_group(group, batch.source_url) for group in groups.values()]

        sync_duration_seconds.labels("receive").observe(time.perf_counter() - started)

        return ReceiveResult(
            success=all(r.success for r, _ in results),
            results=[r for r, _ in results],
            posts_synced=sum(r.posts_synced for r, _ in results),
            comments_synced=sum(r.comments_synced for r, _ in results),
            location_tracks_synced=sum(r.location_tracks_synced for r, _ in results),
            media_synced=sum(r.media_synced for r, _ in results),
            skipped_records=unresolved + sum(skipped for _, skipped in results),
        )

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    def group_by_shelter(self, batch: SyncBatch) -> "tuple[Dict[int, ShelterGroup], int]":
        """Partition *batch* by shelter; returns the groups and the number of
        records whose owning post could not be resolved."""

        post_shelter: Dict[str, int] = {p.id: p.shelter_id for p in batch.posts}

        children = [*batch.comments, *batch.location_tracks, *batch.media]
        unknown = {c.post_id for c in children if c.post_id not in post_shelter}
        if unknown:
            with db_session(self.session_factory) as db:
                post_shelter.update(crud.get_post_shelter_ids(db, unknown))

        groups: Dict[int, ShelterGroup] = {}

        def group_for(shelter_id: int) -> ShelterGroup:
            if shelter_id not in groups:
                groups[shelter_id] = ShelterGroup(shelter_id=shelter_id)
            return groups[shelter_id]

        for post in batch.posts:
            group_for(post.shelter_id).posts.append(post)

        unresolved = 0
        for attr in ("comments", "location_tracks", "media"):
            for record in getattr(batch, attr):
                shelter_id = post_shelter.get(record.post_id)
                if shelter_id is None:
                    unresolved += 1
                    logger.warning(f"Skipping {attr} record {record.id}: owning post {record.post_id} is unknown")
                    continue
                getattr(group_for(shelter_id), attr).append(record)

        return groups, unresolved

    # ------------------------------------------------------------------
    # Per-shelter apply
    # ------------------------------------------------------------------

    def _apply_group(self, group: ShelterGroup, source_url: Optional[str]):
        with db_session(self.session_factory) as db:
            log_id = crud.create_sync_log(
                db, sync_type=SyncType.RECEIVE, target_url=source_url, shelter_id=group.shelter_id
            ).id

        try:
            with db_session(self.session_factory) as db:
                applied = self._insert_group(db, group)
                crud.complete_sync_log(
                    db,
                    log_id,
                    posts_synced=applied.posts,
                    comments_synced=applied.comments,
                    location_tracks_synced=applied.location_tracks,
                    media_synced=applied.media,
                )
        except Exception as exc:
            message = _error_text(exc)
            logger.error(f"Receive for shelter {group.shelter_id} failed: {message}")
            with db_session(self.session_factory) as db:
                crud.fail_sync_log(db, log_id, message)
            sync_attempts_total.labels("receive", "failed").inc()
            return (
                ShelterSyncResult(shelter_id=group.shelter_id, success=False, error_message=message),
                0,
            )

        sync_attempts_total.labels("receive", "completed").inc()
        for entity in ("posts", "comments", "location_tracks", "media"):
            sync_records_total.labels("receive", entity).inc(getattr(applied, entity))

        logger.info(
            f"Received shelter {group.shelter_id}: posts={applied.posts} comments={applied.comments} "
            f"tracks={applied.location_tracks} media={applied.media} skipped={applied.skipped}"
        )
        return (
            ShelterSyncResult(
                shelter_id=group.shelter_id,
                success=True,
                posts_synced=applied.posts,
                comments_synced=applied.comments,
                location_tracks_synced=applied.location_tracks,
                media_synced=applied.media,
            ),
            applied.skipped,
        )

    def _insert_group(self, db, group: ShelterGroup) -> _Applied:
        applied = _Applied()

        for post in group.posts:
            if crud.insert_post_if_absent(db, post):
                applied.posts += 1

        for attr, insert in (
            ("comments", crud.insert_comment_if_absent),
            ("location_tracks", crud.insert_location_track_if_absent),
            ("media", crud.insert_media_if_absent),
        ):
            for record in getattr(group, attr):
                if not crud.post_exists(db, record.post_id):
                    applied.skipped += 1
                    logger.warning(f"Skipping {attr} record {record.id}: post {record.post_id} not present")
                    continue
                if insert(db, record):
                    setattr(applied, attr, getattr(applied, attr) + 1)

        return applied


sync_receiver = SyncReceiver()


def get_sync_receiver() -> SyncReceiver:
    return sync_receiver


__all__ = ["ShelterGroup", "SyncReceiver", "get_sync_receiver", "sync_receiver"]
