"""Pull sync: fetch everything a peer changed since the local cursor.

Serving side (``GET /api/sync/pull``) is :meth:`PullSyncService.export_changes`;
pulling side (``POST /api/sync/pull/execute``) is
:meth:`PullSyncService.run_pull_sync`.

The cursor for a scope moves only to the server time the peer reported
*before* it queried, and only once the window is fully applied: inside the
transaction that applied the rows, or, when the window carries media, after
every object it references is present locally.  A failed apply or a failed
download therefore leaves the cursor where it was and the next pull asks for
the same window again; re-applying is harmless because rows are inserted if
absent and objects already on disk are skipped.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import List
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from shelter_sync import database
from shelter_sync.constants import PULL_PATH
from shelter_sync.constants import pull_scope_key
from shelter_sync.crud import crud
from shelter_sync.database import db_session
from shelter_sync.events.event_bus import EventType
from shelter_sync.events.event_bus import event_bus
from shelter_sync.metrics import sync_attempts_total
from shelter_sync.metrics import sync_duration_seconds
from shelter_sync.metrics import sync_records_total
from shelter_sync.models.enums import SyncType
from shelter_sync.schemas.schemas import CommentRecord
from shelter_sync.schemas.schemas import LocationTrackRecord
from shelter_sync.schemas.schemas import MediaRecord
from shelter_sync.schemas.schemas import PostRecord
from shelter_sync.schemas.schemas import PullResponse
from shelter_sync.schemas.schemas import PullResult
from shelter_sync.services.media_replicator import LocalMediaDestination
from shelter_sync.services.media_replicator import MediaObject
from shelter_sync.services.media_replicator import MediaReplicator
from shelter_sync.services.media_replicator import RemoteMediaSource
from shelter_sync.services.media_replicator import ReplicationReport
from shelter_sync.services.object_store import LocalObjectStore
from shelter_sync.services.object_store import get_object_store
from shelter_sync.services.remote_client import ClientFactory
from shelter_sync.services.remote_client import RemoteNodeClient
from shelter_sync.services.sync_errors import MalformedResponseError
from shelter_sync.services.sync_errors import SyncError
from shelter_sync.utils.log import log
from shelter_sync.utils.time import utc_now_naive


class PullSyncService:
    def __init__(
        self,
        session_factory=None,
        client_factory: Optional[ClientFactory] = None,
        store: Optional[LocalObjectStore] = None,
        replicator: Optional[MediaReplicator] = None,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._store = store
        self._replicator = replicator
        self._lock = asyncio.Lock()

    @property
    def session_factory(self):
        return self._session_factory or database.default_session_factory

    @property
    def store(self) -> LocalObjectStore:
        return self._store or get_object_store()

    @property
    def replicator(self) -> MediaReplicator:
        return self._replicator or MediaReplicator()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Serving side
    # ------------------------------------------------------------------

    @staticmethod
    def export_changes(db: Session, since: Optional[datetime], shelter_id: Optional[int]) -> PullResponse:
        """Rows changed at or after *since* plus the server time to resume from.

        ``server_time`` is taken before querying so a row written while the
        export runs is included next time rather than lost.
        """

        server_time = utc_now_naive()
        changed = crud.fetch_changed_since(db, since=since, shelter_id=shelter_id)
        return PullResponse(
            posts=[PostRecord.model_validate(p) for p in changed["posts"]],
            comments=[CommentRecord.model_validate(c) for c in changed["comments"]],
            location_tracks=[LocationTrackRecord.model_validate(t) for t in changed["location_tracks"]],
            media=[MediaRecord.model_validate(m) for m in changed["media"]],
            server_time=server_time,
            since=since,
        )

    # ------------------------------------------------------------------
    # Pulling side
    # ------------------------------------------------------------------

    async def run_pull_sync(self, target_url: str, shelter_id: Optional[int] = None) -> PullResult:
        """Run one pull pass; a call while another is in flight is a no-op."""

        if self._lock.locked():
            log.warning("pull-sync", status="skipped", reason="already-running", target_url=target_url)
            return PullResult(success=True, skipped=True)

        async with self._lock:
            started = time.perf_counter()
            result = await self._pull(target_url, shelter_id)
            sync_duration_seconds.labels("pull").observe(time.perf_counter() - started)

        await event_bus.publish(EventType.PULL_COMPLETED, result.model_dump(by_alias=True))
        return result

    async def _pull(self, target_url: str, shelter_id: Optional[int]) -> PullResult:
        scope_key = pull_scope_key(shelter_id)

        with db_session(self.session_factory) as db:
            since = crud.get_pull_cursor(db, scope_key)
            log_id = crud.create_sync_log(
                db, sync_type=SyncType.PULL, target_url=target_url, shelter_id=shelter_id
            ).id

        params = {}
        if since is not None:
            params["since"] = since.isoformat()
        if shelter_id is not None:
            params["shelterId"] = shelter_id

        try:
            async with RemoteNodeClient(target_url, client_factory=self._client_factory) as client:
                body = await client.get_json(PULL_PATH, params=params)
                try:
                    response = PullResponse.model_validate(body)
                except ValidationError as exc:
                    raise MalformedResponseError(f"{target_url}{PULL_PATH}", str(exc)) from exc

                applied, media, cursor = self._apply(response, scope_key, since)

                report = ReplicationReport()
                if media:
                    report = await self.replicator.replicate(
                        media,
                        RemoteMediaSource(client),
                        LocalMediaDestination(self.store),
                    )
                    if not report.failed:
                        with db_session(self.session_factory) as db:
                            cursor = crud.set_pull_cursor(db, scope_key, response.server_time)
        except SyncError as exc:
            return self._fail(log_id, str(exc), since)
        except Exception as exc:
            log.exception("pull-sync", status="failed", log_id=log_id)
            return self._fail(log_id, f"Unexpected error: {exc}", since)

        with db_session(self.session_factory) as db:
            crud.complete_sync_log(
                db,
                log_id,
                posts_synced=applied["posts"],
                comments_synced=applied["comments"],
                location_tracks_synced=applied["location_tracks"],
                media_synced=report.synced,
                media_failed=report.failed,
                error_message=(
                    f"{report.failed} media object(s) failed to download" if report.failed else None
                ),
            )

        sync_attempts_total.labels("pull", "completed").inc()
        for entity, count in applied.items():
            sync_records_total.labels("pull", entity).inc(count)

        log.info(
            "pull-sync",
            status="completed",
            log_id=log_id,
            scope=scope_key,
            cursor=cursor.isoformat() if cursor else None,
            media_synced=report.synced,
            media_failed=report.failed,
            **applied,
        )

        return PullResult(
            success=True,
            posts_pulled=applied["posts"],
            comments_pulled=applied["comments"],
            location_tracks_pulled=applied["location_tracks"],
            media_pulled=applied["media"],
            media_synced=report.synced,
            media_failed=report.failed,
            cursor=cursor,
            log_id=log_id,
        )

    def _apply(self, response: PullResponse, scope_key: str, since: Optional[datetime]):
        """Insert pulled rows and, for a media-free window, advance the cursor in one transaction.

        Returns every media object of the window whose post is present, newly
        inserted or not, so a download that failed last time is tried again.
        """

        applied = {"posts": 0, "comments": 0, "location_tracks": 0, "media": 0}
        media: List[MediaObject] = []

        with db_session(self.session_factory) as db:
            for post in response.posts:
                if crud.insert_post_if_absent(db, post):
                    applied["posts"] += 1

            for entity, records, insert in (
                ("comments", response.comments, crud.insert_comment_if_absent),
                ("location_tracks", response.location_tracks, crud.insert_location_track_if_absent),
                ("media", response.media, crud.insert_media_if_absent),
            ):
                for record in records:
                    if not crud.post_exists(db, record.post_id):
                        log.warning(
                            "pull-sync",
                            status="record-skipped",
                            entity=entity,
                            record_id=record.id,
                            post_id=record.post_id,
                        )
                        continue
                    if insert(db, record):
                        applied[entity] += 1
                    if entity == "media":
                        media.append(MediaObject(file_path=record.file_path, media_id=record.id))

            cursor = since
            # With media pending the cursor waits for the downloads.
            if not response.is_empty and not media:
                cursor = crud.set_pull_cursor(db, scope_key, response.server_time)

        return applied, media, cursor

    def _fail(self, log_id: int, message: str, cursor: Optional[datetime]) -> PullResult:
        log.warning("pull-sync", status="failed", log_id=log_id, error=message)
        with db_session(self.session_factory) as db:
            crud.fail_sync_log(db, log_id, message)
        sync_attempts_total.labels("pull", "failed").inc()
        return PullResult(success=False, error=message, cursor=cursor, log_id=log_id)


pull_sync_service = PullSyncService()


def get_pull_sync_service() -> PullSyncService:
    return pull_sync_service


__all__ = ["PullSyncService", "get_pull_sync_service", "pull_sync_service"]
