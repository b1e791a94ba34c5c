"""Push sync: send locally unsynced rows to a peer's receive endpoint.

One pass::

    SyncLog(in_progress) -> collect unsynced rows -> POST /api/sync/receive
        -> mark transmitted ids synced -> SyncLog(completed)

Rows are marked synced only after the peer acknowledged them.  When the
peer accepted the batch but marking fails locally, the log is still
completed (with a warning in ``error_message``); the rows stay unsynced and
are sent again next time, which the receiver ignores as duplicates.
"""

from __future__ import annotations

import asyncio
import time
from typing import Dict
from typing import List
from typing import Optional
from typing import Set

from pydantic import ValidationError

from shelter_sync import database
from shelter_sync.config import get_settings
from shelter_sync.constants import RECEIVE_PATH
from shelter_sync.crud import crud
from shelter_sync.database import db_session
from shelter_sync.events.event_bus import EventType
from shelter_sync.events.event_bus import event_bus
from shelter_sync.metrics import sync_attempts_total
from shelter_sync.metrics import sync_duration_seconds
from shelter_sync.metrics import sync_records_total
from shelter_sync.models.enums import SyncType
from shelter_sync.models.models import Comment
from shelter_sync.models.models import LocationTrack
from shelter_sync.models.models import Media
from shelter_sync.models.models import Post
from shelter_sync.schemas.schemas import CommentRecord
from shelter_sync.schemas.schemas import LocationTrackRecord
from shelter_sync.schemas.schemas import MediaRecord
from shelter_sync.schemas.schemas import PostRecord
from shelter_sync.schemas.schemas import ReceiveResult
from shelter_sync.schemas.schemas import SyncBatch
from shelter_sync.schemas.schemas import SyncResult
from shelter_sync.services.remote_client import ClientFactory
from shelter_sync.services.remote_client import RemoteNodeClient
from shelter_sync.services.sync_errors import MalformedResponseError
from shelter_sync.services.sync_errors import SyncError
from shelter_sync.utils.log import log
from shelter_sync.utils.retry import async_retry


class PushSyncService:
    def __init__(self, session_factory=None, client_factory: Optional[ClientFactory] = None):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._lock = asyncio.Lock()

    @property
    def session_factory(self):
        return self._session_factory or database.default_session_factory

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_push_sync(self, target_url: str, shelter_id: Optional[int] = None) -> SyncResult:
        """Run one push pass; a call while another is in flight is a no-op."""

        if self._lock.locked():
            log.warning("push-sync", status="skipped", reason="already-running", target_url=target_url)
            return SyncResult(success=True, skipped=True)

        async with self._lock:
            started = time.perf_counter()
            result = await self._push(target_url, shelter_id)
            sync_duration_seconds.labels("push").observe(time.perf_counter() - started)

        await event_bus.publish(EventType.PUSH_COMPLETED, result.model_dump(by_alias=True))
        return result

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    async def _push(self, target_url: str, shelter_id: Optional[int]) -> SyncResult:
        with db_session(self.session_factory) as db:
            log_id = crud.create_sync_log(
                db, sync_type=SyncType.PUSH, target_url=target_url, shelter_id=shelter_id
            ).id

            posts = crud.fetch_unsynced_posts(db, shelter_id)
            batch = SyncBatch(
                posts=[PostRecord.model_validate(p) for p in posts],
                comments=[CommentRecord.model_validate(c) for c in crud.fetch_unsynced_comments(db, shelter_id)],
                location_tracks=[
                    LocationTrackRecord.model_validate(t)
                    for t in crud.fetch_unsynced_location_tracks(db, shelter_id)
                ],
                media=[
                    MediaRecord.model_validate(m)
                    for m in crud.fetch_media_for_push(db, [p.id for p in posts], shelter_id)
                ],
                source_url=get_settings().local_api_url,
            )

        if batch.is_empty:
            with db_session(self.session_factory) as db:
                crud.complete_sync_log(db, log_id)
            sync_attempts_total.labels("push", "completed").inc()
            log.info("push-sync", status="completed", reason="nothing-to-sync", log_id=log_id)
            return SyncResult(success=True, log_id=log_id)

        try:
            async with RemoteNodeClient(target_url, client_factory=self._client_factory) as client:
                body = await client.post_json(RECEIVE_PATH, batch.model_dump(mode="json", by_alias=True))
            try:
                ack = ReceiveResult.model_validate(body)
            except ValidationError as exc:
                raise MalformedResponseError(f"{target_url}{RECEIVE_PATH}", str(exc)) from exc
        except SyncError as exc:
            return self._fail(log_id, str(exc))
        except Exception as exc:
            log.exception("push-sync", status="failed", log_id=log_id)
            return self._fail(log_id, f"Unexpected error: {exc}")

        rejected: Set[int] = {r.shelter_id for r in ack.results if not r.success}
        accepted = _accepted_ids(batch, rejected, self.session_factory)

        mark_error = None
        try:
            await self._mark_synced(accepted)
        except Exception as exc:
            mark_error = f"Remote accepted the batch but marking local rows as synced failed: {exc}"
            log.error("push-sync", status="mark-failed", log_id=log_id, error=str(exc))

        notes = [note for note in (_rejected_note(ack, rejected), mark_error) if note]
        counts = {
            "posts_synced": len(accepted[Post]),
            "comments_synced": len(accepted[Comment]),
            "location_tracks_synced": len(accepted[LocationTrack]),
            "media_synced": len(accepted[Media]),
        }

        with db_session(self.session_factory) as db:
            crud.complete_sync_log(db, log_id, error_message="; ".join(notes) or None, **counts)

        sync_attempts_total.labels("push", "completed").inc()
        for entity, count in counts.items():
            sync_records_total.labels("push", entity.removesuffix("_synced")).inc(count)

        log.info("push-sync", status="completed", log_id=log_id, target_url=target_url, **counts)

        return SyncResult(
            success=not rejected,
            error=_rejected_note(ack, rejected),
            log_id=log_id,
            **counts,
        )

    def _fail(self, log_id: int, message: str) -> SyncResult:
        log.warning("push-sync", status="failed", log_id=log_id, error=message)
        with db_session(self.session_factory) as db:
            crud.fail_sync_log(db, log_id, message)
        sync_attempts_total.labels("push", "failed").inc()
        return SyncResult(success=False, error=message, log_id=log_id)

    async def _mark_synced(self, accepted: Dict[type, List[str]]) -> None:
        factory = self.session_factory

        @async_retry(max_attempts=3, base_delay=0.5, operation="mark-synced")
        async def _mark() -> None:
            with db_session(factory) as db:
                for model, ids in accepted.items():
                    crud.mark_as_synced(db, model, ids)

        await _mark()


def _accepted_ids(batch: SyncBatch, rejected: Set[int], session_factory) -> Dict[type, List[str]]:
    """Ids per model the peer stored, minus shelter groups it rejected."""

    post_shelter = {p.id: p.shelter_id for p in batch.posts}

    if rejected:
        missing = {
            r.post_id
            for r in [*batch.comments, *batch.location_tracks, *batch.media]
            if r.post_id not in post_shelter
        }
        if missing:
            with db_session(session_factory) as db:
                post_shelter.update(crud.get_post_shelter_ids(db, missing))

    def keep(post_id: str) -> bool:
        return post_shelter.get(post_id) not in rejected

    return {
        Post: [p.id for p in batch.posts if p.shelter_id not in rejected],
        Comment: [c.id for c in batch.comments if keep(c.post_id)],
        LocationTrack: [t.id for t in batch.location_tracks if keep(t.post_id)],
        Media: [m.id for m in batch.media if keep(m.post_id)],
    }


def _rejected_note(ack: ReceiveResult, rejected: Set[int]) -> Optional[str]:
    if not rejected:
        return None
    details = ", ".join(
        f"shelter {r.shelter_id}: {r.error_message or 'failed'}" for r in ack.results if r.shelter_id in rejected
    )
    return f"Remote rejected {len(rejected)} shelter group(s) ({details})"


push_sync_service = PushSyncService()


def get_push_sync_service() -> PushSyncService:
    return push_sync_service


__all__ = ["PushSyncService", "get_push_sync_service", "push_sync_service"]
