"""Binary media replication between object stores.

Relational rows travel with push/pull; the payloads they point at are copied
here, one object per ``file_path``:

1. probe the destination, skip when the object is already there
2. fetch the bytes (and content type) from the source
3. write them to the destination

At most ``MEDIA_CONCURRENCY`` (default 3) transfers run at once and every
transfer succeeds or fails on its own.  Nothing in this module touches the
database except :meth:`MediaSyncService.run_media_sync`, which records the
pass in a ``media`` SyncLog.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from dataclasses import field
from pathlib import PurePosixPath
from typing import Iterable
from typing import List
from typing import Optional
from typing import Protocol
from typing import Tuple

from shelter_sync import database
from shelter_sync.config import get_settings
from shelter_sync.constants import MEDIA_RECEIVE_PATH
from shelter_sync.constants import PULL_MEDIA_PATH
from shelter_sync.crud import crud
from shelter_sync.database import db_session
from shelter_sync.events.event_bus import EventType
from shelter_sync.events.event_bus import event_bus
from shelter_sync.metrics import media_transfers_total
from shelter_sync.metrics import sync_attempts_total
from shelter_sync.metrics import sync_duration_seconds
from shelter_sync.models.enums import SyncType
from shelter_sync.schemas.schemas import MediaSyncError
from shelter_sync.schemas.schemas import MediaSyncResult
from shelter_sync.services.object_store import LocalObjectStore
from shelter_sync.services.object_store import get_object_store
from shelter_sync.services.remote_client import ClientFactory
from shelter_sync.services.remote_client import RemoteNodeClient
from shelter_sync.services.sync_errors import ObjectNotFoundError
from shelter_sync.utils.log import log
from shelter_sync.utils.retry import async_retry
from shelter_sync.utils.retry import is_retryable_http_exc


@dataclass(frozen=True)
class MediaObject:
    file_path: str
    media_id: Optional[str] = None


@dataclass
class ReplicationReport:
    total: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[MediaSyncError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Ends of a transfer
# ---------------------------------------------------------------------------


class MediaSource(Protocol):
    async def fetch(self, key: str) -> Tuple[bytes, str]: ...


class MediaDestination(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def store(self, key: str, data: bytes, content_type: str) -> None: ...


class LocalMediaSource:
    def __init__(self, store: LocalObjectStore):
        self._store = store

    async def fetch(self, key: str) -> Tuple[bytes, str]:
        obj = self._store.get(key)
        return obj.data, obj.content_type


class LocalMediaDestination:
    def __init__(self, store: LocalObjectStore):
        self._store = store

    async def exists(self, key: str) -> bool:
        return self._store.exists(key)

    async def store(self, key: str, data: bytes, content_type: str) -> None:
        self._store.put(key, data, content_type)


class RemoteMediaSource:
    """Downloads via the peer's raw-object endpoint (``GET /api/sync/pull/media``)."""

    def __init__(self, client: RemoteNodeClient):
        self.client = client

    async def fetch(self, key: str) -> Tuple[bytes, str]:
        return await self.client.get_bytes(PULL_MEDIA_PATH, params={"filePath": key})


class RemoteMediaDestination:
    """Probes with ``HEAD /api/sync/pull/media`` and uploads to ``/api/sync/media/receive``."""

    def __init__(self, client: RemoteNodeClient):
        self.client = client

    async def exists(self, key: str) -> bool:
        return await self.client.exists(PULL_MEDIA_PATH, params={"filePath": key})

    async def store(self, key: str, data: bytes, content_type: str) -> None:
        filename = PurePosixPath(key).name or "media"
        await self.client.upload(
            MEDIA_RECEIVE_PATH,
            files={"file": (filename, data, content_type)},
            data={"filePath": key, "contentType": content_type},
        )


# ---------------------------------------------------------------------------
# Replicator
# ---------------------------------------------------------------------------


def _worth_retrying(exc: Exception) -> bool:
    # A missing object or a rejected key will not appear on a second try.
    if isinstance(exc, (ObjectNotFoundError, ValueError)):
        return False
    return is_retryable_http_exc(exc)


class MediaReplicator:
    def __init__(self, concurrency: Optional[int] = None):
        self.concurrency = concurrency or get_settings().media_concurrency

    async def replicate(
        self,
        objects: Iterable[MediaObject],
        source: MediaSource,
        destination: MediaDestination,
    ) -> ReplicationReport:
        unique: dict[str, MediaObject] = {}
        for obj in objects:
            unique.setdefault(obj.file_path, obj)

        report = ReplicationReport(total=len(unique))
        if not unique:
            return report

        semaphore = asyncio.Semaphore(self.concurrency)

        @async_retry(max_attempts=3, base_delay=0.5, retriable=_worth_retrying, operation="media-transfer")
        async def _copy(key: str) -> int:
            data, content_type = await source.fetch(key)
            await destination.store(key, data, content_type)
            return len(data)

        async def _transfer(obj: MediaObject) -> None:
            async with semaphore:
                try:
                    if await destination.exists(obj.file_path):
                        report.skipped += 1
                        media_transfers_total.labels("skipped").inc()
                        return
                    size = await _copy(obj.file_path)
                except Exception as exc:
                    report.failed += 1
                    report.errors.append(MediaSyncError(media_id=obj.media_id, file_path=obj.file_path, error=str(exc)))
                    media_transfers_total.labels("failed").inc()
                    log.warning("media-transfer", status="failed", file_path=obj.file_path, error=str(exc))
                    return

                report.synced += 1
                media_transfers_total.labels("synced").inc()
                log.debug("media-transfer", status="synced", file_path=obj.file_path, bytes=size)

        await asyncio.gather(*(_transfer(obj) for obj in unique.values()))

        log.info(
            "media-replication",
            total=report.total,
            synced=report.synced,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report


# ---------------------------------------------------------------------------
# Media-only push pass (POST /api/sync/media)
# ---------------------------------------------------------------------------


class MediaSyncService:
    """Copies every live local media object to a peer's object store."""

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

    @property
    def session_factory(self):
        return self._session_factory or database.default_session_factory

    @property
    def store(self) -> LocalObjectStore:
        return self._store or get_object_store()

    @property
    def replicator(self) -> MediaReplicator:
        return self._replicator or MediaReplicator()

    async def run_media_sync(self, target_url: str) -> MediaSyncResult:
        started = time.perf_counter()

        with db_session(self.session_factory) as db:
            log_id = crud.create_sync_log(db, sync_type=SyncType.MEDIA, target_url=target_url).id
            objects = [MediaObject(file_path=m.file_path, media_id=m.id) for m in crud.list_live_media(db)]

        try:
            async with RemoteNodeClient(target_url, client_factory=self._client_factory) as client:
                report = await self.replicator.replicate(
                    objects,
                    LocalMediaSource(self.store),
                    RemoteMediaDestination(client),
                )
        except Exception as exc:
            log.exception("media-sync", status="failed", target_url=target_url)
            with db_session(self.session_factory) as db:
                crud.fail_sync_log(db, log_id, str(exc))
            sync_attempts_total.labels("media", "failed").inc()
            return MediaSyncResult(success=False, total=len(objects), log_id=log_id)

        error_message = None
        if report.failed:
            error_message = f"{report.failed} of {report.total} media object(s) failed to transfer"

        with db_session(self.session_factory) as db:
            crud.complete_sync_log(
                db,
                log_id,
                media_synced=report.synced,
                media_failed=report.failed,
                error_message=error_message,
            )

        sync_attempts_total.labels("media", "completed").inc()
        sync_duration_seconds.labels("media").observe(time.perf_counter() - started)

        result = MediaSyncResult(
            success=report.failed == 0,
            total=report.total,
            media_synced=report.synced,
            failed=report.failed,
            skipped=report.skipped,
            errors=report.errors,
            log_id=log_id,
        )
        await event_bus.publish(EventType.MEDIA_SYNCED, result.model_dump(by_alias=True))
        return result


media_sync_service = MediaSyncService()


def get_media_sync_service() -> MediaSyncService:
    return media_sync_service


__all__ = [
    "LocalMediaDestination",
    "LocalMediaSource",
    "MediaDestination",
    "MediaObject",
    "MediaReplicator",
    "MediaSource",
    "MediaSyncService",
    "RemoteMediaDestination",
    "RemoteMediaSource",
    "ReplicationReport",
    "get_media_sync_service",
    "media_sync_service",
]
