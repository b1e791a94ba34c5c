"""Client-side sync coordination for an edge node.

The coordinator decides *when* to sync; the engines behind the local HTTP
API decide *how*.  It talks to its own node over HTTP (``LOCAL_API_URL``)
exactly like the shelter front-end does, so a coordinator can also drive a
node running in another process.

Lifecycle::

    coordinator = SyncCoordinator()
    await coordinator.start()   # consumer task + APScheduler jobs
    ...
    await coordinator.stop()

Connectivity changes are events on an ``asyncio.Queue`` consumed by a single
task; an *online* event runs :meth:`run_online_sequence`:

1. normalise legacy offline-queue entries
2. drain the offline queue
3. probe the central API
4. push (``POST /api/sync/execute``)
5. media push (``POST /api/sync/media``)
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from enum import Enum
from typing import Any
from typing import Callable
from typing import Dict
from typing import Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shelter_sync.config import Settings
from shelter_sync.config import get_settings
from shelter_sync.constants import EXECUTE_PATH
from shelter_sync.constants import MEDIA_SYNC_PATH
from shelter_sync.constants import PULL_EXECUTE_PATH
from shelter_sync.events.event_bus import EventType
from shelter_sync.events.event_bus import event_bus
from shelter_sync.services.offline_queue import DrainReport
from shelter_sync.services.offline_queue import NormalizeReport
from shelter_sync.services.offline_queue import OfflineQueue
from shelter_sync.services.remote_client import ClientFactory
from shelter_sync.services.remote_client import RemoteNodeClient
from shelter_sync.services.remote_client import default_client_factory
from shelter_sync.services.sync_errors import SyncError
from shelter_sync.utils.log import log
from shelter_sync.utils.time import utc_now

PULL_JOB_ID = "pull-sync"
CONNECTIVITY_JOB_ID = "connectivity-check"


class Connectivity(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class OnlineSyncReport:
    normalized: Optional[NormalizeReport] = None
    drained: Optional[DrainReport] = None
    central_available: bool = False
    push: Optional[Dict[str, Any]] = None
    media: Optional[Dict[str, Any]] = None
    skipped_reason: Optional[str] = None


class SyncCoordinator:
    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        queue: Optional[OfflineQueue] = None,
        client_factory: Optional[ClientFactory] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self._client_factory = client_factory or default_client_factory
        self.queue = queue or OfflineQueue(
            self.settings.offline_queue_path,
            base_url=self.settings.local_api_url,
            client_factory=self._client_factory,
        )
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.clock = clock

        self.is_online = True
        self.last_online_sync_at: Optional[datetime] = None
        self._events: Optional[asyncio.Queue[Connectivity]] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._pull_in_progress = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            log.debug("sync-coordinator", status="already-running")
            return

        self._events = asyncio.Queue()
        self._task = asyncio.create_task(self._consume())

        self.scheduler.add_job(
            self.check_connectivity,
            IntervalTrigger(seconds=self.settings.connectivity_check_seconds),
            id=CONNECTIVITY_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        if self.settings.pull_enabled:
            self.scheduler.add_job(
                self.run_scheduled_pull,
                IntervalTrigger(
                    seconds=self.settings.pull_interval_seconds,
                    jitter=self.settings.pull_jitter_seconds or None,
                ),
                id=PULL_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
                # One pull right after start-up, then every interval.
                next_run_time=self.clock() + timedelta(seconds=1),
            )

        self.scheduler.start()
        log.info(
            "sync-coordinator",
            status="started",
            node_role=self.settings.node_role,
            pull_enabled=self.settings.pull_enabled,
        )

        # Start-up counts as coming online.
        self.notify_online()

    async def stop(self) -> None:
        if self._task is None:
            return

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._events = None
        log.info("sync-coordinator", status="stopped")

    # ------------------------------------------------------------------
    # Connectivity events
    # ------------------------------------------------------------------

    def notify_online(self) -> None:
        self._push_event(Connectivity.ONLINE)

    def notify_offline(self) -> None:
        self._push_event(Connectivity.OFFLINE)

    def _push_event(self, event: Connectivity) -> None:
        if self._events is None:
            raise RuntimeError("SyncCoordinator.start() has not been called")
        self._events.put_nowait(event)

    async def _consume(self) -> None:
        events = self._events
        if events is None:
            raise RuntimeError("SyncCoordinator.start() has not been called")
        while True:
            event = await events.get()
            try:
                await self.handle(event)
            except Exception:
                log.exception("sync-coordinator", status="event-failed", connectivity=event.value)
            finally:
                events.task_done()

    async def handle(self, event: Connectivity) -> Optional[OnlineSyncReport]:
        self.is_online = event is Connectivity.ONLINE
        await event_bus.publish(EventType.CONNECTIVITY_CHANGED, {"online": self.is_online})

        if not self.is_online:
            log.info("sync-coordinator", status="offline")
            return None

        log.info("sync-coordinator", status="online")
        return await self.run_online_sequence()

    async def check_connectivity(self) -> bool:
        """Probe the central API and emit an event when the state flipped."""

        available = await self.probe_central()
        if available != self.is_online and self._events is not None:
            if available:
                self.notify_online()
            else:
                self.notify_offline()
        return available

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    async def run_online_sequence(self) -> OnlineSyncReport:
        report = OnlineSyncReport()

        report.normalized = self.queue.normalize()
        report.drained = await self.queue.drain()

        if not self.settings.central_api_url:
            report.skipped_reason = "central-api-not-configured"
            log.info("sync-coordinator", status="push-skipped", reason=report.skipped_reason)
            return report

        report.central_available = await self.probe_central()
        if not report.central_available:
            report.skipped_reason = "central-api-unavailable"
            log.info("sync-coordinator", status="push-skipped", reason=report.skipped_reason)
            return report

        report.push = await self._call_local(
            EXECUTE_PATH,
            {"targetUrl": self.settings.central_api_url, "shelterId": self.settings.default_shelter_id},
        )
        report.media = await self._call_local(MEDIA_SYNC_PATH, {"targetUrl": self.settings.central_api_url})

        self.last_online_sync_at = self.clock()
        return report

    async def run_scheduled_pull(self) -> Optional[Dict[str, Any]]:
        if not self.is_online:
            log.info("pull-sync", status="skipped", reason="offline")
            return None
        if self._pull_in_progress:
            log.warning("pull-sync", status="skipped", reason="already-running")
            return None
        if not self.settings.central_api_url or self.settings.default_shelter_id is None:
            log.info("pull-sync", status="skipped", reason="not-configured")
            return None

        self._pull_in_progress = True
        try:
            return await self._call_local(
                PULL_EXECUTE_PATH,
                {"targetUrl": self.settings.central_api_url, "shelterId": self.settings.default_shelter_id},
            )
        finally:
            self._pull_in_progress = False

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def probe_central(self) -> bool:
        url = self.settings.central_api_url
        if not url:
            return False
        try:
            async with self._client_factory(url, self.settings.probe_timeout_seconds) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            log.debug("sync-coordinator", status="probe-failed", url=url, error=str(exc))
            return False
        return response.is_success

    async def _call_local(self, path: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            async with RemoteNodeClient(self.settings.local_api_url, client_factory=self._client_factory) as client:
                result = await client.post_json(path, payload)
        except SyncError as exc:
            log.warning("sync-coordinator", status="local-call-failed", path=path, error=str(exc))
            return None

        log.info("sync-coordinator", status="local-call", path=path, success=result.get("success"))
        return result


__all__ = [
    "Connectivity",
    "OnlineSyncReport",
    "SyncCoordinator",
]
