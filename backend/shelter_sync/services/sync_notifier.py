"""Sync notifier: turn EventBus sync events into operator-facing summaries.

Subscribes to the sync lifecycle events and logs one short line per outcome,
the same wording the shelter UI shows in its notifications.  The latest
summaries are kept in memory for anything that wants to display them.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any
from typing import Deque
from typing import Dict

from shelter_sync.events.event_bus import EventType
from shelter_sync.events.event_bus import event_bus

logger = logging.getLogger(__name__)


class SyncNotifier:
    """Subscribe to EventBus and log a one-line summary per sync outcome."""

    def __init__(self, history: int = 50):
        self.recent: Deque[str] = deque(maxlen=history)
        self._started = False

    def _emit(self, message: str, *, failed: bool = False) -> None:
        self.recent.append(message)
        if failed:
            logger.warning(message)
        else:
            logger.info(message)

    async def _handle_push(self, data: Dict[str, Any]) -> None:
        if data.get("skipped"):
            return
        if not data.get("success"):
            self._emit(f"同期失敗: {data.get('error') or '同期中にエラーが発生しました'}", failed=True)
            return

        posts = data.get("postsSynced", 0)
        comments = data.get("commentsSynced", 0)
        tracks = data.get("locationTracksSynced", 0)
        media = data.get("mediaSynced", 0)
        total = posts + comments + tracks + media
        self._emit(
            f"同期完了: {total}件のデータを同期しました"
            f"（投稿: {posts}, コメント: {comments}, 位置情報: {tracks}, メディア: {media}）"
        )

    async def _handle_pull(self, data: Dict[str, Any]) -> None:
        if data.get("skipped"):
            return
        if not data.get("success"):
            self._emit(f"取得失敗: {data.get('error') or '取得中にエラーが発生しました'}", failed=True)
            return

        total = (
            data.get("postsPulled", 0)
            + data.get("commentsPulled", 0)
            + data.get("locationTracksPulled", 0)
            + data.get("mediaPulled", 0)
        )
        # Quiet ticks of the periodic pull are not worth a line.
        if total == 0 and not data.get("mediaFailed"):
            return
        message = f"取得完了: {total}件のデータを取得しました"
        if data.get("mediaFailed"):
            message += f"（メディア取得失敗: {data['mediaFailed']}件）"
        self._emit(message, failed=bool(data.get("mediaFailed")))

    async def _handle_media(self, data: Dict[str, Any]) -> None:
        failed = data.get("failed", 0)
        message = f"メディア同期: {data.get('mediaSynced', 0)}/{data.get('total', 0)}件"
        if failed:
            message += f"（失敗: {failed}件）"
        self._emit(message, failed=bool(failed))

    async def _handle_queue_drained(self, data: Dict[str, Any]) -> None:
        if data.get("replayed"):
            self._emit(f"オフライン中の操作を{data['replayed']}件送信しました")

    async def _handle_connectivity(self, data: Dict[str, Any]) -> None:
        if data.get("online"):
            self._emit("オンラインに復帰しました")
        else:
            self._emit("オフラインです。操作は復帰後に送信されます", failed=True)

    def _handlers(self):
        return (
            (EventType.PUSH_COMPLETED, self._handle_push),
            (EventType.PULL_COMPLETED, self._handle_pull),
            (EventType.MEDIA_SYNCED, self._handle_media),
            (EventType.QUEUE_DRAINED, self._handle_queue_drained),
            (EventType.CONNECTIVITY_CHANGED, self._handle_connectivity),
        )

    def start(self) -> None:
        if self._started:
            return
        for event_type, handler in self._handlers():
            event_bus.subscribe(event_type, handler)
        self._started = True
        logger.info("SyncNotifier subscribed to sync events")

    def stop(self) -> None:
        if not self._started:
            return
        try:
            for event_type, handler in self._handlers():
                event_bus.unsubscribe(event_type, handler)
        finally:
            self._started = False


# Global instance used by app startup/shutdown
sync_notifier = SyncNotifier()
