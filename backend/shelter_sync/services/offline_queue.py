"""Durable queue of API calls that failed while the node was offline.

Entries are kept in a JSON file (``OFFLINE_QUEUE_PATH``) and replayed in
FIFO order against the local API once connectivity returns::

    queued -> replaying -> done     (2xx: removed)
                        -> queued   (transport error / non-2xx: kept)

Entries written by older clients (``{"type": "create_report", "data": ...}``)
are mapped onto the current ``{method, url, body}`` shape by
:func:`normalize_entry`; shapes it does not know are dropped and counted.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated
from typing import Any
from typing import List
from typing import Literal
from typing import Optional
from typing import Union

import httpx
from pydantic import BaseModel
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import ValidationError

from shelter_sync.config import get_settings
from shelter_sync.events.event_bus import EventType
from shelter_sync.events.event_bus import event_bus
from shelter_sync.metrics import offline_queue_replays_total
from shelter_sync.services.remote_client import ClientFactory
from shelter_sync.services.remote_client import default_client_factory
from shelter_sync.utils.log import log
from shelter_sync.utils.time import utc_now_naive


class OperationState(str, Enum):
    QUEUED = "queued"
    REPLAYING = "replaying"
    DONE = "done"


class CapturedRequest(BaseModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
    url: str
    data: Optional[Any] = None


class PendingOperation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: Literal["api_request"] = "api_request"
    request: CapturedRequest
    timestamp: datetime = Field(default_factory=utc_now_naive)
    state: OperationState = OperationState.QUEUED
    attempts: int = 0


# ---------------------------------------------------------------------------
# Legacy shapes
# ---------------------------------------------------------------------------


class _LegacyCreateReport(BaseModel):
    type: Literal["create_report"]
    data: Any = None

    def to_request(self) -> CapturedRequest:
        return CapturedRequest(method="POST", url="/posts", data=self.data)


class _LegacyAddMessage(BaseModel):
    type: Literal["add_message"]
    data: Any = None
    shelterId: Optional[Union[int, str]] = None

    def to_request(self) -> CapturedRequest:
        shelter = "" if self.shelterId is None else self.shelterId
        return CapturedRequest(method="POST", url=f"/shelters/{shelter}/messages", data=self.data)


class _LegacyUpdateStatus(BaseModel):
    type: Literal["update_status"]
    data: Any = None

    def to_request(self) -> CapturedRequest:
        return CapturedRequest(method="PATCH", url="/reports/status", data=self.data)


_QueueEntry = Annotated[
    Union[PendingOperation, _LegacyCreateReport, _LegacyAddMessage, _LegacyUpdateStatus],
    Field(discriminator="type"),
]
_entry_adapter = TypeAdapter(_QueueEntry)


def normalize_entry(raw: Any) -> Optional[PendingOperation]:
    """Return *raw* as a current-shape operation, or ``None`` if unmappable."""

    try:
        entry = _entry_adapter.validate_python(raw)
    except ValidationError:
        return None

    if isinstance(entry, PendingOperation):
        # A crash mid-replay leaves an entry marked replaying; it was never
        # confirmed so it goes back to the queue.
        entry.state = OperationState.QUEUED
        return entry

    return PendingOperation(request=entry.to_request())


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@dataclass
class NormalizeReport:
    kept: int = 0
    migrated: int = 0
    dropped: int = 0


@dataclass
class DrainReport:
    replayed: int = 0
    failed: int = 0
    remaining: int = 0


class OfflineQueue:
    def __init__(
        self,
        path: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        client_factory: Optional[ClientFactory] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.path = Path(path or settings.offline_queue_path)
        self.base_url = (base_url or settings.local_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self._client_factory = client_factory or default_client_factory
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_raw(self) -> List[Any]:
        if not self.path.is_file():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except json.JSONDecodeError:
            log.error("offline-queue", status="corrupt-file", path=str(self.path))
            return []
        return data if isinstance(data, list) else []

    def _save(self, operations: List[PendingOperation]) -> None:
        self._write([op.model_dump(mode="json") for op in operations])

    def _write(self, entries: List[Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(entries, ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".queue-")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
        os.replace(tmp_name, self.path)

    def load(self) -> List[PendingOperation]:
        """Current-shape entries only; legacy ones are left for :meth:`normalize`."""

        operations = []
        for raw in self._load_raw():
            try:
                operations.append(PendingOperation.model_validate(raw))
            except ValidationError:
                continue
        return operations

    def __len__(self) -> int:
        return len(self._load_raw())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, method: str, url: str, data: Any = None) -> PendingOperation:
        operation = PendingOperation(request=CapturedRequest(method=method.upper(), url=url, data=data))
        raw = self._load_raw()
        raw.append(operation.model_dump(mode="json"))
        self._write(raw)
        log.info("offline-queue", status="enqueued", id=operation.id, method=operation.request.method, url=url)
        return operation

    def normalize(self) -> NormalizeReport:
        """Rewrite the file with every entry in the current shape."""

        report = NormalizeReport()
        operations: List[PendingOperation] = []

        for raw in self._load_raw():
            operation = normalize_entry(raw)
            if operation is None:
                report.dropped += 1
                offline_queue_replays_total.labels("dropped").inc()
                log.warning("offline-queue", status="dropped", entry=raw)
                continue
            if isinstance(raw, dict) and raw.get("type") == "api_request":
                report.kept += 1
            else:
                report.migrated += 1
            operations.append(operation)

        if report.migrated or report.dropped:
            log.info("offline-queue", status="normalized", migrated=report.migrated, dropped=report.dropped)
        self._save(operations)
        return report

    async def drain(self) -> DrainReport:
        """Replay queued operations in FIFO order; failures stay queued."""

        if self._lock.locked():
            log.info("offline-queue", status="skipped", reason="drain-in-progress")
            return DrainReport(remaining=len(self))

        async with self._lock:
            self.normalize()
            operations = self.load()
            report = DrainReport()

            if not operations:
                return report

            remaining: List[PendingOperation] = []
            async with self._client_factory(self.base_url, self.timeout) as client:
                for operation in operations:
                    operation.state = OperationState.REPLAYING
                    operation.attempts += 1
                    if await self._replay(client, operation):
                        operation.state = OperationState.DONE
                        report.replayed += 1
                    else:
                        operation.state = OperationState.QUEUED
                        report.failed += 1
                        remaining.append(operation)

            # Entries enqueued while replaying stay behind the requeued ones.
            processed = {op.id for op in operations}
            arrived = [r for r in self._load_raw() if not (isinstance(r, dict) and r.get("id") in processed)]
            self._write([op.model_dump(mode="json") for op in remaining] + arrived)
            report.remaining = len(remaining) + len(arrived)

        log.info("offline-queue", status="drained", replayed=report.replayed, remaining=report.remaining)
        if report.remaining == 0:
            await event_bus.publish(EventType.QUEUE_DRAINED, {"replayed": report.replayed})
        return report

    async def _replay(self, client: httpx.AsyncClient, operation: PendingOperation) -> bool:
        request = operation.request
        url = f"{self.base_url}{request.url}"
        try:
            response = await client.request(
                request.method,
                url,
                json=request.data if request.method != "GET" else None,
            )
        except httpx.HTTPError as exc:
            offline_queue_replays_total.labels("failed").inc()
            log.warning("offline-queue", status="replay-failed", id=operation.id, url=url, error=str(exc))
            return False

        if not response.is_success:
            offline_queue_replays_total.labels("failed").inc()
            log.warning(
                "offline-queue", status="replay-failed", id=operation.id, url=url, status_code=response.status_code
            )
            return False

        offline_queue_replays_total.labels("success").inc()
        return True


__all__ = [
    "CapturedRequest",
    "DrainReport",
    "NormalizeReport",
    "OfflineQueue",
    "OperationState",
    "PendingOperation",
    "normalize_entry",
]
