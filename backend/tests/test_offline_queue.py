"""Offline request queue: persistence, legacy normalisation and FIFO replay."""

import json

import httpx
import pytest
from helpers.sync_helpers import mock_client_factory

from shelter_sync.events.event_bus import EventType
from shelter_sync.events.event_bus import event_bus
from shelter_sync.services.offline_queue import OfflineQueue
from shelter_sync.services.offline_queue import OperationState
from shelter_sync.services.offline_queue import PendingOperation
from shelter_sync.services.offline_queue import normalize_entry

LOCAL = "http://localhost:8787"


class Recorder:
    """Scripted local API: records replayed calls, fails the listed paths."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, request.url.path, body))
        if request.url.path in self.failing:
            return httpx.Response(503, json={"detail": "busy"})
        return httpx.Response(200, json={"ok": True})


def _queue(tmp_path, recorder) -> OfflineQueue:
    return OfflineQueue(
        str(tmp_path / "state" / "pending_operations.json"),
        base_url=LOCAL,
        client_factory=mock_client_factory(recorder),
        timeout=5,
    )


def _write_raw(queue: OfflineQueue, entries) -> None:
    queue.path.parent.mkdir(parents=True, exist_ok=True)
    queue.path.write_text(json.dumps(entries), encoding="utf-8")


def test_enqueue_persists_across_instances(tmp_path):
    queue = _queue(tmp_path, Recorder())
    queue.enqueue("post", "/posts", {"content": "水が不足"})

    reopened = _queue(tmp_path, Recorder())
    operations = reopened.load()

    assert len(operations) == 1
    assert operations[0].request.method == "POST"
    assert operations[0].request.data == {"content": "水が不足"}
    assert operations[0].state == OperationState.QUEUED


@pytest.mark.parametrize(
    "raw, method, url",
    [
        ({"type": "create_report", "data": {"content": "x"}}, "POST", "/posts"),
        ({"type": "add_message", "shelterId": 3, "data": {"text": "y"}}, "POST", "/shelters/3/messages"),
        ({"type": "update_status", "data": {"id": "r1"}}, "PATCH", "/reports/status"),
    ],
)
def test_legacy_shapes_are_mapped(raw, method, url):
    operation = normalize_entry(raw)

    assert operation is not None
    assert operation.request.method == method
    assert operation.request.url == url
    assert operation.request.data == raw["data"]


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "sync_everything"},
        {"type": "api_request", "request": {"method": "TELEPORT", "url": "/x"}},
        {"no": "type"},
        "not-an-object",
        None,
    ],
)
def test_unmappable_entries_are_rejected(raw):
    assert normalize_entry(raw) is None


def test_interrupted_replay_goes_back_to_queue():
    operation = PendingOperation.model_validate(
        {"type": "api_request", "request": {"method": "POST", "url": "/posts"}, "state": "replaying"}
    )

    assert normalize_entry(operation.model_dump(mode="json")).state == OperationState.QUEUED


def test_normalize_counts_dropped_entries(tmp_path):
    queue = _queue(tmp_path, Recorder())
    _write_raw(
        queue,
        [
            {"type": "create_report", "data": {"content": "old"}},
            {"type": "sync_everything"},
            PendingOperation.model_validate({"request": {"method": "POST", "url": "/posts"}}).model_dump(mode="json"),
        ],
    )

    report = queue.normalize()

    assert (report.kept, report.migrated, report.dropped) == (1, 1, 1)
    assert len(queue) == 2
    assert all(entry["type"] == "api_request" for entry in json.loads(queue.path.read_text()))


@pytest.mark.asyncio
async def test_drain_stale_legacy_and_well_formed_entry(tmp_path):
    recorder = Recorder()
    queue = _queue(tmp_path, recorder)
    _write_raw(queue, [{"type": "stale_sync_marker", "payload": 1}])
    queue.enqueue("POST", "/posts", {"content": "current"})

    report = await queue.drain()

    assert report.replayed == 1
    assert report.remaining == 0
    assert recorder.calls == [("POST", "/posts", {"content": "current"})]
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_drain_replays_in_fifo_order(tmp_path):
    recorder = Recorder()
    queue = _queue(tmp_path, recorder)
    queue.enqueue("POST", "/posts", {"n": 1})
    queue.enqueue("PATCH", "/reports/status", {"n": 2})
    queue.enqueue("POST", "/shelters/1/messages", {"n": 3})

    await queue.drain()

    assert [call[2]["n"] for call in recorder.calls] == [1, 2, 3]
    assert recorder.calls[1][0] == "PATCH"


@pytest.mark.asyncio
async def test_failed_replays_stay_queued(tmp_path):
    recorder = Recorder(failing={"/reports/status"})
    queue = _queue(tmp_path, recorder)
    queue.enqueue("POST", "/posts", {"n": 1})
    queue.enqueue("PATCH", "/reports/status", {"n": 2})

    report = await queue.drain()

    assert (report.replayed, report.failed, report.remaining) == (1, 1, 1)
    remaining = queue.load()
    assert [op.request.url for op in remaining] == ["/reports/status"]
    assert remaining[0].attempts == 1
    assert remaining[0].state == OperationState.QUEUED

    recorder.failing.clear()
    again = await queue.drain()

    assert again.replayed == 1
    assert len(queue) == 0
    # The successful entry was never replayed twice
    assert [call[1] for call in recorder.calls] == ["/posts", "/reports/status", "/reports/status"]


@pytest.mark.asyncio
async def test_transport_error_keeps_entry(tmp_path):
    def refuse(request):
        raise httpx.ConnectError("offline", request=request)

    queue = _queue(tmp_path, refuse)
    queue.enqueue("POST", "/posts", {"n": 1})

    report = await queue.drain()

    assert report.failed == 1
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_empty_drain_publishes_nothing(tmp_path):
    received = []

    async def on_drained(data):
        received.append(data)

    event_bus.subscribe(EventType.QUEUE_DRAINED, on_drained)
    report = await _queue(tmp_path, Recorder()).drain()

    assert report.replayed == 0
    assert received == []


@pytest.mark.asyncio
async def test_full_drain_publishes_event(tmp_path):
    received = []

    async def on_drained(data):
        received.append(data)

    event_bus.subscribe(EventType.QUEUE_DRAINED, on_drained)
    queue = _queue(tmp_path, Recorder())
    queue.enqueue("POST", "/posts", {"n": 1})

    await queue.drain()

    assert received == [{"replayed": 1}]


def test_corrupt_file_reads_as_empty(tmp_path):
    queue = _queue(tmp_path, Recorder())
    queue.path.parent.mkdir(parents=True, exist_ok=True)
    queue.path.write_text("{not json", encoding="utf-8")

    assert len(queue) == 0
    assert queue.load() == []
