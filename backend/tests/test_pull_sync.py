"""Pull sync: cursor handling, idempotent apply and media download."""

import asyncio
from datetime import datetime

import httpx
import pytest
from helpers.sync_helpers import CENTER_URL
from helpers.sync_helpers import add_rows
from helpers.sync_helpers import comment_record
from helpers.sync_helpers import media_record
from helpers.sync_helpers import mock_client_factory
from helpers.sync_helpers import post_record
from helpers.sync_helpers import track_record

from shelter_sync.crud import crud
from shelter_sync.database import db_session
from shelter_sync.models.enums import SyncStatus
from shelter_sync.models.enums import SyncType
from shelter_sync.models.models import Comment
from shelter_sync.models.models import LocationTrack
from shelter_sync.models.models import Media
from shelter_sync.models.models import Post
from shelter_sync.services.pull_sync import PullSyncService


def _cursor(factory, scope="all"):
    with db_session(factory) as db:
        return crud.get_pull_cursor(db, scope)


def _log(factory, log_id):
    with db_session(factory) as db:
        return crud.get_sync_log(db, log_id)


@pytest.fixture
def pull_service(edge_factory, edge_store, to_center):
    return PullSyncService(edge_factory, client_factory=to_center, store=edge_store)


@pytest.mark.asyncio
async def test_full_pull_applies_rows_media_and_cursor(
    pull_service, edge_factory, edge_store, center_factory, center_store
):
    media = media_record("m1", "p1")
    add_rows(
        center_factory,
        post_record("p1", 1),
        comment_record("c1", "p1"),
        track_record("t1", "p1"),
        media,
        is_synced=True,
    )
    center_store.put(media.file_path, b"\xff\xd8jpeg-bytes", "image/jpeg")

    result = await pull_service.run_pull_sync(CENTER_URL)

    assert result.success is True
    assert result.posts_pulled == 1
    assert result.comments_pulled == 1
    assert result.location_tracks_pulled == 1
    assert result.media_pulled == 1
    assert result.media_synced == 1
    assert result.media_failed == 0

    with db_session(edge_factory) as db:
        assert [p.id for p in db.query(Post).all()] == ["p1"]
        assert db.query(Comment).count() == 1
        assert db.query(LocationTrack).count() == 1
        assert db.query(Media).one().is_synced is True

    stored = edge_store.get(media.file_path)
    assert stored.data == b"\xff\xd8jpeg-bytes"
    assert stored.content_type == "image/jpeg"

    assert result.cursor is not None
    assert _cursor(edge_factory) == result.cursor

    log_row = _log(edge_factory, result.log_id)
    assert log_row.sync_type == SyncType.PULL
    assert log_row.status == SyncStatus.COMPLETED
    assert log_row.posts_synced == 1
    assert log_row.media_synced == 1


@pytest.mark.asyncio
async def test_repeated_pull_applies_nothing_and_keeps_cursor(pull_service, edge_factory, center_factory):
    add_rows(center_factory, post_record("p1", 1), is_synced=True)

    first = await pull_service.run_pull_sync(CENTER_URL)
    second = await pull_service.run_pull_sync(CENTER_URL)

    assert first.posts_pulled == 1
    assert second.success is True
    assert second.posts_pulled == 0
    assert second.cursor == first.cursor
    assert _cursor(edge_factory) == first.cursor


@pytest.mark.asyncio
async def test_pull_since_cursor_with_no_remote_changes(pull_service, edge_factory, center_factory, center_client):
    cutoff = datetime(2025, 1, 1)
    add_rows(center_factory, post_record("old", 1, updated_at=datetime(2024, 12, 30)), is_synced=True)
    with db_session(center_factory) as db:
        db.query(Post).update({Post.ingested_at: datetime(2024, 12, 31)})
    with db_session(edge_factory) as db:
        crud.set_pull_cursor(db, "shelter:1", cutoff)

    body = center_client.get("/api/sync/pull", params={"since": "2025-01-01T00:00:00Z", "shelterId": 1}).json()
    assert body["posts"] == []
    assert body["comments"] == []
    assert body["locationTracks"] == []
    assert body["media"] == []

    result = await pull_service.run_pull_sync(CENTER_URL, shelter_id=1)

    assert result.success is True
    assert result.posts_pulled == 0
    assert result.cursor == cutoff
    assert _cursor(edge_factory, "shelter:1") == cutoff


@pytest.mark.asyncio
async def test_pull_is_scoped_to_shelter(pull_service, edge_factory, center_factory):
    add_rows(center_factory, post_record("p1", 1), post_record("p2", 2), is_synced=True)

    result = await pull_service.run_pull_sync(CENTER_URL, shelter_id=2)

    assert result.posts_pulled == 1
    with db_session(edge_factory) as db:
        assert [p.id for p in db.query(Post).all()] == ["p2"]
    assert _cursor(edge_factory, "shelter:2") is not None
    assert _cursor(edge_factory, "all") is None


@pytest.mark.asyncio
async def test_pull_skips_rows_already_present(pull_service, edge_factory, center_factory):
    add_rows(edge_factory, post_record("p1", 1, content="local copy"))
    add_rows(center_factory, post_record("p1", 1, content="center copy"), post_record("p2", 1), is_synced=True)

    result = await pull_service.run_pull_sync(CENTER_URL)

    assert result.posts_pulled == 1
    with db_session(edge_factory) as db:
        assert db.query(Post).filter(Post.id == "p1").one().content == "local copy"


@pytest.mark.asyncio
async def test_failed_apply_leaves_cursor_unchanged(pull_service, edge_factory, center_factory, monkeypatch):
    add_rows(center_factory, post_record("p1", 1), comment_record("c1", "p1"), is_synced=True)

    def broken_insert(db, record):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(crud, "insert_comment_if_absent", broken_insert)

    result = await pull_service.run_pull_sync(CENTER_URL)

    assert result.success is False
    assert "database is locked" in result.error
    assert _cursor(edge_factory) is None
    with db_session(edge_factory) as db:
        # The posts of the failed apply were rolled back with it
        assert db.query(Post).count() == 0
    assert _log(edge_factory, result.log_id).status == SyncStatus.FAILED


@pytest.mark.asyncio
async def test_pull_records_missing_media_as_failed(pull_service, edge_factory, center_factory):
    add_rows(center_factory, post_record("p1", 1), media_record("m1", "p1"), is_synced=True)

    result = await pull_service.run_pull_sync(CENTER_URL)

    assert result.success is True
    assert result.media_pulled == 1
    assert result.media_failed == 1

    log_row = _log(edge_factory, result.log_id)
    assert log_row.status == SyncStatus.COMPLETED
    assert log_row.media_failed == 1
    assert "failed to download" in log_row.error_message
    # The window is asked for again until its media is on disk
    assert result.cursor is None
    assert _cursor(edge_factory) is None


@pytest.mark.asyncio
async def test_failed_media_download_is_retried_on_next_pull(
    pull_service, edge_factory, edge_store, center_factory, center_store
):
    media = media_record("m1", "p1")
    add_rows(center_factory, post_record("p1", 1), media, is_synced=True)

    first = await pull_service.run_pull_sync(CENTER_URL)
    assert first.media_failed == 1
    assert not edge_store.exists(media.file_path)

    center_store.put(media.file_path, b"late upload", "image/jpeg")
    second = await pull_service.run_pull_sync(CENTER_URL)

    assert second.success is True
    assert second.media_pulled == 0
    assert second.media_synced == 1
    assert second.media_failed == 0
    assert edge_store.get(media.file_path).data == b"late upload"
    assert second.cursor is not None
    assert _cursor(edge_factory) == second.cursor

    third = await pull_service.run_pull_sync(CENTER_URL)
    assert third.media_synced == 0
    assert third.cursor == second.cursor


@pytest.mark.asyncio
async def test_pull_sends_cursor_and_scope(edge_factory, edge_store):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(dict(request.url.params))
        return httpx.Response(200, json={"posts": [], "serverTime": "2025-01-03T00:00:00Z"})

    with db_session(edge_factory) as db:
        crud.set_pull_cursor(db, "shelter:1", datetime(2025, 1, 2, 12, 30))

    service = PullSyncService(edge_factory, client_factory=mock_client_factory(handler), store=edge_store)
    result = await service.run_pull_sync(CENTER_URL, shelter_id=1)

    assert result.success is True
    assert seen == [{"since": "2025-01-02T12:30:00", "shelterId": "1"}]
    # Empty response: the cursor does not move
    assert _cursor(edge_factory, "shelter:1") == datetime(2025, 1, 2, 12, 30)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"posts": []}),
    ],
    ids=["remote-rejection", "not-json", "missing-server-time"],
)
async def test_failed_pull_is_logged(edge_factory, edge_store, response):
    factory = mock_client_factory(lambda request: response)
    service = PullSyncService(edge_factory, client_factory=factory, store=edge_store)

    result = await service.run_pull_sync(CENTER_URL)

    assert result.success is False
    assert result.error
    assert _cursor(edge_factory) is None
    assert _log(edge_factory, result.log_id).status == SyncStatus.FAILED


@pytest.mark.asyncio
async def test_concurrent_pull_is_skipped(edge_factory, edge_store):
    release = asyncio.Event()
    calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        await release.wait()
        return httpx.Response(200, json={"serverTime": "2025-01-03T00:00:00Z"})

    service = PullSyncService(edge_factory, client_factory=mock_client_factory(handler), store=edge_store)

    first = asyncio.create_task(service.run_pull_sync(CENTER_URL))
    while not calls:
        await asyncio.sleep(0.01)

    second = await service.run_pull_sync(CENTER_URL)
    release.set()
    await first

    assert second.skipped is True
    assert len(calls) == 1
