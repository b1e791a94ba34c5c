"""HTTP surface of /api/sync on an edge node paired with an in-process center."""

from fastapi.testclient import TestClient
from helpers.sync_helpers import CENTER_URL
from helpers.sync_helpers import add_rows
from helpers.sync_helpers import comment_record
from helpers.sync_helpers import media_record
from helpers.sync_helpers import post_record

from shelter_sync.crud import crud
from shelter_sync.database import db_session
from shelter_sync.models.enums import SyncType
from shelter_sync.schemas.schemas import SyncBatch

SYNC = "/api/sync"


def test_status_reports_unsynced_counts(client: TestClient, edge_factory):
    add_rows(edge_factory, post_record("p1", 1), post_record("p2", 2), comment_record("c1", "p1"))

    body = client.get(f"{SYNC}/status").json()

    assert body["unsyncedPosts"] == 2
    assert body["unsyncedComments"] == 1
    assert body["totalUnsynced"] == 3
    assert body["lastSyncAt"] is None


def test_execute_pushes_to_center(client: TestClient, edge_factory, center_client: TestClient):
    add_rows(edge_factory, post_record("p1", 1), post_record("p2", 2), comment_record("c1", "p1"))

    body = client.post(f"{SYNC}/execute", json={"targetUrl": CENTER_URL}).json()

    assert body["success"] is True
    assert body["postsSynced"] == 2
    assert body["commentsSynced"] == 1
    assert body["locationTracksSynced"] == 0

    assert client.get(f"{SYNC}/status").json()["totalUnsynced"] == 0

    center_logs = center_client.get(f"{SYNC}/logs").json()
    assert center_logs["totalCount"] == 2
    assert {log["syncType"] for log in center_logs["logs"]} == {"receive"}
    assert {log["status"] for log in center_logs["logs"]} == {"completed"}


def test_execute_requires_target_url(client: TestClient):
    assert client.post(f"{SYNC}/execute", json={"targetUrl": "  "}).status_code == 400
    assert client.post(f"{SYNC}/execute", json={}).status_code == 422
    assert client.post(f"{SYNC}/pull/execute", json={"targetUrl": ""}).status_code == 400
    assert client.post(f"{SYNC}/media", json={"targetUrl": ""}).status_code == 400


def test_receive_endpoint_is_idempotent(center_client: TestClient):
    batch = SyncBatch(posts=[post_record("p1", 1)], comments=[comment_record("c1", "p1")])
    payload = batch.model_dump(mode="json", by_alias=True)

    first = center_client.post(f"{SYNC}/receive", json=payload).json()
    second = center_client.post(f"{SYNC}/receive", json=payload).json()

    assert first["success"] is True
    assert first["postsSynced"] == 1
    assert first["results"][0]["shelterId"] == 1
    assert second["postsSynced"] == 0
    assert second["commentsSynced"] == 0


def test_pull_export_reports_server_time(center_client: TestClient, center_factory):
    add_rows(center_factory, post_record("p1", 1), post_record("p2", 2), comment_record("c2", "p2"), is_synced=True)

    body = center_client.get(f"{SYNC}/pull", params={"shelterId": 2}).json()

    assert [p["id"] for p in body["posts"]] == ["p2"]
    assert [c["id"] for c in body["comments"]] == ["c2"]
    assert body["serverTime"]
    assert body["since"] is None


def test_pull_execute_applies_center_rows(client: TestClient, edge_factory, center_factory):
    add_rows(center_factory, post_record("p1", 1), is_synced=True)

    body = client.post(f"{SYNC}/pull/execute", json={"targetUrl": CENTER_URL, "shelterId": 1}).json()

    assert body["success"] is True
    assert body["postsPulled"] == 1
    assert body["cursor"] is not None
    with db_session(edge_factory) as db:
        assert crud.get_pull_cursor(db, "shelter:1") is not None


def test_logs_pagination_and_filter(client: TestClient, edge_factory):
    with db_session(edge_factory) as db:
        for _ in range(3):
            crud.create_sync_log(db, sync_type=SyncType.PUSH, shelter_id=1)
        crud.create_sync_log(db, sync_type=SyncType.PULL, shelter_id=2)

    body = client.get(f"{SYNC}/logs", params={"shelterId": 1, "page": 2, "limit": 2}).json()

    assert body["totalCount"] == 3
    assert body["totalPages"] == 2
    assert body["page"] == 2
    assert len(body["logs"]) == 1
    assert body["logs"][0]["shelterName"] == "避難所1"
    assert body["logs"][0]["status"] == "in_progress"

    assert client.get(f"{SYNC}/logs", params={"limit": 101}).status_code == 422
    assert client.get(f"{SYNC}/logs", params={"page": 0}).status_code == 422


def test_media_object_get_and_head(client: TestClient, edge_store):
    edge_store.put("posts/p1/photo.jpg", b"\xff\xd8data", "image/jpeg")

    got = client.get(f"{SYNC}/pull/media", params={"filePath": "posts/p1/photo.jpg"})
    assert got.status_code == 200
    assert got.content == b"\xff\xd8data"
    assert got.headers["content-type"] == "image/jpeg"

    head = client.head(f"{SYNC}/pull/media", params={"filePath": "posts/p1/photo.jpg"})
    assert head.status_code == 200
    assert head.content == b""

    missing = client.head(f"{SYNC}/pull/media", params={"filePath": "posts/p1/other.jpg"})
    assert missing.status_code == 404

    escape = client.get(f"{SYNC}/pull/media", params={"filePath": "../secrets.txt"})
    assert escape.status_code == 400


def test_media_receive_stores_upload(center_client: TestClient, center_store):
    response = center_client.post(
        f"{SYNC}/media/receive",
        files={"file": ("photo.png", b"png-bytes", "image/png")},
        data={"filePath": "posts/p9/photo.png", "contentType": "image/png"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body == {
        "success": True,
        "filePath": "posts/p9/photo.png",
        "storedBytes": 9,
        "contentType": "image/png",
    }
    assert center_store.get("posts/p9/photo.png").data == b"png-bytes"


def test_media_receive_rejects_bad_input(center_client: TestClient):
    empty = center_client.post(
        f"{SYNC}/media/receive",
        files={"file": ("photo.png", b"", "image/png")},
        data={"filePath": "posts/p9/photo.png"},
    )
    assert empty.status_code == 400

    escape = center_client.post(
        f"{SYNC}/media/receive",
        files={"file": ("x", b"data", "application/octet-stream")},
        data={"filePath": "../../etc/passwd"},
    )
    assert escape.status_code == 400


def test_media_sync_endpoint(client: TestClient, edge_factory, edge_store, center_store):
    add_rows(edge_factory, post_record("p1", 1), media_record("m1", "p1"))
    edge_store.put("posts/p1/m1.jpg", b"jpeg", "image/jpeg")

    body = client.post(f"{SYNC}/media", json={"targetUrl": CENTER_URL}).json()

    assert body["success"] is True
    assert body["mediaSynced"] == 1
    assert center_store.get("posts/p1/m1.jpg").content_type == "image/jpeg"
