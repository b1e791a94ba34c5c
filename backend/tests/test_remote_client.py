import httpx
import pytest
from helpers.sync_helpers import mock_client_factory

from shelter_sync.services.remote_client import RemoteNodeClient
from shelter_sync.services.sync_errors import MalformedResponseError
from shelter_sync.services.sync_errors import SyncRemoteError
from shelter_sync.services.sync_errors import SyncTransportError

BASE = "http://center.test/"


def _client(handler) -> RemoteNodeClient:
    return RemoteNodeClient(BASE, timeout=2, client_factory=mock_client_factory(handler))


@pytest.mark.asyncio
async def test_get_json_joins_base_url():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"ok": True})

    async with _client(handler) as client:
        assert await client.get_json("/api/sync/pull", params={"shelterId": 1}) == {"ok": True}

    assert seen == ["http://center.test/api/sync/pull?shelterId=1"]


@pytest.mark.asyncio
async def test_timeout_becomes_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(handler) as client:
        with pytest.raises(SyncTransportError, match="timed out"):
            await client.post_json("/api/sync/receive", {})


@pytest.mark.asyncio
async def test_non_2xx_keeps_body():
    async with _client(lambda request: httpx.Response(409, text="duplicate batch")) as client:
        with pytest.raises(SyncRemoteError) as excinfo:
            await client.post_json("/api/sync/receive", {})

    assert excinfo.value.status_code == 409
    assert excinfo.value.body == "duplicate batch"


@pytest.mark.asyncio
async def test_json_array_is_malformed():
    async with _client(lambda request: httpx.Response(200, json=[1, 2])) as client:
        with pytest.raises(MalformedResponseError):
            await client.get_json("/api/sync/pull")


@pytest.mark.asyncio
@pytest.mark.parametrize("status, expected", [(200, True), (404, False)])
async def test_exists_probe(status, expected):
    async with _client(lambda request: httpx.Response(status)) as client:
        assert await client.exists("/api/sync/pull/media", params={"filePath": "a.jpg"}) is expected


@pytest.mark.asyncio
async def test_exists_raises_on_server_error():
    async with _client(lambda request: httpx.Response(500)) as client:
        with pytest.raises(SyncRemoteError):
            await client.exists("/api/sync/pull/media")


@pytest.mark.asyncio
async def test_get_bytes_returns_content_type():
    def handler(request):
        return httpx.Response(200, content=b"abc", headers={"content-type": "image/webp"})

    async with _client(handler) as client:
        assert await client.get_bytes("/api/sync/pull/media") == (b"abc", "image/webp")


@pytest.mark.asyncio
async def test_use_outside_context_is_an_error():
    client = _client(lambda request: httpx.Response(200))
    with pytest.raises(RuntimeError):
        await client.request("GET", "/")
