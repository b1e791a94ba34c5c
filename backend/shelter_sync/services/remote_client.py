"""HTTP client for talking to a peer node.

Wraps :class:`httpx.AsyncClient` so every failure surfaces as one of the
:mod:`shelter_sync.services.sync_errors` types.  Engines only ever catch
``SyncError``; they never see raw ``httpx`` exceptions.

Tests swap the transport through ``client_factory``::

    factory = lambda base_url, timeout: httpx.AsyncClient(
        base_url=base_url, timeout=timeout, transport=httpx.MockTransport(handler)
    )
"""

from __future__ import annotations

import logging
from typing import Any
from typing import Callable
from typing import Dict
from typing import Optional
from typing import Tuple

import httpx

from shelter_sync.config import get_settings
from shelter_sync.services.sync_errors import MalformedResponseError
from shelter_sync.services.sync_errors import SyncRemoteError
from shelter_sync.services.sync_errors import SyncTransportError

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, float], httpx.AsyncClient]


def default_client_factory(base_url: str, timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, timeout=timeout)


class RemoteNodeClient:
    """Async context manager bound to one peer base URL."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Optional[float] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_settings().http_timeout_seconds
        self._factory = client_factory or default_client_factory
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "RemoteNodeClient":
        self._client = self._factory(self.base_url, self.timeout)
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send one request; raise ``SyncTransportError`` when no response arrives."""

        if self._client is None:
            raise RuntimeError("RemoteNodeClient used outside 'async with'")

        url = self._url(path)
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise SyncTransportError(url, f"timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise SyncTransportError(url, str(exc) or type(exc).__name__) from exc

    async def _checked(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self.request(method, path, **kwargs)
        if not response.is_success:
            raise SyncRemoteError(self._url(path), response.status_code, response.text)
        return response

    def _json(self, path: str, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError(self._url(path), f"body is not JSON ({exc})") from exc
        if not isinstance(body, dict):
            raise MalformedResponseError(self._url(path), f"expected a JSON object, got {type(body).__name__}")
        return body

    # ------------------------------------------------------------------
    # JSON helpers
    # ------------------------------------------------------------------

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._checked("GET", path, params=params)
        return self._json(path, response)

    async def post_json(self, path: str, payload: Any) -> Dict[str, Any]:
        response = await self._checked("POST", path, json=payload)
        return self._json(path, response)

    # ------------------------------------------------------------------
    # Binary objects
    # ------------------------------------------------------------------

    async def get_bytes(self, path: str, params: Optional[Dict[str, Any]] = None) -> Tuple[bytes, str]:
        response = await self._checked("GET", path, params=params)
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type

    async def exists(self, path: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """HEAD probe: 2xx means present, 404 absent, anything else raises."""

        response = await self.request("HEAD", path, params=params)
        if response.status_code == 404:
            return False
        if not response.is_success:
            raise SyncRemoteError(self._url(path), response.status_code, response.text)
        return True

    async def upload(
        self,
        path: str,
        *,
        files: Dict[str, Any],
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        response = await self._checked("POST", path, files=files, data=data)
        return self._json(path, response)


__all__ = [
    "ClientFactory",
    "RemoteNodeClient",
    "default_client_factory",
]
