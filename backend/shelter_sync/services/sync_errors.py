"""Exception hierarchy for the sync subsystem.

Engines catch :class:`SyncError` at the attempt boundary and turn it into a
failed result plus a failed SyncLog row; nothing below that boundary needs to
know how the failure will be reported.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for failures of a single sync attempt."""


class SyncTransportError(SyncError):
    """No usable response: connection refused, DNS failure, timeout."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Transport error calling {url}: {reason}")


class SyncRemoteError(SyncError):
    """The peer answered with a non-2xx status.

    ``body`` keeps (a bounded prefix of) the peer's error body for the
    SyncLog so an operator can see *why* the remote rejected the batch.
    """

    MAX_BODY_CHARS = 2000

    def __init__(self, url: str, status_code: int, body: Optional[str] = None):
        self.url = url
        self.status_code = status_code
        self.body = (body or "")[: self.MAX_BODY_CHARS]
        detail = f": {self.body}" if self.body else ""
        super().__init__(f"Remote {url} responded {status_code}{detail}")


class MalformedResponseError(SyncError):
    """The peer answered 2xx but the body is not the expected JSON shape."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Malformed response from {url}: {reason}")


class SyncLogStateError(Exception):
    """Attempted an invalid SyncLog status transition."""

    def __init__(self, log_id: int, current: str, requested: str):
        self.log_id = log_id
        self.current = current
        self.requested = requested
        super().__init__(f"SyncLog {log_id}: cannot move from '{current}' to '{requested}'")


class ObjectNotFoundError(Exception):
    """Object store has no object under the requested key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Object not found for key {key}")


class InvalidObjectKeyError(ValueError):
    """Object key is empty or would escape the store root."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Invalid object key: {key!r}")


class EmptyObjectError(ValueError):
    """Refused to store a zero-byte object."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Request body is empty for key {key}")


__all__ = [
    "SyncError",
    "SyncTransportError",
    "SyncRemoteError",
    "MalformedResponseError",
    "SyncLogStateError",
    "ObjectNotFoundError",
    "InvalidObjectKeyError",
    "EmptyObjectError",
]
