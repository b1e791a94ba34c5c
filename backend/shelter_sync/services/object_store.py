"""Filesystem-backed object store for media payloads.

Keys are the ``Media.file_path`` values (``posts/<id>/photo.jpg``).  Each
object is a plain file under ``MEDIA_ROOT``; its content type is kept in a
JSON sidecar under ``MEDIA_ROOT/.meta`` so a downloaded object can be
re-served with the same type it was uploaded with.
"""

from __future__ import annotations

import json
import mimetypes
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from pathlib import PurePosixPath
from typing import Optional

from shelter_sync.config import get_settings
from shelter_sync.services.sync_errors import EmptyObjectError
from shelter_sync.services.sync_errors import InvalidObjectKeyError
from shelter_sync.services.sync_errors import ObjectNotFoundError

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_META_DIR = ".meta"


@dataclass
class StoredObject:
    key: str
    data: bytes
    content_type: str


def normalize_key(key: str) -> str:
    """Return *key* as a clean relative POSIX path or raise ``InvalidObjectKeyError``."""

    if key is None:
        raise InvalidObjectKeyError("")
    cleaned = key.strip().replace("\\", "/").lstrip("/")
    parts = [p for p in PurePosixPath(cleaned).parts if p not in ("", ".")]
    if not parts or ".." in parts or parts[0] == _META_DIR:
        raise InvalidObjectKeyError(key)
    return "/".join(parts)


def guess_content_type(key: str) -> str:
    guessed, _ = mimetypes.guess_type(key)
    return guessed or DEFAULT_CONTENT_TYPE


class LocalObjectStore:
    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or get_settings().media_root).resolve()

    def _path(self, key: str) -> Path:
        return self.root / normalize_key(key)

    def _meta_path(self, key: str) -> Path:
        return self.root / _META_DIR / f"{normalize_key(key)}.json"

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def get(self, key: str) -> StoredObject:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)

        content_type = guess_content_type(key)
        meta_path = self._meta_path(key)
        if meta_path.is_file():
            content_type = json.loads(meta_path.read_text(encoding="utf-8")).get("content_type") or content_type

        return StoredObject(key=normalize_key(key), data=path.read_bytes(), content_type=content_type)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> int:
        """Write *data* under *key* (replacing any previous object). Returns bytes written."""

        if not data:
            raise EmptyObjectError(key)

        path = self._path(key)
        _atomic_write(path, data)
        _atomic_write(
            self._meta_path(key),
            json.dumps({"content_type": content_type or guess_content_type(key)}).encode("utf-8"),
        )
        return len(data)


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


_store: Optional[LocalObjectStore] = None


def get_object_store() -> LocalObjectStore:
    """Process-wide store rooted at ``MEDIA_ROOT`` (FastAPI dependency)."""

    global _store
    if _store is None:
        _store = LocalObjectStore()
    return _store


__all__ = [
    "DEFAULT_CONTENT_TYPE",
    "LocalObjectStore",
    "StoredObject",
    "get_object_store",
    "guess_content_type",
    "normalize_key",
]
