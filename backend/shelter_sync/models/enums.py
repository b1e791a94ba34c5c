"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so that:

* JSON serialisation remains unchanged (values render as plain strings).
* Equality checks against raw literals (``status == "completed"``) keep
  working, which matters for rows written by older nodes.

Post severity and comment workflow values are the literal strings stored by
the shelter front-end, so they are kept verbatim.
"""

from __future__ import annotations

from enum import Enum


class SyncType(str, Enum):
    PUSH = "push"
    PULL = "pull"
    RECEIVE = "receive"
    MEDIA = "media"


class SyncStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# pending → in_progress → {completed | failed}; terminal states are final.
SYNC_STATUS_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.IN_PROGRESS}),
    SyncStatus.IN_PROGRESS: frozenset({SyncStatus.COMPLETED, SyncStatus.FAILED}),
    SyncStatus.COMPLETED: frozenset(),
    SyncStatus.FAILED: frozenset(),
}


class PostStatus(str, Enum):
    NORMAL = "通常"
    IMPORTANT = "重要"
    URGENT = "緊急"


class CommentStatus(str, Enum):
    OPEN = "未対応"
    IN_PROGRESS = "対応中"
    RESOLVED = "解決済み"


__all__ = [
    "SyncType",
    "SyncStatus",
    "SYNC_STATUS_TRANSITIONS",
    "PostStatus",
    "CommentStatus",
]
