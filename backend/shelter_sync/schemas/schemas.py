from datetime import datetime
from typing import Annotated
from typing import List
from typing import Optional

from pydantic import AfterValidator
from pydantic import BaseModel
from pydantic import Field
from pydantic.alias_generators import to_camel

from shelter_sync.models.enums import CommentStatus
from shelter_sync.models.enums import PostStatus
from shelter_sync.models.enums import SyncStatus
from shelter_sync.models.enums import SyncType
from shelter_sync.utils.time import to_naive_utc

# Timestamps travel as ISO-8601; whatever offset a peer sends, rows and
# cursors are compared as naive UTC.
UtcDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]


class CamelModel(BaseModel):
    """Envelope models use camelCase on the wire (``postsSynced``)."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# ---------------------------------------------------------------------------
# Record payloads – column names travel unchanged (snake_case)
# ---------------------------------------------------------------------------


class PostRecord(BaseModel):
    id: str
    author_name: str
    shelter_id: int
    content: Optional[str] = None
    latitude: float
    longitude: float
    posted_at: UtcDatetime
    occurred_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    is_free_chat: bool = False
    status: Optional[PostStatus] = None

    class Config:
        from_attributes = True


class CommentRecord(BaseModel):
    id: str
    post_id: str
    author_name: str
    content: str
    status: CommentStatus = CommentStatus.OPEN
    created_at: UtcDatetime
    updated_at: UtcDatetime

    class Config:
        from_attributes = True


class LocationTrackRecord(BaseModel):
    id: str
    post_id: str
    recorded_at: UtcDatetime
    latitude: float
    longitude: float
    created_at: UtcDatetime
    updated_at: UtcDatetime

    class Config:
        from_attributes = True


class MediaRecord(BaseModel):
    id: str
    post_id: str
    file_path: str
    media_type: str
    file_name: Optional[str] = None
    url: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Push / receive
# ---------------------------------------------------------------------------


class SyncBatch(CamelModel):
    """Rows moved by one push (``POST /api/sync/receive`` body)."""

    posts: List[PostRecord] = Field(default_factory=list)
    comments: List[CommentRecord] = Field(default_factory=list)
    location_tracks: List[LocationTrackRecord] = Field(default_factory=list)
    media: List[MediaRecord] = Field(default_factory=list)
    source_url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.posts or self.comments or self.location_tracks or self.media)


class SyncExecuteRequest(CamelModel):
    target_url: str
    shelter_id: Optional[int] = None


class SyncResult(CamelModel):
    """Outcome of one push attempt (``POST /api/sync/execute``)."""

    success: bool
    posts_synced: int = 0
    comments_synced: int = 0
    location_tracks_synced: int = 0
    media_synced: int = 0
    skipped: bool = False
    error: Optional[str] = None
    log_id: Optional[int] = None


class ShelterSyncResult(CamelModel):
    shelter_id: int
    success: bool
    posts_synced: int = 0
    comments_synced: int = 0
    location_tracks_synced: int = 0
    media_synced: int = 0
    error_message: Optional[str] = None


class ReceiveResult(CamelModel):
    """Acknowledgement returned by the receiving node."""

    success: bool
    results: List[ShelterSyncResult] = Field(default_factory=list)
    posts_synced: int = 0
    comments_synced: int = 0
    location_tracks_synced: int = 0
    media_synced: int = 0
    skipped_records: int = 0


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


class PullResponse(CamelModel):
    """Body of ``GET /api/sync/pull`` – everything changed since ``since``."""

    posts: List[PostRecord] = Field(default_factory=list)
    comments: List[CommentRecord] = Field(default_factory=list)
    location_tracks: List[LocationTrackRecord] = Field(default_factory=list)
    media: List[MediaRecord] = Field(default_factory=list)
    server_time: UtcDatetime
    since: Optional[UtcDatetime] = None

    @property
    def is_empty(self) -> bool:
        return not (self.posts or self.comments or self.location_tracks or self.media)


class PullResult(CamelModel):
    """Outcome of one pull attempt (``POST /api/sync/pull/execute``)."""

    success: bool
    posts_pulled: int = 0
    comments_pulled: int = 0
    location_tracks_pulled: int = 0
    media_pulled: int = 0
    media_synced: int = 0
    media_failed: int = 0
    cursor: Optional[datetime] = None
    skipped: bool = False
    error: Optional[str] = None
    log_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


class MediaSyncRequest(CamelModel):
    target_url: str


class MediaSyncError(CamelModel):
    media_id: Optional[str] = None
    file_path: str
    error: str


class MediaSyncResult(CamelModel):
    success: bool
    total: int = 0
    media_synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[MediaSyncError] = Field(default_factory=list)
    log_id: Optional[int] = None


class MediaReceiveResult(CamelModel):
    success: bool
    file_path: str
    stored_bytes: int
    content_type: str


# ---------------------------------------------------------------------------
# Status & audit
# ---------------------------------------------------------------------------


class SyncStatusOut(CamelModel):
    unsynced_posts: int
    unsynced_comments: int
    unsynced_location_tracks: int
    unsynced_media: int
    total_unsynced: int
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[SyncStatus] = None


class SyncLogOut(CamelModel):
    id: int
    shelter_id: Optional[int] = None
    shelter_name: Optional[str] = None
    sync_type: SyncType
    status: SyncStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    posts_synced: int = 0
    comments_synced: int = 0
    location_tracks_synced: int = 0
    media_synced: int = 0
    media_failed: int = 0
    error_message: Optional[str] = None
    target_url: Optional[str] = None


class SyncLogsPage(CamelModel):
    logs: List[SyncLogOut]
    total_count: int
    page: int
    limit: int
    total_pages: int
