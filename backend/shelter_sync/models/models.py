# SQLAlchemy core imports
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.orm import relationship

# Local helpers / enums
from shelter_sync.database import Base
from shelter_sync.models.enums import CommentStatus
from shelter_sync.models.enums import PostStatus
from shelter_sync.models.enums import SyncStatus
from shelter_sync.models.enums import SyncType
from shelter_sync.utils.time import utc_now_naive


def _enum_values(enum_cls):
    # Persist the enum *value* ("completed", "通常") rather than the member name.
    return [member.value for member in enum_cls]


# ---------------------------------------------------------------------------
# Shelters – owners of posts, labels for sync logs
# ---------------------------------------------------------------------------


class Shelter(Base):
    __tablename__ = "shelters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)

    posts = relationship("Post", back_populates="shelter")


# ---------------------------------------------------------------------------
# Synchronised record stores
# ---------------------------------------------------------------------------
#
# Every synchronised row shares three bookkeeping columns:
#
# * ``is_synced``   – node-local; True once the row is known to exist at the
#                     center (set on push acknowledgement, or on arrival).
# * ``deleted_at``  – soft delete; deleted rows are never pushed or exported.
# * ``ingested_at`` – node-local; when *this* node first stored the row.  Pull
#                     export compares the cursor against it as well as
#                     ``updated_at`` so rows that reached the center late (an
#                     edge that was offline for days) are still delivered.
#
# ``id`` is assigned once by the originating node and never regenerated.


class Post(Base):
    __tablename__ = "posts"

    id = Column(String, primary_key=True)
    author_name = Column(String, nullable=False)
    shelter_id = Column(Integer, ForeignKey("shelters.id", ondelete="RESTRICT"), nullable=False, index=True)
    content = Column(Text, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    posted_at = Column(DateTime, nullable=False)
    occurred_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    is_free_chat = Column(Boolean, nullable=False, default=False)
    status = Column(
        SAEnum(PostStatus, native_enum=False, name="post_status_enum", values_callable=_enum_values),
        nullable=True,
    )
    deleted_at = Column(DateTime, nullable=True)
    is_synced = Column(Boolean, nullable=False, default=False)
    ingested_at = Column(DateTime, nullable=False, default=utc_now_naive)

    shelter = relationship("Shelter", back_populates="posts")
    comments = relationship("Comment", back_populates="post", cascade="all, delete-orphan")
    location_tracks = relationship(
        "LocationTrack",
        back_populates="post",
        cascade="all, delete-orphan",
        order_by="LocationTrack.recorded_at",
    )
    media = relationship("Media", back_populates="post", cascade="all, delete-orphan")


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True)
    post_id = Column(String, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    author_name = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    status = Column(
        SAEnum(CommentStatus, native_enum=False, name="comment_status_enum", values_callable=_enum_values),
        nullable=False,
        default=CommentStatus.OPEN.value,
    )
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    deleted_at = Column(DateTime, nullable=True)
    is_synced = Column(Boolean, nullable=False, default=False)
    ingested_at = Column(DateTime, nullable=False, default=utc_now_naive)

    post = relationship("Post", back_populates="comments")


class LocationTrack(Base):
    """One point of a post's movement trail; order by ``recorded_at``."""

    __tablename__ = "post_location_tracks"

    id = Column(String, primary_key=True)
    post_id = Column(String, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    recorded_at = Column(DateTime, nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    deleted_at = Column(DateTime, nullable=True)
    is_synced = Column(Boolean, nullable=False, default=False)
    ingested_at = Column(DateTime, nullable=False, default=utc_now_naive)

    post = relationship("Post", back_populates="location_tracks")


class Media(Base):
    """Metadata for one binary object; the payload lives in the object store
    under ``file_path``."""

    __tablename__ = "media"

    id = Column(String, primary_key=True)
    post_id = Column(String, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path = Column(String, nullable=False)
    media_type = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    url = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)
    deleted_at = Column(DateTime, nullable=True)
    is_synced = Column(Boolean, nullable=False, default=False)
    ingested_at = Column(DateTime, nullable=False, default=utc_now_naive)

    post = relationship("Post", back_populates="media")


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


class SyncLog(Base):
    """Audit row for one sync attempt.

    Created ``in_progress`` and mutated exactly once to ``completed`` or
    ``failed``; rows are never deleted.  ``shelter_id`` deliberately has no
    foreign key: a receiving node must be able to audit a batch for a shelter
    it has never heard of.
    """

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shelter_id = Column(Integer, nullable=True, index=True)
    sync_type = Column(
        SAEnum(SyncType, native_enum=False, name="sync_type_enum", values_callable=_enum_values),
        nullable=False,
    )
    status = Column(
        SAEnum(SyncStatus, native_enum=False, name="sync_status_enum", values_callable=_enum_values),
        nullable=False,
        default=SyncStatus.PENDING.value,
        index=True,
    )
    started_at = Column(DateTime, nullable=False, default=utc_now_naive, index=True)
    completed_at = Column(DateTime, nullable=True)
    posts_synced = Column(Integer, nullable=False, default=0)
    comments_synced = Column(Integer, nullable=False, default=0)
    location_tracks_synced = Column(Integer, nullable=False, default=0)
    media_synced = Column(Integer, nullable=False, default=0)
    media_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    target_url = Column(String, nullable=True)


class PullCursor(Base):
    """Watermark of the last successfully applied pull, one per scope."""

    __tablename__ = "pull_cursors"

    scope_key = Column(String, primary_key=True)
    last_pulled_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive, onupdate=utc_now_naive)


Index("idx_posts_sync_state", Post.is_synced, Post.deleted_at)
Index("idx_posts_updated_at", Post.updated_at)
