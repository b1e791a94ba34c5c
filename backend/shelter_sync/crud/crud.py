"""Data access for the sync subsystem.

Plain functions taking an explicit ``Session`` – callers own the unit of
work (``with db_session(factory) as db: ...``) so a service decides what is
committed together and what is isolated.
"""

# Keep stdlib ``datetime`` for type annotations; runtime *now()* comes from
# ``utc_now_naive``.
import logging
import math
from datetime import datetime
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence

from sqlalchemy import func
from sqlalchemy import or_
from sqlalchemy import true
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from shelter_sync.models.enums import SYNC_STATUS_TRANSITIONS
from shelter_sync.models.enums import SyncStatus
from shelter_sync.models.enums import SyncType
from shelter_sync.models.models import Comment
from shelter_sync.models.models import LocationTrack
from shelter_sync.models.models import Media
from shelter_sync.models.models import Post
from shelter_sync.models.models import PullCursor
from shelter_sync.models.models import Shelter
from shelter_sync.models.models import SyncLog
from shelter_sync.schemas.schemas import CommentRecord
from shelter_sync.schemas.schemas import LocationTrackRecord
from shelter_sync.schemas.schemas import MediaRecord
from shelter_sync.schemas.schemas import PostRecord
from shelter_sync.services.sync_errors import SyncLogStateError
from shelter_sync.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

# SQLite caps bound parameters per statement; keep IN (...) lists well below.
_IN_CHUNK = 500

SYNCED_MODELS = (Post, Comment, LocationTrack, Media)


def _chunks(ids: Sequence[str]) -> Iterable[Sequence[str]]:
    for start in range(0, len(ids), _IN_CHUNK):
        yield ids[start : start + _IN_CHUNK]


# ---------------------------------------------------------------------------
# Unsynced reads (push side)
# ---------------------------------------------------------------------------


def fetch_unsynced_posts(db: Session, shelter_id: Optional[int] = None) -> List[Post]:
    query = db.query(Post).filter(Post.is_synced.is_(False), Post.deleted_at.is_(None))
    if shelter_id is not None:
        query = query.filter(Post.shelter_id == shelter_id)
    return query.order_by(Post.created_at.asc()).all()


def _unsynced_children(db: Session, model, shelter_id: Optional[int]):
    query = db.query(model).filter(model.is_synced.is_(False), model.deleted_at.is_(None))
    if shelter_id is not None:
        query = query.join(Post, Post.id == model.post_id).filter(Post.shelter_id == shelter_id)
    return query.order_by(model.created_at.asc()).all()


def fetch_unsynced_comments(db: Session, shelter_id: Optional[int] = None) -> List[Comment]:
    return _unsynced_children(db, Comment, shelter_id)


def fetch_unsynced_location_tracks(db: Session, shelter_id: Optional[int] = None) -> List[LocationTrack]:
    return _unsynced_children(db, LocationTrack, shelter_id)


def fetch_media_for_push(
    db: Session,
    post_ids: Sequence[str],
    shelter_id: Optional[int] = None,
) -> List[Media]:
    """Media riding with *post_ids* plus any media row marked unsynced itself."""

    rows: Dict[str, Media] = {}

    for chunk in _chunks(list(post_ids)):
        for media in (
            db.query(Media)
            .filter(Media.post_id.in_(chunk), Media.deleted_at.is_(None))
            .order_by(Media.created_at.asc())
            .all()
        ):
            rows[media.id] = media

    for media in _unsynced_children(db, Media, shelter_id):
        rows.setdefault(media.id, media)

    return list(rows.values())


def mark_as_synced(db: Session, model, ids: Sequence[str]) -> int:
    """Set ``is_synced`` on *ids*; re-applying is harmless. Returns rows touched."""

    if model not in SYNCED_MODELS:
        raise ValueError(f"{model!r} does not carry a synced flag")

    touched = 0
    for chunk in _chunks(list(ids)):
        touched += (
            db.query(model)
            .filter(model.id.in_(chunk))
            .update({model.is_synced: True}, synchronize_session=False)
        )
    return touched


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def count_unsynced(db: Session, model) -> int:
    return (
        db.query(func.count(model.id)).filter(model.is_synced.is_(False), model.deleted_at.is_(None)).scalar() or 0
    )


def get_sync_stats(db: Session) -> Dict[str, Any]:
    posts = count_unsynced(db, Post)
    comments = count_unsynced(db, Comment)
    tracks = count_unsynced(db, LocationTrack)
    media = count_unsynced(db, Media)

    last = (
        db.query(SyncLog)
        .filter(SyncLog.status == SyncStatus.COMPLETED)
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        .first()
    )

    return {
        "unsynced_posts": posts,
        "unsynced_comments": comments,
        "unsynced_location_tracks": tracks,
        "unsynced_media": media,
        "total_unsynced": posts + comments + tracks + media,
        "last_sync_at": last.started_at if last else None,
        "last_sync_status": last.status if last else None,
    }


# ---------------------------------------------------------------------------
# SyncLog lifecycle
# ---------------------------------------------------------------------------


def create_sync_log(
    db: Session,
    *,
    sync_type: SyncType,
    target_url: Optional[str] = None,
    shelter_id: Optional[int] = None,
) -> SyncLog:
    """Insert a log row already ``in_progress`` (the attempt has started)."""

    log_row = SyncLog(
        sync_type=sync_type,
        status=SyncStatus.PENDING,
        shelter_id=shelter_id,
        target_url=target_url,
        started_at=utc_now_naive(),
    )
    _transition(log_row, SyncStatus.IN_PROGRESS)
    db.add(log_row)
    db.flush()
    return log_row


def get_sync_log(db: Session, log_id: int) -> Optional[SyncLog]:
    return db.query(SyncLog).filter(SyncLog.id == log_id).first()


def _transition(log_row: SyncLog, new_status: SyncStatus) -> None:
    current = SyncStatus(log_row.status) if log_row.status is not None else SyncStatus.PENDING
    if new_status not in SYNC_STATUS_TRANSITIONS[current]:
        raise SyncLogStateError(log_row.id, current.value, new_status.value)
    log_row.status = new_status


def _load_for_update(db: Session, log_id: int) -> SyncLog:
    log_row = get_sync_log(db, log_id)
    if log_row is None:
        raise LookupError(f"SyncLog {log_id} not found")
    return log_row


def complete_sync_log(
    db: Session,
    log_id: int,
    *,
    posts_synced: int = 0,
    comments_synced: int = 0,
    location_tracks_synced: int = 0,
    media_synced: int = 0,
    media_failed: int = 0,
    error_message: Optional[str] = None,
) -> SyncLog:
    """Move *log_id* to ``completed``.  ``error_message`` may carry a warning
    about a non-fatal problem (e.g. local mark-as-synced failed)."""

    log_row = _load_for_update(db, log_id)
    _transition(log_row, SyncStatus.COMPLETED)
    log_row.completed_at = utc_now_naive()
    log_row.posts_synced = posts_synced
    log_row.comments_synced = comments_synced
    log_row.location_tracks_synced = location_tracks_synced
    log_row.media_synced = media_synced
    log_row.media_failed = media_failed
    log_row.error_message = error_message
    db.flush()
    return log_row


def fail_sync_log(db: Session, log_id: int, error_message: str) -> SyncLog:
    log_row = _load_for_update(db, log_id)
    _transition(log_row, SyncStatus.FAILED)
    log_row.completed_at = utc_now_naive()
    log_row.error_message = error_message
    db.flush()
    return log_row


def fetch_sync_logs(
    db: Session,
    *,
    shelter_id: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    """Paginated audit listing (1-based *page*), newest first, with shelter name."""

    scope = SyncLog.shelter_id == shelter_id if shelter_id is not None else true()
    total_count = db.query(func.count(SyncLog.id)).filter(scope).scalar() or 0

    rows = (
        db.query(SyncLog, Shelter.name)
        .outerjoin(Shelter, SyncLog.shelter_id == Shelter.id)
        .filter(scope)
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    logs = []
    for log_row, shelter_name in rows:
        logs.append(
            {
                "id": log_row.id,
                "shelter_id": log_row.shelter_id,
                "shelter_name": shelter_name,
                "sync_type": log_row.sync_type,
                "status": log_row.status,
                "started_at": log_row.started_at,
                "completed_at": log_row.completed_at,
                "posts_synced": log_row.posts_synced,
                "comments_synced": log_row.comments_synced,
                "location_tracks_synced": log_row.location_tracks_synced,
                "media_synced": log_row.media_synced,
                "media_failed": log_row.media_failed,
                "error_message": log_row.error_message,
                "target_url": log_row.target_url,
            }
        )

    return {
        "logs": logs,
        "total_count": total_count,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total_count / limit) if limit else 0,
    }


# ---------------------------------------------------------------------------
# Insert-if-absent (receive & pull apply)
# ---------------------------------------------------------------------------


def _insert_if_absent(db: Session, model, values: Dict[str, Any]) -> bool:
    """Insert *values* unless a row with the same id exists.

    Returns True when a row was written.  SQLite and Postgres use an atomic
    ``ON CONFLICT DO NOTHING``; other dialects fall back to check-then-insert.
    """

    values = {**values, "is_synced": True, "ingested_at": utc_now_naive()}
    dialect = db.get_bind().dialect.name

    if dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=["id"])
    elif dialect == "postgresql":
        stmt = pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=["id"])
    else:
        if db.query(model.id).filter(model.id == values["id"]).first() is not None:
            return False
        db.add(model(**values))
        db.flush()
        return True

    result = db.execute(stmt)
    return result.rowcount == 1


def insert_post_if_absent(db: Session, record: PostRecord) -> bool:
    return _insert_if_absent(db, Post, record.model_dump())


def insert_comment_if_absent(db: Session, record: CommentRecord) -> bool:
    return _insert_if_absent(db, Comment, record.model_dump())


def insert_location_track_if_absent(db: Session, record: LocationTrackRecord) -> bool:
    return _insert_if_absent(db, LocationTrack, record.model_dump())


def insert_media_if_absent(db: Session, record: MediaRecord) -> bool:
    return _insert_if_absent(db, Media, record.model_dump())


def post_exists(db: Session, post_id: str) -> bool:
    return db.query(Post.id).filter(Post.id == post_id).first() is not None


def get_post_shelter_ids(db: Session, post_ids: Iterable[str]) -> Dict[str, int]:
    """Map each known post id to its owning shelter; unknown ids are absent."""

    wanted = sorted(set(post_ids))
    mapping: Dict[str, int] = {}
    for chunk in _chunks(wanted):
        for post_id, shelter_id in db.query(Post.id, Post.shelter_id).filter(Post.id.in_(chunk)).all():
            mapping[post_id] = shelter_id
    return mapping


# ---------------------------------------------------------------------------
# Pull export (serving side) & cursor (pulling side)
# ---------------------------------------------------------------------------


def _changed_since(model, since: Optional[datetime]):
    if since is None:
        return true()
    return or_(model.updated_at >= since, model.ingested_at >= since)


def fetch_changed_since(
    db: Session,
    *,
    since: Optional[datetime] = None,
    shelter_id: Optional[int] = None,
) -> Dict[str, list]:
    """Non-deleted rows changed at or after *since* (``None`` = everything)."""

    posts_q = db.query(Post).filter(Post.deleted_at.is_(None), _changed_since(Post, since))
    if shelter_id is not None:
        posts_q = posts_q.filter(Post.shelter_id == shelter_id)

    def children(model):
        query = db.query(model).filter(model.deleted_at.is_(None), _changed_since(model, since))
        if shelter_id is not None:
            query = query.join(Post, Post.id == model.post_id).filter(Post.shelter_id == shelter_id)
        return query.order_by(model.created_at.asc()).all()

    return {
        "posts": posts_q.order_by(Post.created_at.asc()).all(),
        "comments": children(Comment),
        "location_tracks": children(LocationTrack),
        "media": children(Media),
    }


def get_pull_cursor(db: Session, scope_key: str) -> Optional[datetime]:
    cursor = db.query(PullCursor).filter(PullCursor.scope_key == scope_key).first()
    return cursor.last_pulled_at if cursor else None


def set_pull_cursor(db: Session, scope_key: str, value: datetime) -> datetime:
    """Advance the cursor for *scope_key*; never moves it backwards.

    Returns the stored value (which is the old one if *value* is older).
    """

    cursor = db.query(PullCursor).filter(PullCursor.scope_key == scope_key).first()
    if cursor is None:
        cursor = PullCursor(scope_key=scope_key, last_pulled_at=value)
        db.add(cursor)
    elif value > cursor.last_pulled_at:
        cursor.last_pulled_at = value
    else:
        logger.warning(
            f"Refusing to move pull cursor '{scope_key}' backwards ({cursor.last_pulled_at} -> {value})"
        )
    db.flush()
    return cursor.last_pulled_at


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


def list_live_media(db: Session) -> List[Media]:
    return db.query(Media).filter(Media.deleted_at.is_(None)).order_by(Media.created_at.asc()).all()
