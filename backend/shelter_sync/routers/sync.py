"""HTTP surface of the sync subsystem (``/api/sync``).

Handlers stay thin: they validate input, call a service and return its
result model.  Sync failures are reported in the body (``success: false``)
rather than as HTTP errors; only bad input and missing objects map to 4xx.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import File
from fastapi import Form
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi import Response
from fastapi import UploadFile
from fastapi import status
from sqlalchemy.orm import Session

from shelter_sync.constants import SYNC_PREFIX
from shelter_sync.crud import crud
from shelter_sync.database import get_db
from shelter_sync.schemas.schemas import MediaReceiveResult
from shelter_sync.schemas.schemas import MediaSyncRequest
from shelter_sync.schemas.schemas import MediaSyncResult
from shelter_sync.schemas.schemas import PullResponse
from shelter_sync.schemas.schemas import PullResult
from shelter_sync.schemas.schemas import ReceiveResult
from shelter_sync.schemas.schemas import SyncBatch
from shelter_sync.schemas.schemas import SyncExecuteRequest
from shelter_sync.schemas.schemas import SyncLogsPage
from shelter_sync.schemas.schemas import SyncResult
from shelter_sync.schemas.schemas import SyncStatusOut
from shelter_sync.services.media_replicator import MediaSyncService
from shelter_sync.services.media_replicator import get_media_sync_service
from shelter_sync.services.object_store import LocalObjectStore
from shelter_sync.services.object_store import get_object_store
from shelter_sync.services.object_store import normalize_key
from shelter_sync.services.pull_sync import PullSyncService
from shelter_sync.services.pull_sync import get_pull_sync_service
from shelter_sync.services.push_sync import PushSyncService
from shelter_sync.services.push_sync import get_push_sync_service
from shelter_sync.services.sync_errors import EmptyObjectError
from shelter_sync.services.sync_errors import InvalidObjectKeyError
from shelter_sync.services.sync_errors import ObjectNotFoundError
from shelter_sync.services.sync_receiver import SyncReceiver
from shelter_sync.services.sync_receiver import get_sync_receiver
from shelter_sync.utils.time import to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix=SYNC_PREFIX, tags=["sync"])


def _require_target(target_url: str) -> str:
    target_url = (target_url or "").strip()
    if not target_url:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="targetUrl is required")
    return target_url


# ---------------------------------------------------------------------------
# Status & audit
# ---------------------------------------------------------------------------


@router.get("/status", response_model=SyncStatusOut)
def read_sync_status(db: Session = Depends(get_db)):
    return crud.get_sync_stats(db)


@router.get("/logs", response_model=SyncLogsPage)
def read_sync_logs(
    shelter_id: Optional[int] = Query(None, alias="shelterId"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return crud.fetch_sync_logs(db, shelter_id=shelter_id, page=page, limit=limit)


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


@router.post("/execute", response_model=SyncResult)
async def execute_push(
    body: SyncExecuteRequest,
    service: PushSyncService = Depends(get_push_sync_service),
):
    return await service.run_push_sync(_require_target(body.target_url), body.shelter_id)


@router.post("/receive", response_model=ReceiveResult)
def receive_batch(
    batch: SyncBatch,
    receiver: SyncReceiver = Depends(get_sync_receiver),
):
    logger.info(
        f"Receive batch: posts={len(batch.posts)} comments={len(batch.comments)} "
        f"tracks={len(batch.location_tracks)} media={len(batch.media)} source={batch.source_url}"
    )
    return receiver.receive(batch)


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


@router.get("/pull", response_model=PullResponse)
def export_changes(
    since: Optional[datetime] = Query(None),
    shelter_id: Optional[int] = Query(None, alias="shelterId"),
    db: Session = Depends(get_db),
):
    return PullSyncService.export_changes(db, to_naive_utc(since), shelter_id)


@router.post("/pull/execute", response_model=PullResult)
async def execute_pull(
    body: SyncExecuteRequest,
    service: PullSyncService = Depends(get_pull_sync_service),
):
    return await service.run_pull_sync(_require_target(body.target_url), body.shelter_id)


@router.api_route("/pull/media", methods=["GET", "HEAD"])
def read_media_object(
    request: Request,
    file_path: str = Query(..., alias="filePath"),
    store: LocalObjectStore = Depends(get_object_store),
):
    try:
        obj = store.get(file_path)
    except InvalidObjectKeyError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except ObjectNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    if request.method == "HEAD":
        return Response(status_code=status.HTTP_200_OK, media_type=obj.content_type)
    return Response(content=obj.data, media_type=obj.content_type)


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


@router.post("/media", response_model=MediaSyncResult)
async def execute_media_sync(
    body: MediaSyncRequest,
    service: MediaSyncService = Depends(get_media_sync_service),
):
    return await service.run_media_sync(_require_target(body.target_url))


@router.post("/media/receive", response_model=MediaReceiveResult)
async def receive_media_object(
    file: UploadFile = File(...),
    file_path: str = Form(..., alias="filePath"),
    content_type: Optional[str] = Form(None, alias="contentType"),
    store: LocalObjectStore = Depends(get_object_store),
):
    data = await file.read()
    resolved_type = content_type or file.content_type or None

    try:
        key = normalize_key(file_path)
        stored = store.put(key, data, resolved_type)
    except (InvalidObjectKeyError, EmptyObjectError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    obj_type = store.get(key).content_type
    logger.info(f"Stored media object {key} ({stored} bytes, {obj_type})")
    return MediaReceiveResult(success=True, file_path=key, stored_bytes=stored, content_type=obj_type)
