from shelter_sync.config import get_settings

_settings = get_settings()

# --- TOP: logging must be configured before the routers import their loggers ---
import logging

from shelter_sync.utils.log import configure_stdlib

configure_stdlib(_settings.log_level)

# fmt: off
# ruff: noqa: E402
# fmt: on

# Third-party
from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shelter_sync.constants import API_PREFIX
from shelter_sync.database import initialize_database
from shelter_sync.routers.metrics import router as metrics_router
from shelter_sync.routers.sync import router as sync_router

# Background services ---------------------------------------------------------
#
# The coordinator's consumer task and scheduler keep the event loop alive, so
# they are skipped when ``TESTING`` is truthy (set by backend/tests/conftest.py);
# tests drive SyncCoordinator directly.
from shelter_sync.services.sync_coordinator import SyncCoordinator
from shelter_sync.services.sync_notifier import sync_notifier

logger = logging.getLogger(__name__)

app = FastAPI(title="Shelter Sync", redirect_slashes=True)

cors_origins = _settings.cors_origins


@app.exception_handler(Exception)
async def ensure_cors_on_errors(request: Request, exc: Exception):
    """Ensure CORS headers are included even in error responses."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    origin = request.headers.get("origin", "*")
    allowed = origin if (origin in cors_origins or "*" in cors_origins) else cors_origins[0]

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers={
            "Access-Control-Allow-Origin": allowed,
            "Access-Control-Allow-Methods": "*",
            "Access-Control-Allow-Headers": "*",
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials="*" not in cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router, prefix=API_PREFIX)
app.include_router(metrics_router)  # no prefix – Prometheus expects /metrics

sync_coordinator: SyncCoordinator | None = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on app startup."""
    global sync_coordinator

    initialize_database()
    logger.info("Database tables initialized")

    sync_notifier.start()

    if not _settings.testing and _settings.node_role == "edge":
        sync_coordinator = SyncCoordinator(settings=_settings)
        await sync_coordinator.start()
        logger.info("Sync coordinator started")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up services on app shutdown."""
    if sync_coordinator is not None:
        await sync_coordinator.stop()
        logger.info("Sync coordinator stopped")

    sync_notifier.stop()


@app.get("/")
async def read_root():
    """Liveness probe; also the URL edge nodes probe to detect connectivity."""
    return {"message": "Shelter Sync API is running", "nodeRole": _settings.node_role}
