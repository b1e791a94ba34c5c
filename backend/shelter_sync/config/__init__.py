"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a **single**
:class:`Settings` instance (retrieved via :func:`get_settings`).  Values come
from the process environment, optionally seeded from a ``.env`` file at the
repository root.

The same code runs on an *edge* node (a shelter laptop that may be offline
for days) and on the *center* node (the coordination server); ``NODE_ROLE``
only changes defaults, never which endpoints exist.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` points to the top-level repository directory (one level
# **above** the "backend" package).  This file lives at
# ``backend/shelter_sync/config/__init__.py``.

_REPO_ROOT = Path(__file__).resolve().parents[3]

NODE_ROLES = ("edge", "center")


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _optional_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass
class Settings:  # noqa: D401 – simple data container
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    log_level: str

    # Database ---------------------------------------------------------
    database_url: str

    # Topology ---------------------------------------------------------
    node_role: str
    central_api_url: str | None
    local_api_url: str
    default_shelter_id: int | None

    # Pull scheduling --------------------------------------------------
    _pull_enabled_raw: str | None
    pull_interval_seconds: int
    pull_jitter_seconds: int
    connectivity_check_seconds: int

    # Outbound HTTP ----------------------------------------------------
    http_timeout_seconds: float
    probe_timeout_seconds: float

    # Media ------------------------------------------------------------
    media_concurrency: int
    media_root: str

    # Offline queue ----------------------------------------------------
    offline_queue_path: str

    # HTTP surface -----------------------------------------------------
    allowed_cors_origins: str

    @property
    def pull_enabled(self) -> bool:  # noqa: D401
        """Explicit ``ENABLE_PULL_SYNC`` wins; unset means *edge nodes only*."""

        raw = self._pull_enabled_raw
        if raw is not None and raw.strip():
            return _truthy(raw)
        return self.node_role == "edge"

    @property
    def cors_origins(self) -> list[str]:
        origins = [o.strip() for o in self.allowed_cors_origins.split(",") if o.strip()]
        return origins or ["*"]

    # Helper for tests to override values at runtime -------------------
    def override(self, **kwargs: Any) -> None:  # pragma: no cover – test util
        for key, value in kwargs.items():
            if not hasattr(self, key):  # pragma: no cover – safety
                raise AttributeError(f"Settings has no attribute '{key}'")
            setattr(self, key, value)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    env_path = _REPO_ROOT / ".env"
    if env_path.exists():
        # Explicit environment variables win over the file.
        load_dotenv(env_path, override=False)

    testing = _truthy(os.getenv("TESTING"))
    default_db = "sqlite:///:memory:" if testing else "sqlite:///./shelter_sync.db"

    return Settings(
        testing=testing,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        database_url=os.getenv("DATABASE_URL") or default_db,
        node_role=os.getenv("NODE_ROLE", "edge").strip().lower(),
        central_api_url=os.getenv("CENTRAL_API_URL") or None,
        local_api_url=os.getenv("LOCAL_API_URL", "http://localhost:8787"),
        default_shelter_id=_optional_int(os.getenv("DEFAULT_SHELTER_ID")),
        _pull_enabled_raw=os.getenv("ENABLE_PULL_SYNC"),
        pull_interval_seconds=int(os.getenv("PULL_INTERVAL_SECONDS", "1800")),
        pull_jitter_seconds=int(os.getenv("PULL_JITTER_SECONDS", "120")),
        connectivity_check_seconds=int(os.getenv("CONNECTIVITY_CHECK_SECONDS", "60")),
        http_timeout_seconds=float(os.getenv("SYNC_HTTP_TIMEOUT_SECONDS", "30")),
        probe_timeout_seconds=float(os.getenv("SYNC_PROBE_TIMEOUT_SECONDS", "5")),
        media_concurrency=int(os.getenv("MEDIA_CONCURRENCY", "3")),
        media_root=os.getenv("MEDIA_ROOT", "./media"),
        offline_queue_path=os.getenv("OFFLINE_QUEUE_PATH", "./state/pending_operations.json"),
        allowed_cors_origins=os.getenv("ALLOWED_CORS_ORIGINS", "*"),
    )


# ------------------------------------------------------------------
# Runtime validation – fail fast on nonsensical configuration.
# ------------------------------------------------------------------


def _validate(settings: Settings) -> None:  # noqa: D401 – helper
    """Abort start-up when configuration values cannot work at all."""

    problems = []

    if settings.node_role not in NODE_ROLES:
        problems.append(f"NODE_ROLE must be one of {', '.join(NODE_ROLES)} (got '{settings.node_role}')")

    if settings.pull_interval_seconds <= 0:
        problems.append("PULL_INTERVAL_SECONDS must be positive")

    if settings.pull_jitter_seconds < 0:
        problems.append("PULL_JITTER_SECONDS must not be negative")

    if settings.connectivity_check_seconds <= 0:
        problems.append("CONNECTIVITY_CHECK_SECONDS must be positive")

    if settings.media_concurrency <= 0:
        problems.append("MEDIA_CONCURRENCY must be positive")

    if settings.http_timeout_seconds <= 0 or settings.probe_timeout_seconds <= 0:
        problems.append("SYNC_HTTP_TIMEOUT_SECONDS and SYNC_PROBE_TIMEOUT_SECONDS must be positive")

    if problems:
        raise RuntimeError("CRITICAL: invalid sync configuration:\n  " + "\n  ".join(problems))


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate(settings)
    return settings


__all__ = [
    "NODE_ROLES",
    "Settings",
    "get_settings",
]
