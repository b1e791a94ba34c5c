"""Structured logger shared by the background sync services.

Request handlers and CRUD helpers keep using ``logging.getLogger(__name__)``.
Long-running services (coordinator, replicator, offline queue) emit
key/value events instead so a single sync pass can be followed across
nodes::

    from shelter_sync.utils.log import log

    log.info("pull-sync", status="skipped", reason="already-running")
"""

from __future__ import annotations

import logging

import structlog

# Route structlog through the stdlib handlers configured in ``main.py`` so
# LOG_LEVEL and pytest's caplog apply to both styles of logging.
if not structlog.is_configured():
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

# Keep the logger global so every import shares the same base instance.
log = structlog.get_logger("shelter_sync")


def configure_stdlib(level: str) -> None:
    """Configure the root stdlib logger once (no-op if already configured)."""

    try:
        resolved = getattr(logging, level.upper())
    except AttributeError:
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format="%(levelname)s - %(name)s - %(message)s")
    logging.getLogger().setLevel(resolved)


__all__ = ["log", "configure_stdlib"]
