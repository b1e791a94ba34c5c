"""Prometheus metrics for the sync subsystem.

The module bundles all counters in one place so importing side-effects
(metric registration) happen exactly once per process.  Services can simply
``from shelter_sync.metrics import …`` and increment.
"""

from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Histogram

sync_attempts_total = Counter(
    "sync_attempts_total",
    "Sync attempts by kind (push/pull/receive/media) and terminal status",
    labelnames=("kind", "status"),
)

sync_records_total = Counter(
    "sync_records_total",
    "Records applied or transmitted by a sync pass",
    labelnames=("kind", "entity"),
)

media_transfers_total = Counter(
    "media_transfers_total",
    "Binary media transfers by outcome (synced/failed/skipped)",
    labelnames=("outcome",),
)

offline_queue_replays_total = Counter(
    "offline_queue_replays_total",
    "Offline queue replays by outcome (success/failed/dropped)",
    labelnames=("outcome",),
)

sync_retry_total = Counter(
    "sync_retry_total",
    "Retries executed by the async_retry helper",
    labelnames=("operation",),
)

# ------------------------------------------------------------------
# Histograms (latency) ---------------------------------------------
# ------------------------------------------------------------------

sync_duration_seconds = Histogram(
    "sync_duration_seconds",
    "Wall-clock duration of a sync attempt (seconds)",
    labelnames=("kind",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)


__all__ = [
    "sync_attempts_total",
    "sync_records_total",
    "media_transfers_total",
    "offline_queue_replays_total",
    "sync_retry_total",
    "sync_duration_seconds",
]
