"""Generic *async* retry decorator with exponential back-off + jitter.

Used for the narrow, idempotent steps of a sync pass where a transient
failure is worth a second attempt without failing the whole pass: marking
pushed rows as synced and moving a single media object.

```python
from shelter_sync.utils.retry import async_retry


@async_retry(max_attempts=3, base_delay=0.5, operation="mark-synced")
async def mark_synced(...):
    ...
```
"""

from __future__ import annotations

import asyncio
import functools
import random
from typing import Awaitable
from typing import Callable
from typing import ParamSpec
from typing import TypeVar

from shelter_sync.config import get_settings
from shelter_sync.metrics import sync_retry_total
from shelter_sync.utils.log import log

_T = TypeVar("_T")
_P = ParamSpec("_P")


def _default_retriable(exc: Exception) -> bool:  # noqa: D401 – small helper
    """Retry **everything** by default (caller can override)."""

    return True


def async_retry(
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.25,
    retriable: Callable[[Exception], bool] | None = None,
    operation: str | None = None,  # Metric label only – optional
) -> Callable[[Callable[_P, Awaitable[_T]]], Callable[_P, Awaitable[_T]]]:
    """Decorate an *async* function so it is executed with retry semantics.

    Parameters
    ----------
    max_attempts:
        Inclusive – the *first* try counts. ``max_attempts=1`` disables retry.
    base_delay:
        Initial sleep in seconds (doubles on every retry).
    max_delay:
        Upper bound for back-off sleep.
    jitter:
        0-1.0 – percentage of random noise added/subtracted from delay.
    retriable:
        Callback deciding if *exc* is worth another attempt. Defaults to
        retrying **all** exceptions.
    operation:
        Optional string used for the metrics label.
    """

    # Shrink retry duration when running inside the unit-test harness.
    if get_settings().testing:
        base_delay = min(base_delay, 0.01)
        max_delay = min(max_delay, 0.05)

    retriable = retriable or _default_retriable

    def decorator(fn: Callable[_P, Awaitable[_T]]) -> Callable[_P, Awaitable[_T]]:
        label = operation or fn.__name__

        @functools.wraps(fn)
        async def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> _T:
            attempt = 1
            delay = base_delay

            while True:
                try:
                    return await fn(*args, **kwargs)
                except Exception as exc:
                    if attempt >= max_attempts or not retriable(exc):
                        log.warning(
                            "retry-exhausted",
                            operation=label,
                            attempts=attempt,
                            error=str(exc),
                        )
                        raise

                    sleep_for = delay * (1 + random.uniform(-jitter, jitter))
                    log.debug(
                        "retry",
                        operation=label,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        sleep=sleep_for,
                    )
                    sync_retry_total.labels(label).inc()

                    await asyncio.sleep(sleep_for)

                    attempt += 1
                    delay = min(delay * 2, max_delay)

        return wrapper

    return decorator


def is_retryable_http_exc(exc: Exception) -> bool:  # noqa: D401 – helper
    """Return *True* if exception indicates a transient HTTP failure.

    Works with :class:`shelter_sync.services.sync_errors.SyncRemoteError`
    and ``httpx.HTTPStatusError`` alike via the ``status_code`` attribute.
    """

    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if status is None:
        return True  # Network / parsing error → retry

    return status in {429, 500, 502, 503, 504}


__all__ = [
    "async_retry",
    "is_retryable_http_exc",
]
