"""Timezone helpers – provide a single UTC-aware *now()* function.

Sync timestamps cross node boundaries, so every row and every cursor is
stored as *naive UTC*.  Import :pyfunc:`utc_now_naive` instead of calling the
stdlib helpers directly, and run incoming wire values through
:pyfunc:`to_naive_utc` before comparing them with column values.
"""

from datetime import datetime
from datetime import timezone


def utc_now() -> datetime:  # noqa: D401 – simple utility
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401 – simple utility
    """Return *naive* current time in UTC for database compatibility.

    SQLAlchemy DateTime columns without timezone info store naive datetimes.
    This function provides UTC time in the format expected by the database.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""

    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


__all__ = ["utc_now", "utc_now_naive", "to_naive_utc"]
