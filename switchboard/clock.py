"""Timestamp helpers shared by the lifecycle components."""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable

Clock = Callable[[], dt.datetime]


def utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime) -> dt.datetime:
    # SQLite hands back naive datetimes; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def parse_timestamp(value: object) -> dt.datetime | None:
    """Coerce a context value into an aware datetime, or ``None``."""

    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        return as_utc(dt.datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp value: {value!r}")
