from __future__ import annotations

from datetime import datetime, timedelta, timezone
import time
from typing import Callable

# Millisecond wall clock; stores accept any callable with this signature.
Clock = Callable[[], float]


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ms_to_datetime(value_ms: float) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000.0, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> float:
    return ensure_utc(value).timestamp() * 1000.0


def ensure_utc(value: datetime) -> datetime:
    """
    Attach UTC to naive datetimes.

    SQLite drops tzinfo on round-trip, so values read back from it are naive
    but always written in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO 8601 timestamp (accepting a trailing ``Z``) into aware UTC."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(cleaned))


def one_year_before(reference: datetime) -> datetime:
    return reference - timedelta(days=365)
