from datetime import datetime, timedelta, timezone
from typing import Optional


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    # BSON dates keep millisecond precision
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored datetime; Mongo hands back naive UTC values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_after(previous: Optional[datetime], candidate: datetime) -> datetime:
    """Return ``candidate`` or, if it does not advance past ``previous``, previous + 1ms."""
    previous = as_utc(previous)
    candidate = as_utc(candidate)
    if previous is not None and candidate <= previous:
        return previous + timedelta(milliseconds=1)
    return candidate


def storage_time(value: datetime) -> datetime:
    """Naive UTC, the form BSON dates are stored and compared in."""
    return as_utc(value).replace(tzinfo=None)
