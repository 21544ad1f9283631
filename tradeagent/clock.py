from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def has_elapsed(since: datetime, now: datetime, minutes: int) -> bool:
    return ensure_utc(now) - ensure_utc(since) >= timedelta(minutes=max(0, minutes))
