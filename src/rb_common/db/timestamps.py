"""UTC helpers for expiry columns.

SQLite hands back naive datetimes even for timezone-aware columns, so every
comparison goes through ensure_utc().
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def expires_in(minutes: int) -> datetime:
    return utcnow() + timedelta(minutes=minutes)


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """None never expires."""
    if expires_at is None:
        return False
    now = now or utcnow()
    return ensure_utc(expires_at) <= now
