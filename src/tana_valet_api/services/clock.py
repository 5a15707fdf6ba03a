from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands DateTime(timezone=True) columns back naive.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
