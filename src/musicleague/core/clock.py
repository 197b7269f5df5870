"""Clock helpers.

Timestamps are stored as UTC. SQLite hands them back without tzinfo, so
every comparison goes through ``as_utc`` first.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime; convert an aware one to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def resolve_now(now: datetime | None) -> datetime:
    """Return *now* normalized to UTC, or the current time if not given."""
    return as_utc(now) if now is not None else utcnow()  # type: ignore[return-value]


def has_passed(deadline: datetime | None, now: datetime) -> bool:
    """True if *deadline* is set and is at or before *now*."""
    deadline = as_utc(deadline)
    return deadline is not None and deadline <= now


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None
