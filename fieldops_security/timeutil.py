"""Timestamp helpers shared by the log sink, event bus and audit trail."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def from_epoch(seconds: float) -> datetime:
    """Aware UTC datetime for a POSIX timestamp."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def isoformat_z(value: datetime) -> str:
    """
    ISO-8601 with millisecond precision and a trailing Z.

    Exports are parsed by downstream reporting tools that expect the
    2024-01-31T12:00:00.000Z shape.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
