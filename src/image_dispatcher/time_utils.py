"""Helpers for converting UTC timestamps into localized display strings."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive values read back from SQLite."""
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def format_local_datetime(dt: datetime | None, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """Return a localized string for a UTC timestamp.

    Dispatch timestamps are written as aware UTC values, but SQLite may hand
    them back naive; those are treated as UTC before converting to the system
    timezone.

    :param dt: Naive UTC datetime or timezone-aware datetime.
    :param fmt: ``strftime``-compatible format string.
    :returns: Local timezone string or ``"-"`` when ``dt`` is missing.
    """
    if not dt:
        return "-"
    return as_utc(dt).astimezone().strftime(fmt)


def format_duration(seconds: float | None) -> str:
    """Render a duration as ``1h02m03s`` / ``2m03s`` / ``3s``."""
    if seconds is None:
        return "-"
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"
