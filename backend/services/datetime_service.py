"""Datetime helpers: lax date input -> strict folder and version labels."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pendulum

DATE_FORMAT = "%Y-%m-%d"


def parse_backup_date(value: str | date) -> str:
    """Normalize a client-supplied backup date to ``YYYY-MM-DD``.

    Accepts plain dates as well as full timestamps (``2026-02-02T22:21:29Z``);
    the calendar date is taken as given, without timezone conversion.
    """
    if isinstance(value, datetime):
        return value.date().strftime(DATE_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)

    value_str = value.strip()
    if not value_str:
        raise ValueError("date must not be empty")
    try:
        parsed = pendulum.parse(value_str, strict=False)
    except ValueError as exc:
        raise ValueError(f"Invalid backup date: {value}") from exc
    if isinstance(parsed, pendulum.DateTime):
        return parsed.date().strftime(DATE_FORMAT)
    if isinstance(parsed, pendulum.Date):
        return parsed.strftime(DATE_FORMAT)
    raise ValueError(f"Invalid backup date: {value}")


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def version_id_for(dt: datetime) -> str:
    """Build a filesystem-safe version id such as ``version-2026-02-02T22-21-29.975Z``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    stamp = dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    millis = dt.microsecond // 1000
    return f"version-{stamp}.{millis:03d}Z"


def day_folder_name(backup_date: str, day_index: int) -> str:
    """Folder label of a day bucket."""
    return f"date-[{backup_date}] (day {day_index})"
