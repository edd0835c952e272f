"""Datetime parsing for producer timestamps and ledger literals: lax input -> aware output."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum


def parse_datetime(value: str | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime string into a timezone-aware datetime.

    Accepts ISO 8601 variants as sent by producers and stored as
    ``xsd:dateTime`` literals, such as:
    - 2026-02-02T22:21:29.975Z
    - 2026-02-02T22:21:29+00:00
    - 2026-02-02 22:21:29
    - 2026-02-02

    Missing timezone defaults to default_tz.
    Missing time components default to zeros.
    Raises ValueError if the string is not a recognizable datetime.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    value_str = value.strip()
    try:
        parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    except ValueError as exc:
        msg = f"Invalid datetime: {value!r}"
        raise ValueError(msg) from exc

    if not isinstance(parsed, pendulum.DateTime):
        if not isinstance(parsed, pendulum.Date):
            msg = f"Expected a date or datetime, got: {value!r}"
            raise ValueError(msg)
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz=default_tz)
    return parsed


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for query strings and JSON."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()
