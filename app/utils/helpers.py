"""Shared input-parsing helpers for blueprints and services.

parse_date:      report dates (returns None on bad input)
parse_datetime:  delegation windows and ``at`` overrides (raises ValueError)
to_utc:          normalize any datetime to aware UTC
"""
from datetime import date, datetime, timezone


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format used on rig paperwork)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value):
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive input is taken as UTC. A trailing "Z" is accepted.
    Raises ValueError on bad input; returns None for empty input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(
                f"Invalid datetime {value!r}. Use ISO-8601, e.g. 2024-01-31T08:00:00Z."
            ) from exc
    return to_utc(dt)


def to_utc(value):
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
