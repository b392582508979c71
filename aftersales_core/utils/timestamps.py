"""Timestamp helpers. All stored timestamps are UTC ISO-8601 strings."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return ensure_aware(dt).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_aware(datetime.fromisoformat(value))


def parse_external_time(value: object) -> datetime | None:
    """Parse a timestamp pushed by an external system.

    Accepts ISO-8601 strings, "YYYY-MM-DD HH:MM:SS" strings, epoch seconds and
    datetimes. Returns None for empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        try:
            return ensure_aware(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            return ensure_aware(datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))
        except ValueError as e:
            raise ValueError(f"Unrecognised timestamp: {value!r}") from e
    raise ValueError(f"Unrecognised timestamp: {value!r}")
