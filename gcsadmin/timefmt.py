"""RFC3339 parsing and rendering helpers."""

from __future__ import annotations

from datetime import UTC, datetime

from gcsadmin.errors import InvalidArgument

# Fixed-width fraction keeps lexical order equal to chronological order in SQLite.
_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def ensure_aware(value: datetime) -> datetime:
    """Return ``value`` in UTC, treating naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_rfc3339(value: str, *, flag: str = "time") -> datetime:
    """Parse an RFC3339 timestamp with an explicit offset."""
    text = value.strip()
    if not text:
        raise InvalidArgument(f"invalid {flag}: empty value")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidArgument(f"invalid {flag} {value!r}: expected RFC3339") from exc
    if parsed.tzinfo is None:
        raise InvalidArgument(f"invalid {flag} {value!r}: RFC3339 requires a UTC offset")
    return parsed.astimezone(UTC)


def parse_optional_rfc3339(value: str | None, *, flag: str) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_rfc3339(value, flag=flag)


def format_rfc3339(value: datetime) -> str:
    """Render ``value`` as RFC3339 in UTC with a ``Z`` suffix."""
    aware = ensure_aware(value)
    timespec = "microseconds" if aware.microsecond else "seconds"
    return aware.isoformat(timespec=timespec).replace("+00:00", "Z")


def to_storage(value: datetime) -> str:
    return ensure_aware(value).strftime(_STORAGE_FORMAT)


def from_storage(value: str) -> datetime:
    return ensure_aware(datetime.fromisoformat(value))
