"""Time and identifier helpers.

All timestamps handled by storesync are timezone-aware UTC datetimes. They
are persisted as fixed-width ISO-8601 strings so that SQLite can compare
them as text.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def utcnow() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(UTC)


def format_ts(value: datetime) -> str:
    """Format a datetime for storage.

    Naive datetimes are assumed to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_ts(value: str | datetime | None) -> datetime | None:
    """Parse a stored or remote timestamp.

    Accepts ISO-8601 strings with or without a ``Z`` suffix and SQLite's
    ``YYYY-MM-DD HH:MM:SS`` form.

    Returns:
        An aware UTC datetime, or None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def is_uuid(value: object) -> bool:
    """Check whether a value has the shape of a server-assigned UUID."""
    return isinstance(value, str) and UUID_PATTERN.match(value) is not None
