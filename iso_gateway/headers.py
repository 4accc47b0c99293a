from __future__ import annotations

from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime

_QUOTES = "'\""


def parse_http_date(value: str | None) -> datetime | None:
    """Parse an HTTP date, returning ``None`` for anything unparseable.

    RFC 1123 dates are preferred; ISO 8601 timestamps are accepted too.
    Naive results are taken to be UTC.
    """
    if not value:
        return None
    value = value.strip()
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_http_date(value: datetime) -> str:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return format_datetime(aware.astimezone(UTC), usegmt=True)


def strip_etag(value: str | None) -> str | None:
    """Normalise an ``If-Match``/``If-None-Match`` value to a bare tag.

    Only a single strong tag is usable: weak tags and lists are dropped.
    """
    if value is None:
        return None
    value = value.strip()
    if value.startswith("W/") or "," in value:
        return None
    if value[:1] in _QUOTES:
        value = value[1:]
    if value[-1:] in _QUOTES:
        value = value[:-1]
    return value or None
