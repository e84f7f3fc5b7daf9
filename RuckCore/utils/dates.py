from datetime import datetime, timezone
from typing import Optional

from dateutil import parser


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp or pass a datetime through.

    PostgREST returns variable-precision fractional seconds
    ('2026-10-14T12:00:00.12+00:00'), so strings go through dateutil's
    isoparse rather than datetime.fromisoformat.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(parser.isoparse(str(value)))


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
