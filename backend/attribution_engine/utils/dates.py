"""Timestamp helpers.

Stored timestamps are naive UTC. Upstream feeds send ISO-8601 strings with
offsets (Shopify: "2025-01-07T10:15:00-05:00"), callers send either form.
"""

from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into naive UTC.

    Returns None for empty or unparseable input instead of raising.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC datetime as ISO-8601 with a Z suffix."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat() + "Z"
