"""Small helpers shared by services: identifier parsing and UTC clock."""

import uuid
from datetime import datetime, timezone

from coinvault.exceptions import ValidationError


def parse_uuid(value: str | uuid.UUID, label: str = "identifier") -> uuid.UUID:
    """Parse a UUID from a path/body value, raising ValidationError when malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {label}") from None


def utcnow() -> datetime:
    """Current time as naive UTC, matching the timestamp columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a Stripe Unix timestamp to naive UTC datetime."""
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalise an incoming datetime to naive UTC; naive values are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
