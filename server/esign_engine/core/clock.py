from datetime import datetime, timezone


def utcnow() -> datetime:
    """Single source of wall-clock time for the signing services."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
