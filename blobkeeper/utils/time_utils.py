"""Time helpers. All stored timestamps are naive UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
