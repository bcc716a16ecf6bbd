"""
Wall-clock helpers. All stored datetimes are naive UTC.
"""
from datetime import datetime, timezone


class SystemClock:
    def now(self):
        return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch(dt):
    """Naive UTC datetime -> integer epoch seconds."""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def isoformat(dt):
    return dt.isoformat() + 'Z' if dt else None


def parse_datetime(value):
    """Parse an ISO-8601 string into a naive UTC datetime (None passes through)."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"expected an ISO-8601 string, got {type(value).__name__}")
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def as_utc(dt):
    """Attach UTC to a naive datetime (for APScheduler start dates)."""
    return dt.replace(tzinfo=timezone.utc)
