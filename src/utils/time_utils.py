from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    # Naive UTC, matching what pymongo returns for stored datetimes
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a timezone-aware datetime to naive UTC. Naive values are assumed to be UTC already.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


DELAY_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


def delay_to_timedelta(delay_amount: int, delay_unit: str) -> timedelta:
    """
    Convert a delay node's amount and unit to a timedelta.
    Unknown units fall back to minutes.
    """
    return timedelta(seconds=delay_amount * DELAY_UNIT_SECONDS.get(delay_unit, 60))
