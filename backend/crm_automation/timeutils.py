from datetime import datetime, timedelta, timezone
from typing import Optional

DELAY_UNITS = {
    "minutes": lambda value: timedelta(minutes=value),
    "hours": lambda value: timedelta(hours=value),
    "days": lambda value: timedelta(days=value),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes coming back from storage or JSON are treated as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def delay_delta(value: int, unit: str) -> timedelta:
    if unit not in DELAY_UNITS:
        raise ValueError(f"Invalid delay unit: {unit}")
    return DELAY_UNITS[unit](value)
