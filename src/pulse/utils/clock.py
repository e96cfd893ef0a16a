"""Time helpers shared by the engine and its storage."""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_of_day(moment: datetime) -> datetime:
    """Midnight at the start of the given day."""
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(moment: datetime) -> datetime:
    """Midnight on the first day of the given month."""
    return start_of_day(moment).replace(day=1)


def days_before(moment: datetime, days: int) -> datetime:
    return moment - timedelta(days=days)


def isoformat_z(moment: datetime) -> str:
    """Serialize a naive UTC datetime as ISO 8601 with a Z suffix."""
    return moment.replace(microsecond=(moment.microsecond // 1000) * 1000).isoformat(
        timespec="milliseconds"
    ) + "Z"
