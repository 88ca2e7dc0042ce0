"""
Time helpers. All persisted instants are naive UTC datetimes; the client
protocol exchanges epoch seconds.
"""
from datetime import datetime
import pytz
from typing import Optional


def get_utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(pytz.UTC)


def utc_now_naive() -> datetime:
    """Current UTC time without tzinfo, as stored in the database"""
    return get_utc_now().replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def to_epoch_seconds(dt: Optional[datetime]) -> Optional[float]:
    if dt is None:
        return None
    return to_utc(dt).timestamp()


def from_epoch_seconds(value: float) -> datetime:
    return datetime.fromtimestamp(value, pytz.UTC).replace(tzinfo=None)
