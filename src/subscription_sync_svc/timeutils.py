import datetime
from typing import Optional, Union


def utcnow() -> datetime.datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def from_timestamp(timestamp: Optional[int]) -> Optional[datetime.datetime]:
    if timestamp is None:
        return None
    return datetime.datetime.fromtimestamp(int(timestamp), tz=datetime.timezone.utc).replace(tzinfo=None)


def to_timestamp(value: Union[datetime.datetime, int]) -> int:
    if isinstance(value, int):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return int(value.timestamp())
