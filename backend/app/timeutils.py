from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

_DB_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    return value + relativedelta(months=months)


def to_db(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so that lexical order in sqlite matches chronological order.
    if value is None:
        return None
    return as_utc(value).strftime(_DB_FORMAT)


def from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _DB_FORMAT).replace(tzinfo=timezone.utc)
