"""Wall-clock helpers; components take a clock so tests can drive time."""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], int]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


def ms_to_datetime(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // _ONE_MS
