"""UTC date helpers shared by the claim protocol and daily aggregation.

All timestamps in the database are naive UTC values.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def yesterday_utc(now: Optional[datetime] = None) -> date:
    return ((now or utcnow()) - timedelta(days=1)).date()


def parse_target_date(value: Optional[str], now: Optional[datetime] = None) -> date:
    """
    Parse a ``YYYY-MM-DD`` string, defaulting to yesterday (UTC).

    Raises:
        ValueError: If a value is given but is not a valid calendar date
    """
    if not value:
        return yesterday_utc(now)
    if not DATE_PATTERN.match(value):
        raise ValueError(f"date must be YYYY-MM-DD, got {value!r}")
    return date.fromisoformat(value)


@dataclass(frozen=True)
class DayWindow:
    """Inclusive [start, end] UTC boundaries of one calendar day."""

    day: date
    start: datetime
    end: datetime

    @classmethod
    def for_date(cls, day: date) -> "DayWindow":
        return cls(
            day=day,
            start=datetime.combine(day, time.min),
            end=datetime.combine(day, time.max),
        )

    @property
    def label(self) -> str:
        return self.day.isoformat()
