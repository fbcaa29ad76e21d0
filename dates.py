from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total_months = month - 1 + months
    return year + total_months // 12, total_months % 12 + 1


def clamped_date(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Move ``base`` by whole months, snapping to the last day on overflow.

    ``add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)``.
    """
    year, month = shift_month(base.year, base.month, months)
    return clamped_date(year, month, desired_day or base.day)


class Clock:
    """Source of "now" in the ledger's configured timezone.

    Datetimes are returned naive (local wall time), matching how the
    database stores them.
    """

    def __init__(self, timezone: Optional[str] = None) -> None:
        self.timezone = timezone or get_settings().timezone

    def now(self) -> datetime:
        return datetime.now(ZoneInfo(self.timezone)).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()

    def localize(self, value: datetime) -> datetime:
        """Naive local wall time for ``value``; naive input is taken as local already."""
        if value.tzinfo is None:
            return value
        return value.astimezone(ZoneInfo(self.timezone)).replace(tzinfo=None)


class FixedClock(Clock):
    def __init__(self, today: date, *, hour: int = 12) -> None:
        super().__init__("UTC")
        self._now = datetime(today.year, today.month, today.day, hour, 0)

    def now(self) -> datetime:
        return self._now

    def set(self, today: date) -> None:
        self._now = self._now.replace(
            year=today.year, month=today.month, day=today.day
        )

    def advance(self, days: int = 1) -> None:
        self._now += timedelta(days=days)
