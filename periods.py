from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

MIN_YEAR = 2020
MAX_YEAR = 2100


@dataclass(frozen=True, order=True)
class MonthRef:
    year: int
    month: int

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    def previous(self) -> "MonthRef":
        if self.month == 1:
            return MonthRef(self.year - 1, 12)
        return MonthRef(self.year, self.month - 1)

    def next(self) -> "MonthRef":
        if self.month == 12:
            return MonthRef(self.year + 1, 1)
        return MonthRef(self.year, self.month + 1)


def today_local() -> date:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).date()


def current_month(today: Optional[date] = None) -> MonthRef:
    today = today or today_local()
    return MonthRef(today.year, today.month)


def resolve_month(year: int, month: int) -> MonthRef:
    """Validate a year/month pair taken from a URL."""
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise ValueError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}")
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    return MonthRef(year, month)
