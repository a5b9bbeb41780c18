from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import BudgetPeriod


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift ``base`` by whole calendar months, snapping to the month end.

    ``desired_day`` lets a series keep its anchor day (the 31st stays the 31st
    whenever the target month has one).
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day or base.day
    return date(year, month, min(day, days_in_month(year, month)))


def month_start(d: date) -> date:
    return d.replace(day=1)


def month_end(d: date) -> date:
    return d.replace(day=days_in_month(d.year, d.month))


def budget_window(
    period: BudgetPeriod,
    start_date: date,
    end_date: Optional[date] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    if period == BudgetPeriod.monthly:
        end = add_months(start_date, 1) - timedelta(days=1)
    elif period == BudgetPeriod.weekly:
        end = start_date + timedelta(days=6)
    elif period == BudgetPeriod.yearly:
        end = add_months(start_date, 12) - timedelta(days=1)
    else:
        end = end_date or today or local_today()
    return Period(period.value, start_date, end)
