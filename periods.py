from dataclasses import dataclass
from datetime import date, datetime, time, timedelta


@dataclass(frozen=True)
class Period:
    start: date
    end: date

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, time(23, 59, 59, 999000))


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total = month - 1 + months
    return year + total // 12, total % 12 + 1


def billing_period_for(view_date: date, cycle_start_day: int) -> Period:
    """Billing period enclosing ``view_date`` for a cycle starting on
    ``cycle_start_day`` of every month.

    Start days past the end of a short month land on its last day.
    """
    if not 1 <= cycle_start_day <= 31:
        raise ValueError("Cycle start day must be between 1 and 31")

    year, month = view_date.year, view_date.month
    if view_date.day < cycle_start_day:
        year, month = _shift_month(year, month, -1)
    start = _clamped(year, month, cycle_start_day)

    next_year, next_month = _shift_month(year, month, 1)
    end = _clamped(next_year, next_month, cycle_start_day) - timedelta(days=1)
    # late start days clamp in short months, so view_date can already sit in
    # the period that begins on the clamped day of this month
    if end < view_date:
        start = end + timedelta(days=1)
        following_year, following_month = _shift_month(next_year, next_month, 1)
        end = _clamped(
            following_year, following_month, cycle_start_day
        ) - timedelta(days=1)
    return Period(start, end)


def following_period(period: Period, cycle_start_day: int) -> Period:
    return billing_period_for(period.end + timedelta(days=1), cycle_start_day)
