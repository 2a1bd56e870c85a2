from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, Optional, Union
from zoneinfo import ZoneInfo

from config import DEFAULT_TIMEZONE
from models import Frequency, RecurringPlan, Transaction, TransactionType
from periods import billing_period_for, days_in_month

MAX_SIMULATION_STEPS = 100


class InvalidPlanDate(ValueError):
    pass


def local_today(timezone: str = DEFAULT_TIMEZONE) -> date:
    return datetime.now(ZoneInfo(timezone)).date()


def parse_plan_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise InvalidPlanDate(f"Unparseable date: {value!r}") from exc


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    dim = days_in_month(year, month)
    return date(year, month, min(base.day, dim))


def add_periods(anchor: Union[str, date], frequency: Frequency, count: int) -> date:
    """Date of occurrence ``count`` of a plan anchored at ``anchor``.

    Monthly and yearly steps snap to the last day of a shorter target month,
    so Jan 31 + 1 month is Feb 28 (or 29).
    """
    base = parse_plan_date(anchor)
    frequency = Frequency(frequency)
    if frequency == Frequency.one_time:
        return base
    if frequency == Frequency.weekly:
        return base + timedelta(weeks=count)
    if frequency == Frequency.monthly:
        return _add_months(base, count)
    return _add_months(base, 12 * count)


def next_due_date(plan: RecurringPlan) -> date:
    return add_periods(plan.start_date, plan.frequency, plan.occurrences_generated)


def is_exhausted(plan: RecurringPlan) -> bool:
    if plan.max_occurrences and plan.occurrences_generated >= plan.max_occurrences:
        return True
    if plan.end_date and next_due_date(plan) > plan.end_date:
        return True
    return False


def iter_occurrences(
    plan: RecurringPlan, period_start: date, period_end: date
) -> Iterator[tuple[int, date]]:
    """Yield ``(index, date)`` for every occurrence inside the window.

    Simulation starts at the first unconsumed occurrence. Occurrences before
    ``period_start`` are stepped over without being yielded. The step count
    is capped, so a far-past weekly anchor truncates instead of spinning.
    """
    index = plan.occurrences_generated
    current = add_periods(plan.start_date, plan.frequency, index)
    steps = 0
    while steps < MAX_SIMULATION_STEPS:
        steps += 1
        if current > period_end:
            break
        if plan.max_occurrences and index >= plan.max_occurrences:
            break
        if plan.end_date and current > plan.end_date:
            break
        if current >= period_start:
            yield index, current
        if plan.frequency == Frequency.one_time:
            break
        index += 1
        current = add_periods(plan.start_date, plan.frequency, index)


@dataclass(frozen=True)
class Contribution:
    income: int = 0
    expense: int = 0

    @property
    def delta(self) -> int:
        return self.income - self.expense


def project_contribution(
    plan: RecurringPlan, period_start: date, period_end: date
) -> Contribution:
    hits = sum(1 for _ in iter_occurrences(plan, period_start, period_end))
    total = hits * plan.amount_cents
    if plan.type == TransactionType.income:
        return Contribution(income=total)
    return Contribution(expense=total)


@dataclass(frozen=True)
class FinancialSnapshot:
    current_balance: int
    projected_balance: int
    upcoming_income: int
    upcoming_expenses: int
    period_start: date
    period_end: date


def signed_amount(txn: Transaction) -> int:
    if txn.type == TransactionType.income:
        return txn.amount_cents
    return -txn.amount_cents


def build_snapshot(
    transactions: Iterable[Transaction],
    plans: Iterable[RecurringPlan],
    cycle_start_day: int,
    view_date: Optional[date] = None,
) -> FinancialSnapshot:
    view_date = view_date or local_today()
    current_balance = sum(signed_amount(txn) for txn in transactions)
    period = billing_period_for(view_date, cycle_start_day)

    upcoming_income = 0
    upcoming_expenses = 0
    for plan in plans:
        contribution = project_contribution(plan, period.start, period.end)
        upcoming_income += contribution.income
        upcoming_expenses += contribution.expense

    return FinancialSnapshot(
        current_balance=current_balance,
        projected_balance=current_balance + upcoming_income - upcoming_expenses,
        upcoming_income=upcoming_income,
        upcoming_expenses=upcoming_expenses,
        period_start=period.start,
        period_end=period.end,
    )
