from datetime import date

import pytest

from models import Frequency, RecurringPlan, TransactionType
from recurrence import (
    MAX_SIMULATION_STEPS,
    InvalidPlanDate,
    add_periods,
    is_exhausted,
    iter_occurrences,
    next_due_date,
    project_contribution,
)


def _plan(
    frequency: Frequency,
    start: date,
    generated: int = 0,
    max_occurrences=None,
    end_date=None,
    amount_cents: int = 10000,
    type: TransactionType = TransactionType.expense,
) -> RecurringPlan:
    return RecurringPlan(
        id="plan-1",
        description="Rent",
        amount_cents=amount_cents,
        type=type,
        category="Housing",
        frequency=frequency,
        start_date=start,
        occurrences_generated=generated,
        max_occurrences=max_occurrences,
        end_date=end_date,
        last_modified=0,
    )


def test_monthly_step_snaps_to_end_of_leap_february():
    assert add_periods("2024-01-31", Frequency.monthly, 1) == date(2024, 2, 29)


def test_monthly_step_snaps_to_end_of_regular_february():
    assert add_periods("2023-01-31", Frequency.monthly, 1) == date(2023, 2, 28)


def test_monthly_step_keeps_anchor_day_after_short_month():
    # each count is measured from the anchor, not from the previous result
    assert add_periods(date(2024, 1, 31), Frequency.monthly, 2) == date(2024, 3, 31)


def test_weekly_and_yearly_steps():
    assert add_periods(date(2024, 1, 1), Frequency.weekly, 3) == date(2024, 1, 22)
    assert add_periods(date(2024, 2, 29), Frequency.yearly, 1) == date(2025, 2, 28)
    assert add_periods(date(2024, 2, 29), Frequency.yearly, 4) == date(2028, 2, 29)


def test_one_time_never_moves():
    assert add_periods(date(2024, 5, 5), Frequency.one_time, 7) == date(2024, 5, 5)


def test_unparseable_anchor_fails_loudly():
    with pytest.raises(InvalidPlanDate):
        add_periods("not-a-date", Frequency.monthly, 1)


def test_next_due_date_follows_consumed_occurrences():
    plan = _plan(Frequency.monthly, date(2024, 1, 15), generated=2)
    assert next_due_date(plan) == date(2024, 3, 15)


def test_exhausted_by_cap_and_by_end_date():
    assert is_exhausted(_plan(Frequency.monthly, date(2024, 1, 1), 3, max_occurrences=3))
    assert is_exhausted(
        _plan(Frequency.monthly, date(2024, 1, 1), 2, end_date=date(2024, 2, 15))
    )
    assert not is_exhausted(
        _plan(Frequency.monthly, date(2024, 1, 1), 1, end_date=date(2024, 2, 1))
    )


def test_occurrences_inside_window_only():
    plan = _plan(Frequency.weekly, date(2024, 3, 1))
    hits = list(iter_occurrences(plan, date(2024, 3, 5), date(2024, 3, 20)))
    assert hits == [(1, date(2024, 3, 8)), (2, date(2024, 3, 15))]


def test_end_date_is_inclusive():
    plan = _plan(Frequency.weekly, date(2024, 3, 1), end_date=date(2024, 3, 15))
    hits = [d for _, d in iter_occurrences(plan, date(2024, 3, 1), date(2024, 3, 31))]
    assert hits == [date(2024, 3, 1), date(2024, 3, 8), date(2024, 3, 15)]


def test_capped_plan_contributes_nothing():
    plan = _plan(Frequency.monthly, date(2024, 1, 1), generated=3, max_occurrences=3)
    contribution = project_contribution(plan, date(2024, 1, 1), date(2024, 12, 31))
    assert contribution.income == 0
    assert contribution.expense == 0


def test_far_past_weekly_anchor_is_truncated():
    plan = _plan(Frequency.weekly, date(1990, 1, 1))
    hits = list(iter_occurrences(plan, date(2024, 3, 1), date(2024, 3, 31)))
    # the simulation gives up long before reaching 2024
    assert hits == []

    near = _plan(Frequency.weekly, date(2024, 1, 1))
    wide = list(iter_occurrences(near, date(2024, 1, 1), date(2030, 1, 1)))
    assert len(wide) == MAX_SIMULATION_STEPS


def test_single_monthly_occurrence_contributes_amount():
    plan = _plan(
        Frequency.monthly,
        date(2024, 3, 10),
        amount_cents=10000,
        type=TransactionType.income,
    )
    contribution = project_contribution(plan, date(2024, 3, 1), date(2024, 3, 31))
    assert contribution.income == 10000
    assert contribution.expense == 0
    assert contribution.delta == 10000


def test_one_time_plan_counts_once():
    plan = _plan(Frequency.one_time, date(2024, 3, 10))
    hits = list(iter_occurrences(plan, date(2024, 3, 1), date(2024, 3, 31)))
    assert hits == [(0, date(2024, 3, 10))]
