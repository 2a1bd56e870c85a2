from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import select

from models import Frequency, RecurringPlan, Tombstone, Transaction, TransactionType
from schemas import PlanIn, TransactionIn
from services import (
    AppStateService,
    CycleShiftRequired,
    OccurrenceTooFar,
    PlanExhausted,
    PlanService,
    SnapshotService,
    TransactionService,
)


def _plan_in(frequency: Frequency, start: date, **kwargs) -> PlanIn:
    values = dict(
        description="Rent",
        amount_cents=10000,
        type=TransactionType.expense,
        category="Housing",
        frequency=frequency,
        start_date=start,
    )
    values.update(kwargs)
    return PlanIn(**values)


def _march(session) -> None:
    AppStateService(session).set_billing_date(date(2024, 3, 1))


def test_applying_recurring_plan_consumes_one_occurrence(session):
    _march(session)
    plan = PlanService(session).create(_plan_in(Frequency.monthly, date(2024, 3, 10)))

    txn = PlanService(session).apply_now(plan.id)

    assert txn.date == date(2024, 3, 10)
    assert txn.description == "Rent (1)"
    assert txn.is_paid is False
    assert txn.related_plan_id == plan.id
    refreshed = session.get(RecurringPlan, plan.id)
    assert refreshed is not None
    assert refreshed.occurrences_generated == 1


def test_applying_one_time_plan_deletes_and_tombstones(session):
    _march(session)
    plan = PlanService(session).create(_plan_in(Frequency.one_time, date(2024, 3, 12)))
    plan_id = plan.id

    txn = PlanService(session).apply_now(plan_id)

    assert txn.description == "Rent"
    assert session.get(RecurringPlan, plan_id) is None
    assert session.get(Tombstone, plan_id) is not None


def test_next_period_occurrence_requires_decision(session):
    _march(session)
    plan = PlanService(session).create(_plan_in(Frequency.monthly, date(2024, 4, 5)))

    with pytest.raises(CycleShiftRequired) as exc_info:
        PlanService(session).apply_now(plan.id)
    assert exc_info.value.due_date == date(2024, 4, 5)
    assert session.scalars(select(Transaction)).all() == []


def test_keeping_cycle_applies_without_moving_it(session):
    _march(session)
    plan = PlanService(session).create(_plan_in(Frequency.monthly, date(2024, 4, 5)))

    PlanService(session).apply_now(plan.id, shift_cycle=False)

    state = AppStateService(session).state()
    assert state.cycle_start_day == 1
    assert state.view_date == date(2024, 3, 1)
    assert len(session.scalars(select(Transaction)).all()) == 1


def test_shifting_cycle_moves_cycle_to_due_date(session):
    _march(session)
    plan = PlanService(session).create(_plan_in(Frequency.monthly, date(2024, 4, 5)))

    PlanService(session).apply_now(plan.id, shift_cycle=True)

    state = AppStateService(session).state()
    assert state.cycle_start_day == 5
    assert state.view_date == date(2024, 4, 5)
    period = AppStateService(session).current_period()
    assert period.start == date(2024, 4, 5)


def test_occurrence_beyond_next_period_is_rejected(session):
    _march(session)
    plan = PlanService(session).create(_plan_in(Frequency.monthly, date(2024, 5, 2)))

    with pytest.raises(OccurrenceTooFar):
        PlanService(session).apply_now(plan.id, shift_cycle=True)
    assert session.get(RecurringPlan, plan.id).occurrences_generated == 0


def test_exhausted_plan_is_rejected_and_unchanged(session):
    _march(session)
    plan = PlanService(session).create(
        _plan_in(Frequency.monthly, date(2024, 1, 10), max_occurrences=3)
    )
    plan.occurrences_generated = 3
    session.commit()

    with pytest.raises(PlanExhausted, match="Max payments reached."):
        PlanService(session).apply_now(plan.id)
    assert session.get(RecurringPlan, plan.id).occurrences_generated == 3
    assert session.scalars(select(Transaction)).all() == []


def test_deleting_generated_transactions_floors_counter(session):
    _march(session)
    plans = PlanService(session)
    plan = plans.create(_plan_in(Frequency.monthly, date(2024, 3, 10)))
    first = plans.apply_now(plan.id)
    plan.occurrences_generated = 0
    session.commit()
    # a second transaction pointing at the same plan
    second = TransactionService(session).create(
        TransactionIn(
            date=date(2024, 3, 11),
            description="Rent extra",
            amount_cents=500,
            type=TransactionType.expense,
        )
    )
    second.related_plan_id = plan.id
    session.commit()

    TransactionService(session).delete(first.id)
    TransactionService(session).delete(second.id)

    assert session.get(RecurringPlan, plan.id).occurrences_generated == 0
    assert session.get(Tombstone, first.id) is not None
    assert session.get(Tombstone, second.id) is not None


def test_deleting_generated_transaction_restores_occurrence(session):
    _march(session)
    plans = PlanService(session)
    plan = plans.create(_plan_in(Frequency.monthly, date(2024, 3, 10)))
    txn = plans.apply_now(plan.id)

    TransactionService(session).delete(txn.id)

    assert session.get(RecurringPlan, plan.id).occurrences_generated == 0


def test_skip_occurrence_on_recurring_plan(session):
    _march(session)
    plan = PlanService(session).create(_plan_in(Frequency.weekly, date(2024, 3, 4)))

    PlanService(session).skip_occurrence(plan)

    assert session.get(RecurringPlan, plan.id).occurrences_generated == 1
    assert session.scalars(select(Transaction)).all() == []


def test_create_plan_rejects_end_before_start(session):
    with pytest.raises(ValueError):
        PlanService(session).create(
            _plan_in(
                Frequency.monthly, date(2024, 3, 10), end_date=date(2024, 3, 1)
            )
        )


def test_mutations_advance_dataset_stamp(session):
    state = AppStateService(session).state()
    before = state.last_modified
    TransactionService(session).create(
        TransactionIn(
            date=date(2024, 3, 11),
            description="Coffee",
            amount_cents=350,
            type=TransactionType.expense,
        )
    )
    assert AppStateService(session).state().last_modified >= before
    assert AppStateService(session).state().last_modified > 0


def test_snapshot_includes_unapplied_plans(session):
    AppStateService(session).set_billing_date(date(2024, 3, 1))
    TransactionService(session).create(
        TransactionIn(
            date=date(2024, 2, 28),
            description="Salary",
            amount_cents=250000,
            type=TransactionType.income,
            category="Salary",
        )
    )
    TransactionService(session).create(
        TransactionIn(
            date=date(2024, 3, 2),
            description="Groceries",
            amount_cents=5000,
            type=TransactionType.expense,
            category="Food",
        )
    )
    PlanService(session).create(_plan_in(Frequency.monthly, date(2024, 3, 10)))
    PlanService(session).create(
        _plan_in(
            Frequency.weekly,
            date(2024, 3, 4),
            description="Allowance",
            amount_cents=1000,
            type=TransactionType.income,
        )
    )

    snapshot = SnapshotService(session).build()

    assert snapshot.period_start == date(2024, 3, 1)
    assert snapshot.period_end == date(2024, 3, 31)
    assert snapshot.current_balance == 245000
    assert snapshot.upcoming_expenses == 10000
    # weekly from Mar 4: 4, 11, 18, 25
    assert snapshot.upcoming_income == 4000
    assert snapshot.projected_balance == 245000 + 4000 - 10000


def test_view_date_defaults_to_today_in_session_timezone(session):
    session.info["timezone"] = "Pacific/Kiritimati"
    expected = datetime.now(ZoneInfo("Pacific/Kiritimati")).date()
    assert AppStateService(session).view_date() == expected
