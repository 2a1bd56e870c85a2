from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from rapidfuzz.distance import Levenshtein

from config import DEFAULT_TIMEZONE
from models import (
    AppState,
    Frequency,
    PendingAction,
    PendingResolution,
    PeriodTransition,
    RecurringPlan,
    Tombstone,
    Transaction,
    now_ms,
)
from periods import Period, billing_period_for, following_period
from recurrence import (
    FinancialSnapshot,
    build_snapshot,
    is_exhausted,
    local_today,
    next_due_date,
)
from schemas import (
    DEFAULT_CATEGORY,
    Dataset,
    PlanIn,
    PlanRecord,
    TransactionIn,
    TransactionRecord,
    from_cents,
)

logger = logging.getLogger(__name__)


class RecordNotFound(ValueError):
    pass


class PlanExhausted(ValueError):
    pass


class OccurrenceTooFar(ValueError):
    pass


class CycleShiftRequired(ValueError):
    def __init__(self, plan_id: str, due_date: date) -> None:
        super().__init__(
            f"Payment on {due_date.isoformat()} falls in the next billing cycle"
        )
        self.plan_id = plan_id
        self.due_date = due_date


class TransitionNotFound(ValueError):
    pass


def new_record_id() -> str:
    return uuid.uuid4().hex


def get_app_state(session: Session) -> AppState:
    state = session.get(AppState, 1)
    if state is None:
        state = AppState(
            id=1,
            cycle_start_day=1,
            last_modified=0,
            sync_enabled=False,
            last_synced_at=0,
        )
        session.add(state)
        session.flush()
    return state


def session_today(session: Session) -> date:
    return local_today(session.info.get("timezone", DEFAULT_TIMEZONE))


def touch_dataset(session: Session, stamp: int) -> None:
    state = get_app_state(session)
    state.last_modified = max(state.last_modified or 0, stamp)


def add_tombstone(session: Session, record_id: str, stamp: int) -> None:
    existing = session.get(Tombstone, record_id)
    if existing is None:
        session.add(Tombstone(record_id=record_id, deleted_at=stamp))
    elif stamp > existing.deleted_at:
        existing.deleted_at = stamp


def resolve_category_label(session: Session, raw: Optional[str]) -> str:
    """Snap a free-text category onto a label already in use.

    Case-insensitive exact matches win, then a unique label within one edit.
    Anything else is kept as typed.
    """
    label = (raw or "").strip()
    if not label:
        return DEFAULT_CATEGORY
    known = set(session.scalars(select(Transaction.category).distinct()).all())
    known.update(session.scalars(select(RecurringPlan.category).distinct()).all())
    input_lower = label.lower()
    for name in sorted(known):
        if name.lower() == input_lower:
            return name

    best_distance: Optional[int] = None
    best: list[str] = []
    for name in sorted(known):
        dist = int(Levenshtein.distance(input_lower, name.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [name]
        elif dist == best_distance:
            best.append(name)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return label


class AppStateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def state(self) -> AppState:
        return get_app_state(self.session)

    def view_date(self) -> date:
        return self.state().view_date or session_today(self.session)

    def current_period(self) -> Period:
        state = self.state()
        return billing_period_for(self.view_date(), state.cycle_start_day)

    def set_billing_date(self, target: date, *, commit: bool = True) -> None:
        state = self.state()
        stamp = now_ms()
        state.cycle_start_day = target.day
        state.view_date = target
        touch_dataset(self.session, stamp)
        if commit:
            self.session.commit()

    def update_sync_config(self, enabled: bool, sync_id: Optional[str]) -> bool:
        """Returns True when local data was cleared for a new sync id."""
        state = self.state()
        clean_id = (sync_id or "").strip() or None
        if enabled and not clean_id:
            raise ValueError("A sync id is required to enable sync")
        cleared = False
        if state.sync_id and clean_id != state.sync_id:
            # never mix two sync partitions in one local store
            DatasetService(self.session).clear(commit=False)
            cleared = True
        state.sync_enabled = enabled
        state.sync_id = clean_id
        state.last_synced_at = 0
        self.session.commit()
        return cleared


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self, limit: Optional[int] = None) -> list[Transaction]:
        stmt = select(Transaction).order_by(Transaction.date.desc(), Transaction.id)
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: str) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise RecordNotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        stamp = now_ms()
        txn = Transaction(
            id=new_record_id(),
            date=data.date,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            type=data.type,
            category=resolve_category_label(self.session, data.category),
            is_paid=data.is_paid,
            last_modified=stamp,
        )
        self.session.add(txn)
        touch_dataset(self.session, stamp)
        self.session.commit()
        return txn

    def update(self, transaction_id: str, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        stamp = now_ms()
        txn.date = data.date
        txn.description = data.description.strip()
        txn.amount_cents = data.amount_cents
        txn.type = data.type
        txn.category = resolve_category_label(self.session, data.category)
        txn.is_paid = data.is_paid
        txn.last_modified = stamp
        touch_dataset(self.session, stamp)
        self.session.commit()
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        stamp = now_ms()
        if txn.related_plan_id:
            plan = self.session.get(RecurringPlan, txn.related_plan_id)
            if plan is not None:
                # the occurrence is no longer consumed
                plan.occurrences_generated = max(0, plan.occurrences_generated - 1)
                plan.last_modified = stamp
        add_tombstone(self.session, txn.id, stamp)
        self.session.delete(txn)
        touch_dataset(self.session, stamp)
        self.session.commit()


class PlanService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[RecurringPlan]:
        stmt = select(RecurringPlan).order_by(
            RecurringPlan.start_date, RecurringPlan.id
        )
        return self.session.scalars(stmt).all()

    def get(self, plan_id: str) -> RecurringPlan:
        plan = self.session.get(RecurringPlan, plan_id)
        if not plan:
            raise RecordNotFound("Plan not found")
        return plan

    def create(self, data: PlanIn, *, commit: bool = True) -> RecurringPlan:
        if data.end_date and data.end_date < data.start_date:
            raise ValueError("End date must not be before start date")
        stamp = now_ms()
        plan = RecurringPlan(
            id=new_record_id(),
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            type=data.type,
            category=resolve_category_label(self.session, data.category),
            frequency=data.frequency,
            start_date=data.start_date,
            occurrences_generated=0,
            max_occurrences=data.max_occurrences,
            end_date=data.end_date,
            last_modified=stamp,
        )
        self.session.add(plan)
        touch_dataset(self.session, stamp)
        if commit:
            self.session.commit()
        return plan

    def update(self, plan_id: str, data: PlanIn) -> RecurringPlan:
        plan = self.get(plan_id)
        if data.end_date and data.end_date < data.start_date:
            raise ValueError("End date must not be before start date")
        stamp = now_ms()
        plan.description = data.description.strip()
        plan.amount_cents = data.amount_cents
        plan.type = data.type
        plan.category = resolve_category_label(self.session, data.category)
        plan.frequency = data.frequency
        plan.start_date = data.start_date
        plan.max_occurrences = data.max_occurrences
        plan.end_date = data.end_date
        plan.last_modified = stamp
        touch_dataset(self.session, stamp)
        self.session.commit()
        return plan

    def delete(self, plan_id: str, *, commit: bool = True) -> None:
        plan = self.get(plan_id)
        stamp = now_ms()
        add_tombstone(self.session, plan.id, stamp)
        self.session.delete(plan)
        touch_dataset(self.session, stamp)
        if commit:
            self.session.commit()

    def skip_occurrence(self, plan: RecurringPlan, *, commit: bool = True) -> None:
        """Mark the next occurrence as used without any cashflow."""
        if plan.frequency == Frequency.one_time:
            self.delete(plan.id, commit=commit)
            return
        stamp = now_ms()
        plan.occurrences_generated += 1
        plan.last_modified = stamp
        touch_dataset(self.session, stamp)
        if commit:
            self.session.commit()

    def apply(
        self, plan: RecurringPlan, apply_date: date, *, commit: bool = True
    ) -> Transaction:
        stamp = now_ms()
        if plan.frequency == Frequency.one_time:
            description = plan.description
        else:
            description = f"{plan.description} ({plan.occurrences_generated + 1})"
        txn = Transaction(
            id=new_record_id(),
            date=apply_date,
            description=description[:200],
            amount_cents=plan.amount_cents,
            type=plan.type,
            category=plan.category,
            is_paid=False,
            related_plan_id=plan.id,
            last_modified=stamp,
        )
        self.session.add(txn)
        if plan.frequency == Frequency.one_time:
            add_tombstone(self.session, plan.id, stamp)
            self.session.delete(plan)
        else:
            plan.occurrences_generated += 1
            plan.last_modified = stamp
        touch_dataset(self.session, stamp)
        if commit:
            self.session.commit()
        logger.info(
            "plan_applied: plan=%s transaction=%s date=%s",
            txn.related_plan_id,
            txn.id,
            apply_date.isoformat(),
        )
        return txn

    def apply_now(
        self, plan_id: str, shift_cycle: Optional[bool] = None
    ) -> Transaction:
        """Materialize the next occurrence of a plan.

        Occurrences in the current billing period are applied directly.
        Occurrences in the following period need a decision: ``shift_cycle``
        True moves the billing cycle to start on the due date first, False
        keeps the cycle. Anything later is rejected.
        """
        plan = self.get(plan_id)
        if is_exhausted(plan):
            raise PlanExhausted("Max payments reached.")

        due = next_due_date(plan)
        app_state = AppStateService(self.session)
        current = app_state.current_period()
        following = following_period(current, app_state.state().cycle_start_day)

        if due > following.end:
            raise OccurrenceTooFar(f"Too far: {due.isoformat()}")
        if due > current.end:
            if shift_cycle is None:
                raise CycleShiftRequired(plan.id, due)
            if shift_cycle:
                app_state.set_billing_date(due, commit=False)
        return self.apply(plan, due)


class SnapshotService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def build(self, view_date: Optional[date] = None) -> FinancialSnapshot:
        state_service = AppStateService(self.session)
        state = state_service.state()
        return build_snapshot(
            TransactionService(self.session).list(),
            PlanService(self.session).list(),
            state.cycle_start_day,
            view_date or state_service.view_date(),
        )


class PeriodTransitionService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.state_service = AppStateService(session)
        self.plans = PlanService(session)

    def current(self) -> Optional[PeriodTransition]:
        stmt = select(PeriodTransition).order_by(PeriodTransition.id.desc()).limit(1)
        return self.session.scalar(stmt)

    def pending_items_for(self, period: Period) -> list[tuple[RecurringPlan, date]]:
        """Plans still owing an occurrence in ``period`` or any earlier one."""
        items: list[tuple[RecurringPlan, date]] = []
        for plan in self.plans.list():
            if is_exhausted(plan):
                continue
            due = next_due_date(plan)
            if due <= period.end:
                items.append((plan, due))
        items.sort(key=lambda item: (item[1], item[0].id))
        return items

    def change_view_date(self, target: date) -> Optional[PeriodTransition]:
        """Move the billing view to start on ``target``.

        Returns the pending transition when outstanding items must be
        resolved first, otherwise applies the change and returns None.
        """
        current = self.state_service.current_period()
        new_period = billing_period_for(target, target.day)
        self._discard_pending()

        if new_period.start <= current.start:
            self.state_service.set_billing_date(target)
            return None

        pending = self.pending_items_for(current)
        if not pending:
            self.state_service.set_billing_date(target)
            return None

        transition = PeriodTransition(target_date=target)
        transition.items = [
            PendingResolution(plan_id=plan.id, due_date=due) for plan, due in pending
        ]
        self.session.add(transition)
        self.session.commit()
        logger.info(
            "period_transition_started: target=%s pending=%d",
            target.isoformat(),
            len(pending),
        )
        return transition

    def _require_current(self) -> PeriodTransition:
        transition = self.current()
        if transition is None:
            raise TransitionNotFound("No period change is pending")
        return transition

    def resolve(self, plan_id: str, action: PendingAction) -> None:
        transition = self._require_current()
        item = next((i for i in transition.items if i.plan_id == plan_id), None)
        if item is None:
            raise TransitionNotFound("Item is not pending")

        transition.items.remove(item)
        plan = self.session.get(RecurringPlan, plan_id)
        if plan is None:
            # removed meanwhile, for example by a sync
            self.session.commit()
            return
        if is_exhausted(plan) or next_due_date(plan) != item.due_date:
            # the occurrence was settled elsewhere while the change was pending
            self.session.commit()
            logger.info(
                "period_item_stale: plan=%s due=%s", plan_id, item.due_date.isoformat()
            )
            return

        action = PendingAction(action)
        if action == PendingAction.paid:
            self.plans.apply(plan, item.due_date, commit=False)
        elif action == PendingAction.cancel:
            self.plans.skip_occurrence(plan, commit=False)
        else:
            self._move(plan, transition.target_date)
        self.session.commit()
        logger.info(
            "period_item_resolved: plan=%s action=%s", plan_id, action.value
        )

    def _move(self, plan: RecurringPlan, target: date) -> None:
        stamp = now_ms()
        if plan.frequency == Frequency.one_time:
            plan.start_date = target
            plan.last_modified = stamp
            touch_dataset(self.session, stamp)
            return
        self.plans.skip_occurrence(plan, commit=False)
        self.plans.create(
            PlanIn(
                description=plan.description,
                amount_cents=plan.amount_cents,
                type=plan.type,
                category=plan.category,
                frequency=Frequency.one_time,
                start_date=target,
            ),
            commit=False,
        )

    def finish(self) -> date:
        transition = self._require_current()
        target = transition.target_date
        abandoned = len(transition.items)
        self.session.delete(transition)
        self.state_service.set_billing_date(target, commit=False)
        self.session.commit()
        logger.info(
            "period_transition_finished: target=%s abandoned=%d",
            target.isoformat(),
            abandoned,
        )
        return target

    def cancel(self) -> None:
        transition = self._require_current()
        self.session.delete(transition)
        self.session.commit()

    def _discard_pending(self) -> None:
        self.session.execute(delete(PendingResolution))
        self.session.execute(delete(PeriodTransition))
        self.session.flush()


class DatasetService:
    """Reads and overwrites the whole local dataset in its wire shape."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def load(self) -> Dataset:
        state = get_app_state(self.session)
        transactions = self.session.scalars(
            select(Transaction).order_by(Transaction.id)
        ).all()
        plans = self.session.scalars(
            select(RecurringPlan).order_by(RecurringPlan.id)
        ).all()
        tombstones = self.session.scalars(select(Tombstone)).all()
        return Dataset(
            transactions=[
                TransactionRecord(
                    id=txn.id,
                    date=txn.date,
                    description=txn.description,
                    amount=from_cents(txn.amount_cents),
                    type=txn.type,
                    category=txn.category,
                    is_paid=txn.is_paid,
                    related_plan_id=txn.related_plan_id,
                    last_modified=txn.last_modified,
                )
                for txn in transactions
            ],
            plans=[
                PlanRecord(
                    id=plan.id,
                    description=plan.description,
                    amount=from_cents(plan.amount_cents),
                    type=plan.type,
                    category=plan.category,
                    frequency=plan.frequency,
                    start_date=plan.start_date,
                    occurrences_generated=plan.occurrences_generated,
                    max_occurrences=plan.max_occurrences,
                    end_date=plan.end_date,
                    last_modified=plan.last_modified,
                )
                for plan in plans
            ],
            cycle_start_day=state.cycle_start_day,
            deleted_ids={t.record_id: t.deleted_at for t in tombstones},
            last_modified=state.last_modified,
        )

    def replace(self, dataset: Dataset, *, commit: bool = True) -> None:
        self.session.execute(delete(Transaction))
        self.session.execute(delete(RecurringPlan))
        self.session.execute(delete(Tombstone))
        self.session.flush()

        for record in dataset.transactions:
            self.session.add(
                Transaction(
                    id=record.id,
                    date=record.date,
                    description=record.description,
                    amount_cents=record.amount_cents,
                    type=record.type,
                    category=record.category,
                    is_paid=record.is_paid,
                    related_plan_id=record.related_plan_id,
                    last_modified=record.last_modified,
                )
            )
        for record in dataset.plans:
            self.session.add(
                RecurringPlan(
                    id=record.id,
                    description=record.description,
                    amount_cents=record.amount_cents,
                    type=record.type,
                    category=record.category,
                    frequency=record.frequency,
                    start_date=record.start_date,
                    occurrences_generated=record.occurrences_generated,
                    max_occurrences=record.max_occurrences,
                    end_date=record.end_date,
                    last_modified=record.last_modified,
                )
            )
        for record_id, deleted_at in dataset.deleted_ids.items():
            self.session.add(Tombstone(record_id=record_id, deleted_at=deleted_at))

        state = get_app_state(self.session)
        state.cycle_start_day = dataset.cycle_start_day
        state.last_modified = dataset.last_modified
        if commit:
            self.session.commit()

    def clear(self, *, commit: bool = True) -> None:
        self.session.execute(delete(PendingResolution))
        self.session.execute(delete(PeriodTransition))
        self.replace(Dataset(cycle_start_day=1, last_modified=0), commit=False)
        state = get_app_state(self.session)
        state.view_date = None
        if commit:
            self.session.commit()

    def counts(self) -> dict[str, int]:
        return {
            "transactions": self.session.scalar(select(func.count(Transaction.id)))
            or 0,
            "plans": self.session.scalar(select(func.count(RecurringPlan.id))) or 0,
            "tombstones": self.session.scalar(select(func.count(Tombstone.record_id)))
            or 0,
        }
