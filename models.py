import time
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def now_ms() -> int:
    return int(time.time() * 1000)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    one_time = "One-time"
    weekly = "Weekly"
    monthly = "Monthly"
    yearly = "Yearly"


FREQUENCY_ENUM = SAEnum(
    Frequency,
    name="frequency",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class PendingAction(str, Enum):
    paid = "paid"
    cancel = "cancel"
    move = "move"


class SyncStampMixin:
    last_modified: Mapped[int] = mapped_column(
        BigInteger, default=now_ms, nullable=False
    )


class Transaction(Base, SyncStampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category: Mapped[str] = mapped_column(
        String(100), nullable=False, default="Uncategorized"
    )
    is_paid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # weak reference, the plan may be gone
    related_plan_id: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_related_plan", "related_plan_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class RecurringPlan(Base, SyncStampMixin):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category: Mapped[str] = mapped_column(
        String(100), nullable=False, default="Uncategorized"
    )
    frequency: Mapped[Frequency] = mapped_column(FREQUENCY_ENUM, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    occurrences_generated: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    max_occurrences: Mapped[Optional[int]] = mapped_column(Integer)
    end_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_plans_amount_positive"),
        CheckConstraint(
            "occurrences_generated >= 0", name="ck_plans_occurrences_non_negative"
        ),
    )


class Tombstone(Base):
    __tablename__ = "tombstones"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    deleted_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class AppState(Base):
    __tablename__ = "app_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cycle_start_day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    view_date: Mapped[Optional[date]] = mapped_column(Date)
    last_modified: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_id: Mapped[Optional[str]] = mapped_column(String(200))
    last_synced_at: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "cycle_start_day BETWEEN 1 AND 31", name="ck_app_state_cycle_day"
        ),
    )


class PeriodTransition(Base):
    __tablename__ = "period_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    items: Mapped[list["PendingResolution"]] = relationship(
        "PendingResolution",
        back_populates="transition",
        cascade="all, delete-orphan",
        order_by="PendingResolution.due_date",
    )


class PendingResolution(Base):
    __tablename__ = "pending_resolutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transition_id: Mapped[int] = mapped_column(
        ForeignKey("period_transitions.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    transition: Mapped["PeriodTransition"] = relationship(
        "PeriodTransition", back_populates="items"
    )

    __table_args__ = (
        Index("ix_pending_resolutions_transition_plan", "transition_id", "plan_id"),
    )
