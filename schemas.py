import logging
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, model_validator
from pydantic.alias_generators import to_camel

from models import Frequency, PendingAction, TransactionType
from recurrence import InvalidPlanDate, local_today, parse_plan_date

logger = logging.getLogger(__name__)

PLACEHOLDER_DESCRIPTION = "Untitled"
DEFAULT_CATEGORY = "Uncategorized"
BACKUP_VERSION = 1

_FREQUENCY_ALIASES = {
    "one-time": Frequency.one_time,
    "one_time": Frequency.one_time,
    "onetime": Frequency.one_time,
    "once": Frequency.one_time,
    "weekly": Frequency.weekly,
    "monthly": Frequency.monthly,
    "yearly": Frequency.yearly,
    "annual": Frequency.yearly,
}


def to_cents(amount: Any) -> int:
    try:
        value = Decimal(str(amount))
    except Exception:
        return 0
    if not value.is_finite():
        return 0
    return abs(int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def from_cents(cents: int) -> float:
    return float(Decimal(cents) / 100)


class TransactionIn(BaseModel):
    date: date
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    category: Optional[str] = Field(default=None, max_length=100)
    is_paid: bool = True


class PlanIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    type: TransactionType
    category: Optional[str] = Field(default=None, max_length=100)
    frequency: Frequency
    start_date: date
    max_occurrences: Optional[int] = Field(default=None, gt=0)
    end_date: Optional[date] = None


class ViewDateIn(BaseModel):
    date: date


class ResolveIn(BaseModel):
    action: PendingAction


class ApplyNowIn(BaseModel):
    shift_cycle: Optional[bool] = None


class SyncConfigIn(BaseModel):
    enabled: bool
    sync_id: Optional[str] = Field(default=None, max_length=200)


def _context_today(info: ValidationInfo) -> date:
    # callers pass {"today": ...} resolved in their configured timezone
    today = (info.context or {}).get("today")
    return today or local_today()


def _coerce_date(
    value: Any, field: str, record_id: Any, info: ValidationInfo
) -> date:
    if value in (None, ""):
        logger.warning("record %s missing %s, using today", record_id, field)
        return _context_today(info)
    try:
        return parse_plan_date(value)
    except InvalidPlanDate:
        logger.warning(
            "record %s has corrupt %s %r, using today", record_id, field, value
        )
        return _context_today(info)


def _coerce_label(data: dict[str, Any]) -> str:
    # legacy records carried the label as "name"; it wins over "description"
    legacy = data.pop("name", None)
    for candidate in (legacy, data.get("description")):
        if candidate is not None and str(candidate).strip():
            return str(candidate).strip()[:200]
    return PLACEHOLDER_DESCRIPTION


def _coerce_category(value: Any) -> str:
    if value is None or not str(value).strip():
        return DEFAULT_CATEGORY
    return str(value).strip()[:100]


def _coerce_type(value: Any) -> str:
    if isinstance(value, TransactionType):
        return value.value
    raw = str(value or "").strip().lower()
    if raw in (TransactionType.income.value, TransactionType.expense.value):
        return raw
    return TransactionType.expense.value


def _coerce_non_negative(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TransactionRecord(WireModel):
    id: str
    date: date
    description: str
    amount: float
    type: TransactionType
    category: str
    is_paid: bool = True
    related_plan_id: Optional[str] = None
    last_modified: int = 0

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)

    @model_validator(mode="before")
    @classmethod
    def _migrate(cls, data: Any, info: ValidationInfo) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        record_id = data.get("id")
        data["description"] = _coerce_label(data)
        data["category"] = _coerce_category(data.get("category"))
        data["type"] = _coerce_type(data.get("type"))
        data["date"] = _coerce_date(data.get("date"), "date", record_id, info)
        data["amount"] = from_cents(to_cents(data.get("amount", 0)))
        paid = data.pop("isPaid", data.get("is_paid"))
        data["is_paid"] = True if paid is None else bool(paid)
        modified = data.pop("lastModified", data.get("last_modified"))
        data["last_modified"] = _coerce_non_negative(modified)
        return data


class PlanRecord(WireModel):
    id: str
    description: str
    amount: float
    type: TransactionType
    category: str
    frequency: Frequency
    start_date: date
    occurrences_generated: int = 0
    max_occurrences: Optional[int] = None
    end_date: Optional[date] = None
    last_modified: int = 0

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)

    @model_validator(mode="before")
    @classmethod
    def _migrate(cls, data: Any, info: ValidationInfo) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        record_id = data.get("id")
        data["description"] = _coerce_label(data)
        data["category"] = _coerce_category(data.get("category"))
        data["type"] = _coerce_type(data.get("type"))
        data["amount"] = from_cents(to_cents(data.get("amount", 0)))

        raw_frequency = data.get("frequency")
        if isinstance(raw_frequency, Frequency):
            frequency = raw_frequency
        else:
            raw = str(raw_frequency or "").strip()
            try:
                frequency = Frequency(raw)
            except ValueError:
                frequency = _FREQUENCY_ALIASES.get(raw.lower(), Frequency.one_time)
        data["frequency"] = frequency

        start = data.pop("startDate", data.get("start_date"))
        data["start_date"] = _coerce_date(start, "startDate", record_id, info)

        generated = data.pop("occurrencesGenerated", data.get("occurrences_generated"))
        data["occurrences_generated"] = _coerce_non_negative(generated)

        cap = data.pop("maxOccurrences", data.get("max_occurrences"))
        cap = _coerce_non_negative(cap)
        data["max_occurrences"] = cap or None

        end = data.pop("endDate", data.get("end_date"))
        if end in (None, ""):
            data["end_date"] = None
        else:
            try:
                data["end_date"] = parse_plan_date(end)
            except InvalidPlanDate:
                logger.warning(
                    "plan %s has corrupt endDate %r, dropping it", record_id, end
                )
                data["end_date"] = None

        modified = data.pop("lastModified", data.get("last_modified"))
        data["last_modified"] = _coerce_non_negative(modified)
        return data


class Dataset(WireModel):
    transactions: list[TransactionRecord] = Field(default_factory=list)
    plans: list[PlanRecord] = Field(default_factory=list)
    cycle_start_day: int = Field(default=1, ge=1, le=31)
    deleted_ids: dict[str, int] = Field(default_factory=dict)
    last_modified: int = 0


class BackupDocument(WireModel):
    transactions: list[TransactionRecord]
    plans: list[PlanRecord]
    cycle_start_day: int = Field(default=1, ge=1, le=31)
    deleted_ids: dict[str, int] = Field(default_factory=dict)
    export_date: Optional[datetime] = None
    version: int = BACKUP_VERSION

    @model_validator(mode="before")
    @classmethod
    def _defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        day = data.pop("cycleStartDay", data.get("cycle_start_day"))
        try:
            day = int(day) if day else 1
        except (TypeError, ValueError):
            day = 1
        data["cycle_start_day"] = day if 1 <= day <= 31 else 1
        deleted = data.pop("deletedIds", data.get("deleted_ids"))
        data["deleted_ids"] = deleted if isinstance(deleted, dict) else {}
        return data
