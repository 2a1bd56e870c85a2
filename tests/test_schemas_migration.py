from datetime import date
from decimal import Decimal

from models import Frequency, TransactionType
from recurrence import local_today
from schemas import PlanRecord, TransactionRecord, to_cents


def test_legacy_name_is_preferred_over_description():
    record = TransactionRecord.model_validate(
        {"id": "t1", "name": "Legacy", "description": "New", "date": "2024-01-02",
         "amount": 1, "type": "expense"}
    )
    assert record.description == "Legacy"
    assert "name" not in record.to_wire()


def test_missing_label_gets_placeholder():
    record = TransactionRecord.model_validate(
        {"id": "t1", "date": "2024-01-02", "amount": 1, "type": "expense"}
    )
    assert record.description == "Untitled"
    assert record.category == "Uncategorized"
    assert record.is_paid is True
    assert record.last_modified == 0


def test_corrupt_date_falls_back_to_today():
    record = TransactionRecord.model_validate(
        {"id": "t1", "description": "x", "date": "31/02/2024", "amount": 1,
         "type": "income"}
    )
    assert record.date == local_today()
    assert record.type == TransactionType.income


def test_missing_start_date_uses_today_from_context():
    record = PlanRecord.model_validate(
        {"id": "p1", "description": "Rent", "amount": 5, "type": "expense",
         "frequency": "Monthly", "startDate": ""},
        context={"today": date(2031, 7, 4)},
    )
    assert record.start_date == date(2031, 7, 4)


def test_negative_amounts_keep_magnitude():
    record = TransactionRecord.model_validate(
        {"id": "t1", "description": "x", "date": "2024-01-02", "amount": -12.345,
         "type": "expense"}
    )
    assert record.amount_cents == 1235
    assert record.amount == 12.35


def test_to_cents_rounds_half_up():
    assert to_cents("0.005") == 1
    assert to_cents(Decimal("19.994")) == 1999
    assert to_cents("nonsense") == 0


def test_plan_defaults_and_frequency_aliases():
    record = PlanRecord.model_validate(
        {"id": "p1", "name": "Netflix", "amount": 15.99, "type": "expense",
         "frequency": "monthly", "startDate": "2024-01-15", "maxOccurrences": 0,
         "endDate": "garbage"}
    )
    assert record.description == "Netflix"
    assert record.frequency == Frequency.monthly
    assert record.occurrences_generated == 0
    assert record.max_occurrences is None
    assert record.end_date is None
    assert record.start_date == date(2024, 1, 15)


def test_unknown_frequency_becomes_one_time():
    record = PlanRecord.model_validate(
        {"id": "p1", "description": "x", "amount": 1, "type": "expense",
         "frequency": "Fortnightly", "startDate": "2024-01-15"}
    )
    assert record.frequency == Frequency.one_time


def test_wire_format_is_camel_case():
    record = PlanRecord.model_validate(
        {"id": "p1", "description": "x", "amount": 1, "type": "expense",
         "frequency": "Weekly", "startDate": "2024-01-15", "occurrencesGenerated": 2,
         "lastModified": 5}
    )
    wire = record.to_wire()
    assert wire["startDate"] == "2024-01-15"
    assert wire["occurrencesGenerated"] == 2
    assert wire["lastModified"] == 5
    assert wire["frequency"] == "Weekly"
