from datetime import date

import insights
from insights import (
    EMPTY_MESSAGE,
    FAILURE_MESSAGE,
    MISSING_KEY_MESSAGE,
    InsightsService,
    build_prompt,
)
from models import Frequency, RecurringPlan, Transaction, TransactionType
from recurrence import FinancialSnapshot


def _inputs():
    transactions = [
        Transaction(
            id="t1",
            date=date(2024, 3, 2),
            description="Groceries",
            amount_cents=4599,
            type=TransactionType.expense,
            category="Food",
            is_paid=True,
        )
    ]
    plans = [
        RecurringPlan(
            id="p1",
            description="Rent",
            amount_cents=90000,
            type=TransactionType.expense,
            category="Housing",
            frequency=Frequency.monthly,
            start_date=date(2024, 3, 1),
            occurrences_generated=0,
        )
    ]
    snapshot = FinancialSnapshot(
        current_balance=100000,
        projected_balance=10000,
        upcoming_income=0,
        upcoming_expenses=90000,
        period_start=date(2024, 3, 1),
        period_end=date(2024, 3, 31),
    )
    return transactions, plans, snapshot


class _FakeResponse:
    def __init__(self, text):
        self.text = text


class _FakeModel:
    def __init__(self, model_name, generation_config=None, reply="- Spend less"):
        self.model_name = model_name
        self.reply = reply
        self.prompts = []

    def generate_content(self, prompt):
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return _FakeResponse(self.reply)


class _FakeGenai:
    def __init__(self, reply):
        self.reply = reply
        self.api_key = None
        self.models = []

    def configure(self, api_key):
        self.api_key = api_key

    def GenerativeModel(self, model_name, generation_config=None):
        model = _FakeModel(model_name, generation_config, self.reply)
        self.models.append(model)
        return model


def test_missing_key_short_circuits():
    service = InsightsService(None, "gemini-2.5-flash")
    assert service.generate(*_inputs()) == MISSING_KEY_MESSAGE


def test_prompt_carries_snapshot_and_records():
    prompt = build_prompt(*_inputs())
    assert '"balance": 1000.0' in prompt
    assert "2024-03-02: Groceries (45.99 expense) [Food]" in prompt
    assert "Rent (900.0 expense) Monthly" in prompt


def test_generate_returns_model_text(monkeypatch):
    fake = _FakeGenai("- Spend less on food")
    monkeypatch.setattr(insights, "genai", fake)
    service = InsightsService("key-123", "gemini-2.5-flash")

    assert service.generate(*_inputs()) == "- Spend less on food"
    assert fake.api_key == "key-123"
    assert fake.models[0].model_name == "gemini-2.5-flash"


def test_empty_reply(monkeypatch):
    monkeypatch.setattr(insights, "genai", _FakeGenai("  "))
    assert InsightsService("key", "m").generate(*_inputs()) == EMPTY_MESSAGE


def test_failure_is_logged_not_raised(monkeypatch, caplog):
    monkeypatch.setattr(insights, "genai", _FakeGenai(RuntimeError("quota")))

    assert InsightsService("key", "m").generate(*_inputs()) == FAILURE_MESSAGE
    assert "insights_failed" in caplog.text
