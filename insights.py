import json
import logging
from typing import Optional, Sequence

import google.generativeai as genai

from models import RecurringPlan, Transaction
from recurrence import FinancialSnapshot
from schemas import from_cents

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "API Key not configured. AI features are unavailable."
FAILURE_MESSAGE = (
    "Unable to generate insights at this moment. "
    "Please check your network or API quota."
)
EMPTY_MESSAGE = "No insights generated."
RECENT_TRANSACTION_LIMIT = 40


def build_prompt(
    transactions: Sequence[Transaction],
    plans: Sequence[RecurringPlan],
    snapshot: FinancialSnapshot,
) -> str:
    summary = {
        "balance": from_cents(snapshot.current_balance),
        "projected": from_cents(snapshot.projected_balance),
        "income": from_cents(snapshot.upcoming_income),
        "expenses": from_cents(snapshot.upcoming_expenses),
        "period": f"{snapshot.period_start.isoformat()} - {snapshot.period_end.isoformat()}",
    }
    recent = [
        f"{txn.date.isoformat()}: {txn.description} "
        f"({from_cents(txn.amount_cents)} {txn.type.value}) [{txn.category}]"
        for txn in transactions[:RECENT_TRANSACTION_LIMIT]
    ]
    recurring = [
        f"{plan.description} ({from_cents(plan.amount_cents)} {plan.type.value}) "
        f"{plan.frequency.value}"
        for plan in plans
    ]
    return f"""You are a helpful financial assistant for the 'GridFinance' app.

Current billing period snapshot:
{json.dumps(summary, indent=2)}

Recent transactions (last {RECENT_TRANSACTION_LIMIT}):
{json.dumps(recent, indent=2)}

Recurring plans:
{json.dumps(recurring, indent=2)}

Please provide 3-4 concise, actionable insights or observations about this financial situation.
Focus on:
1. Unusual spending or high-frequency categories.
2. Savings opportunities.
3. Upcoming risks based on the plans.

Format the output as a clean Markdown list. Keep it brief."""


class InsightsService:
    def __init__(self, api_key: Optional[str], model_name: str) -> None:
        self.api_key = api_key
        self.model_name = model_name
        self._model = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_model(self):
        if self._model is None:
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(
                model_name=self.model_name,
                generation_config={"temperature": 0.4, "max_output_tokens": 1024},
            )
        return self._model

    def generate(
        self,
        transactions: Sequence[Transaction],
        plans: Sequence[RecurringPlan],
        snapshot: FinancialSnapshot,
    ) -> str:
        if not self.configured:
            return MISSING_KEY_MESSAGE
        prompt = build_prompt(transactions, plans, snapshot)
        try:
            response = self._get_model().generate_content(prompt)
            text = (response.text or "").strip()
        except Exception:
            logger.exception("insights_failed: model=%s", self.model_name)
            return FAILURE_MESSAGE
        return text or EMPTY_MESSAGE
