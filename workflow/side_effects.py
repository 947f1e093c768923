# workflow/side_effects.py
"""Side-effect dispatcher.

Hooks are registered per (kind, to_status) and run by the engine only after
its compare-and-swap write has committed. Each hook reports whether it has
already run for a record (its completion marker) and returns the marker
patch to store once it succeeds.
"""

from __future__ import annotations

import logging
from datetime import datetime

from services.finance_ledger import LedgerEntry

logger = logging.getLogger(__name__)

# expense category -> ledger category
EXPENSE_LEDGER_CATEGORIES = {
    "travel": "Travel Expenses",
    "meals": "Meal Expenses",
    "accommodation": "Accommodation",
    "transport": "Transportation",
    "materials": "Materials & Supplies",
    "other": "Staff Expenses",
}
DEFAULT_LEDGER_CATEGORY = "Staff Expenses"


class SideEffectDispatcher:
    def __init__(self):
        self._hooks = {}

    def register(self, kind: str, to_status: str, hook):
        self._hooks.setdefault((kind, to_status), []).append(hook)
        return hook

    def hooks_for(self, kind: str, to_status: str) -> list:
        return list(self._hooks.get((kind, to_status), ()))

    def pending_hooks(self, record) -> list:
        return [h for h in self.hooks_for(record.kind, record.status) if not h.is_done(record)]


class ExpenseLedgerHook:
    """task_expense approved -> one finance ledger entry."""

    name = "finance_ledger"

    def __init__(self, ledger, store):
        self.ledger = ledger
        self.store = store

    @staticmethod
    def reference_for(record) -> str:
        return f"EXP-{record.id}"

    def is_done(self, record) -> bool:
        return record.ledger_entry_id is not None

    def build_entry(self, record, actor) -> LedgerEntry:
        task = self.store.get_task(record.task_id)
        task_title = task.title if task else f"Task #{record.task_id}"
        description = f"{task_title} - {record.title}"
        if record.description:
            description = f"{description}: {record.description}"

        return LedgerEntry(
            amount=record.amount,
            currency=record.currency,
            category=EXPENSE_LEDGER_CATEGORIES.get(record.category, DEFAULT_LEDGER_CATEGORY),
            description=description,
            employee_id=record.requester_id,
            approved_by_id=record.decided_by_id or actor.id,
            reference_number=self.reference_for(record),
            task_id=record.task_id,
            project_id=task.project_id if task else None,
            entry_date=record.expense_date,
        )

    def run(self, record, actor) -> dict:
        entry_id = self.ledger.record_expense(self.build_entry(record, actor))
        logger.info("Expense #%s booked to ledger entry #%s", record.id, entry_id)
        return {"ledger_entry_id": entry_id, "ledger_recorded_at": datetime.utcnow()}


def default_dispatcher(ledger, store) -> SideEffectDispatcher:
    dispatcher = SideEffectDispatcher()
    dispatcher.register("task_expense", "approved", ExpenseLedgerHook(ledger, store))
    return dispatcher
