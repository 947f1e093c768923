import unittest
from decimal import Decimal

from _support import BaseTestCase, RacingStore

from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from models import AuditLog, FinanceLedgerEntry
from services.finance_ledger import FinanceLedger
from workflow.errors import Conflict, Forbidden, IllegalTransition, SideEffectFailed
from workflow.services import build_services


class BrokenLedger(FinanceLedger):
    def record_expense(self, entry):
        raise RuntimeError("finance database unavailable")


class RivalRetryLedger(FinanceLedger):
    """Books through a competing retry before its own (idempotent) write."""

    def __init__(self, rival):
        self.rival = rival
        self.fired = False

    def record_expense(self, entry):
        if not self.fired:
            self.fired = True
            self.rival()
        return super().record_expense(entry)


def _finance_db_gone(mapper, connection, target):
    raise OperationalError("INSERT INTO finance_ledger_entries", {}, Exception("finance database went away"))


class TestExpenseLedger(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.employee = self.make_user("Amal")
        self.pm = self.make_user("Basel", "manager")
        self.task = self.make_task(title="Site survey", assignee=self.employee, manager=self.pm)
        self.expense = self.submit_expense(self.employee, self.task, description="zip ties")

    def break_finance_db(self):
        event.listen(FinanceLedgerEntry, "before_insert", _finance_db_gone)
        self.addCleanup(self.heal_finance_db)

    def heal_finance_db(self):
        if event.contains(FinanceLedgerEntry, "before_insert", _finance_db_gone):
            event.remove(FinanceLedgerEntry, "before_insert", _finance_db_gone)

    def test_approval_books_exactly_one_entry(self):
        approved = self.svc.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")

        self.assertEqual(approved.status, "approved")
        entries = self.ledger_entries()
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry.amount, Decimal("250.50"))
        self.assertEqual(entry.currency, "TRY")
        self.assertEqual(entry.approved_by_id, self.pm.id)
        self.assertEqual(entry.employee_id, self.employee.id)
        self.assertEqual(entry.task_id, self.task.id)
        self.assertEqual(entry.project_id, self.task.project_id)
        self.assertEqual(entry.category, "Materials & Supplies")
        self.assertEqual(entry.description, "Site survey - Cable ties: zip ties")
        self.assertEqual(entry.reference_number, f"EXP-{self.expense.id}")

        # the completion marker points at the entry
        self.assertEqual(approved.ledger_entry_id, entry.id)
        self.assertIsNotNone(approved.ledger_recorded_at)

    def test_rejection_books_nothing(self):
        rejected = self.svc.engine.decide(self.pm.id, "task_expense", self.expense.id, "reject", {"reason": "No receipt"})
        self.assertEqual(rejected.status, "rejected")
        self.assertEqual(self.ledger_entries(), [])

    def test_second_approval_does_not_book_again(self):
        self.svc.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")
        with self.assertRaises(IllegalTransition):
            self.svc.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")
        self.assertEqual(len(self.ledger_entries()), 1)

    def test_losing_writer_runs_no_side_effect(self):
        engine = self.svc.engine

        def rival():
            engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")

        # both read version 1; only the rival's write lands
        engine.store = RacingStore(rival)
        try:
            with self.assertRaises(Conflict):
                engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")
        finally:
            engine.store = self.svc.store

        entries = self.ledger_entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].approved_by_id, self.pm.id)

    def test_ledger_failure_keeps_approval(self):
        broken = build_services(self.app.config, self.app, ledger=BrokenLedger())

        with self.assertRaises(SideEffectFailed) as cm:
            broken.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")

        err = cm.exception
        self.assertEqual(err.http_status, 502)
        self.assertEqual(err.record.status, "approved")

        record = self.fresh("task_expense", self.expense.id)
        self.assertEqual(record.status, "approved")
        self.assertEqual(record.decided_by_id, self.pm.id)
        self.assertIsNone(record.ledger_entry_id)
        self.assertEqual(self.ledger_entries(), [])
        self.assertEqual(
            AuditLog.query.filter_by(kind="task_expense", record_id=self.expense.id, action="SIDE_EFFECT_FAILED").count(),
            1,
        )

    def test_ledger_write_failure_is_reported_with_committed_record(self):
        self.break_finance_db()

        with self.assertRaises(SideEffectFailed) as cm:
            self.svc.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")

        self.assertEqual(cm.exception.record.status, "approved")
        record = self.fresh("task_expense", self.expense.id)
        self.assertEqual(record.status, "approved")
        self.assertIsNone(record.ledger_entry_id)
        self.assertEqual(self.ledger_entries(), [])
        failed = AuditLog.query.filter_by(
            kind="task_expense", record_id=self.expense.id, action="SIDE_EFFECT_FAILED"
        ).all()
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].user_id, self.pm.id)

        self.heal_finance_db()
        fixed = self.svc.engine.retry_side_effects(self.pm.id, "task_expense", self.expense.id)
        self.assertIsNotNone(fixed.ledger_entry_id)
        self.assertEqual(len(self.ledger_entries()), 1)

    def test_ledger_write_failure_over_http_answers_502(self):
        self.break_finance_db()

        status, body = self.api(
            "POST", f"/workflow/requests/task_expense/{self.expense.id}/decide", self.pm, {"action": "approve"}
        )
        self.assertEqual(status, 502)
        self.assertEqual(body["error"]["code"], "SIDE_EFFECT_FAILED")
        self.assertEqual(body["record"]["status"], "approved")

    def test_concurrent_retries_both_succeed(self):
        broken = build_services(self.app.config, self.app, ledger=BrokenLedger())
        with self.assertRaises(SideEffectFailed):
            broken.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")

        def rival():
            self.svc.engine.retry_side_effects(self.pm.id, "task_expense", self.expense.id)

        racing = build_services(self.app.config, self.app, ledger=RivalRetryLedger(rival))
        result = racing.engine.retry_side_effects(self.pm.id, "task_expense", self.expense.id)

        entries = self.ledger_entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(result.ledger_entry_id, entries[0].id)
        self.assertEqual(self.fresh("task_expense", self.expense.id).ledger_entry_id, entries[0].id)

    def test_retry_reconciles_once(self):
        broken = build_services(self.app.config, self.app, ledger=BrokenLedger())
        with self.assertRaises(SideEffectFailed):
            broken.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")

        fixed = self.svc.engine.retry_side_effects(self.pm.id, "task_expense", self.expense.id)
        self.assertIsNotNone(fixed.ledger_entry_id)
        self.assertEqual(len(self.ledger_entries()), 1)
        self.assertEqual(self.ledger_entries()[0].approved_by_id, self.pm.id)

        again = self.svc.engine.retry_side_effects(self.pm.id, "task_expense", self.expense.id)
        self.assertEqual(again.ledger_entry_id, fixed.ledger_entry_id)
        self.assertEqual(again.version, fixed.version)
        self.assertEqual(len(self.ledger_entries()), 1)

    def test_ledger_is_idempotent_by_reference(self):
        self.svc.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")
        record = self.fresh("task_expense", self.expense.id)
        hook = self.svc.dispatcher.hooks_for("task_expense", "approved")[0]

        # a replay after a lost marker write finds the existing entry
        entry_id = self.svc.ledger.record_expense(hook.build_entry(record, self.pm))
        self.assertEqual(entry_id, record.ledger_entry_id)
        self.assertEqual(len(self.ledger_entries()), 1)

    def test_retry_needs_authority(self):
        broken = build_services(self.app.config, self.app, ledger=BrokenLedger())
        with self.assertRaises(SideEffectFailed):
            broken.engine.decide(self.pm.id, "task_expense", self.expense.id, "approve")
        with self.assertRaises(Forbidden):
            self.svc.engine.retry_side_effects(self.employee.id, "task_expense", self.expense.id)

        admin = self.make_user("Root", "admin")
        fixed = self.svc.engine.retry_side_effects(admin.id, "task_expense", self.expense.id)
        self.assertIsNotNone(fixed.ledger_entry_id)
        self.assertEqual(self.ledger_entries()[0].approved_by_id, self.pm.id)


if __name__ == "__main__":
    unittest.main()
