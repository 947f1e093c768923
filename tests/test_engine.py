import unittest
from datetime import date, timedelta
from decimal import Decimal

from _support import BaseTestCase, RacingStore

from extensions import db
from models import AuditLog, Notification
from workflow.errors import Conflict, Forbidden, IllegalTransition, NotFound, ValidationFailed


class TestSubmit(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.amal = self.make_user("Amal")

    def test_submit_starts_in_initial_status(self):
        ticket = self.svc.engine.submit(
            "support_ticket", self.amal.id, {"title": "VPN down", "description": "Cannot connect", "priority": "HIGH"}
        )
        self.assertEqual(ticket.status, "open")
        self.assertEqual(ticket.priority, "high")
        self.assertEqual(ticket.version, 1)
        self.assertEqual(ticket.requester_id, self.amal.id)
        self.assertTrue(AuditLog.query.filter_by(kind="support_ticket", record_id=ticket.id, action="SUBMITTED").count())

    def _leave(self, start_in, end_in, **extra):
        fields = {
            "start_date": (date.today() + timedelta(days=start_in)).isoformat(),
            "end_date": (date.today() + timedelta(days=end_in)).isoformat(),
        }
        fields.update(extra)
        return self.svc.engine.submit("leave_request", self.amal.id, fields)

    def test_leave_days_are_inclusive(self):
        leave = self._leave(10, 14)
        self.assertEqual(leave.days, 5)
        self.assertEqual(leave.leave_type, "annual")

    def test_leave_end_before_start(self):
        with self.assertRaises(ValidationFailed):
            self._leave(14, 10)

    def test_leave_cannot_start_in_the_past(self):
        with self.assertRaises(ValidationFailed) as cm:
            self.svc.engine.submit(
                "leave_request", self.amal.id, {"start_date": "2001-01-01", "end_date": "2001-01-03"}
            )
        self.assertEqual(cm.exception.details, {"field": "start_date"})

    def test_leave_starting_today_is_accepted(self):
        leave = self._leave(0, 0)
        self.assertEqual(leave.days, 1)

    def test_personal_leave_and_emergency_contact(self):
        leave = self._leave(3, 4, leave_type="Personal", emergency_contact="  Deniz 0555 111 2233 ")
        self.assertEqual(leave.leave_type, "personal")
        self.assertEqual(leave.emergency_contact, "Deniz 0555 111 2233")
        self.assertEqual(leave.to_dict()["emergency_contact"], "Deniz 0555 111 2233")

    def test_unknown_leave_type(self):
        with self.assertRaises(ValidationFailed):
            self._leave(3, 4, leave_type="sabbatical")

    def test_leave_is_routed_to_line_manager(self):
        manager = self.make_user("Murat")
        outsider = self.make_user("Zeynep")
        self.amal.manager_id = manager.id
        db.session.commit()

        leave = self._leave(7, 9, reason="Moving house")

        self.assertEqual(leave.assigned_to_id, manager.id)
        self.assertEqual(Notification.query.filter_by(user_id=manager.id, record_id=leave.id).count(), 1)
        self.assertTrue(self.svc.resolver.can_view(manager, "leave_request", leave))
        self.assertFalse(self.svc.resolver.can_view(outsider, "leave_request", leave))

        page = self.svc.aggregator.list_requests(manager)
        self.assertEqual([(t.kind, t.record.id) for t in page.items], [("leave_request", leave.id)])

    def test_leave_without_manager_stays_unassigned(self):
        leave = self._leave(7, 9)
        self.assertIsNone(leave.assigned_to_id)
        self.assertEqual(Notification.query.filter_by(record_id=leave.id).count(), 0)

    def test_advance_limits(self):
        with self.assertRaises(ValidationFailed):
            self.svc.engine.submit("advance_request", self.amal.id, {"amount": 0, "reason": "x"})
        with self.assertRaises(ValidationFailed):
            self.svc.engine.submit("advance_request", self.amal.id, {"amount": 60000, "reason": "x"})
        with self.assertRaises(ValidationFailed):
            self.svc.engine.submit("advance_request", self.amal.id, {"amount": 100, "reason": "x", "installment_count": 13})

    def test_one_pending_advance_per_user(self):
        self.svc.engine.submit("advance_request", self.amal.id, {"amount": 100, "reason": "Rent"})
        with self.assertRaises(ValidationFailed):
            self.svc.engine.submit("advance_request", self.amal.id, {"amount": 200, "reason": "More rent"})

    def test_suggestion_subject_length(self):
        with self.assertRaises(ValidationFailed):
            self.svc.engine.submit("suggestion", self.amal.id, {"subject": "abc", "description": "long enough text"})

    def test_expense_needs_existing_task(self):
        with self.assertRaises(NotFound):
            self.svc.engine.submit(
                "task_expense", self.amal.id,
                {"task_id": 999, "title": "Taxi", "amount": 10, "expense_date": "2024-03-01"},
            )

    def test_transfers_are_not_submitted_directly(self):
        with self.assertRaises(ValidationFailed):
            self.svc.engine.submit("task_transfer", self.amal.id, {"task_id": 1, "to_user_id": 2})

    def test_inactive_actor_is_forbidden(self):
        ghost = self.make_user("Ghost", active=False)
        with self.assertRaises(Forbidden):
            self.svc.engine.submit("support_ticket", ghost.id, {"title": "t", "description": "d"})

    def test_auto_assign_picks_kind_reviewer(self):
        reviewer = self.make_user("Selin")
        self.assign(reviewer, "suggestion")
        self.svc.engine.config["AUTO_ASSIGN_REVIEWERS"] = True

        suggestion = self.svc.engine.submit(
            "suggestion", self.amal.id, {"subject": "Coffee machine", "description": "Please add one upstairs"}
        )
        self.assertEqual(suggestion.assigned_to_id, reviewer.id)
        self.assertEqual(Notification.query.filter_by(user_id=reviewer.id, record_id=suggestion.id).count(), 1)


class TestDecide(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.amal = self.make_user("Amal")
        self.basel = self.make_user("Basel", "manager")
        self.advance = self.svc.engine.submit(
            "advance_request", self.amal.id, {"amount": "5000", "currency": "TRY", "reason": "Medical bills"}
        )

    def test_reject_then_approve_is_illegal(self):
        engine = self.svc.engine
        rejected = engine.decide(
            self.basel.id, "advance_request", self.advance.id, "reject", {"reason": "insufficient justification"}
        )
        self.assertEqual(rejected.status, "rejected")
        self.assertEqual(rejected.decided_by_id, self.basel.id)
        self.assertEqual(rejected.rejection_reason, "insufficient justification")
        self.assertIsNotNone(rejected.decided_at)
        self.assertEqual(rejected.version, 2)
        self.assertEqual(rejected.amount, Decimal("5000.00"))

        with self.assertRaises(IllegalTransition):
            engine.decide(self.basel.id, "advance_request", self.advance.id, "approve")
        self.assertEqual(self.fresh("advance_request", self.advance.id).version, 2)

    def test_terminal_record_never_moves_again(self):
        engine = self.svc.engine
        engine.decide(self.basel.id, "advance_request", self.advance.id, "approve")
        for action in ("approve", "reject"):
            with self.assertRaises(IllegalTransition):
                engine.decide(self.basel.id, "advance_request", self.advance.id, action)
        record = self.fresh("advance_request", self.advance.id)
        self.assertEqual(record.status, "approved")
        self.assertIsNone(record.rejection_reason)

    def test_reject_without_reason_is_allowed(self):
        rejected = self.svc.engine.decide(self.basel.id, "advance_request", self.advance.id, "reject")
        self.assertEqual(rejected.status, "rejected")
        self.assertIsNone(rejected.rejection_reason)

    def test_reason_can_be_required_by_config(self):
        self.svc.engine.config["REQUIRE_REJECTION_REASON"] = True
        with self.assertRaises(ValidationFailed):
            self.svc.engine.decide(self.basel.id, "advance_request", self.advance.id, "reject", {"reason": "  "})
        self.assertEqual(self.fresh("advance_request", self.advance.id).status, "pending")

    def test_unexpected_payload_field(self):
        with self.assertRaises(ValidationFailed):
            self.svc.engine.decide(self.basel.id, "advance_request", self.advance.id, "approve", {"amount": "1"})

    def test_requester_cannot_decide(self):
        with self.assertRaises(Forbidden):
            self.svc.engine.decide(self.amal.id, "advance_request", self.advance.id, "approve")

    def test_missing_record(self):
        with self.assertRaises(NotFound):
            self.svc.engine.decide(self.basel.id, "advance_request", 404, "approve")

    def test_forbidden_checked_before_transition(self):
        outsider = self.make_user("Omar")
        with self.assertRaises(Forbidden):
            self.svc.engine.decide(outsider.id, "advance_request", self.advance.id, "explode")

    def test_concurrent_decisions_one_wins(self):
        engine = self.svc.engine
        director = self.make_user("Deniz", "director")

        def rival():
            engine.decide(director.id, "advance_request", self.advance.id, "approve")

        engine.store = RacingStore(rival)
        try:
            with self.assertRaises(Conflict):
                engine.decide(self.basel.id, "advance_request", self.advance.id, "reject", {"reason": "late"})
        finally:
            engine.store = self.svc.store

        record = self.fresh("advance_request", self.advance.id)
        self.assertEqual(record.status, "approved")
        self.assertEqual(record.decided_by_id, director.id)
        self.assertEqual(record.version, 2)

    def test_requester_is_notified(self):
        self.svc.engine.decide(self.basel.id, "advance_request", self.advance.id, "approve", {"note": "ok"})
        notes = Notification.query.filter_by(user_id=self.amal.id, record_id=self.advance.id).all()
        self.assertEqual(len(notes), 1)
        self.assertIn("approved", notes[0].message)


class TestMultiStepKinds(BaseTestCase):
    def setUp(self):
        super().setUp()
        self.amal = self.make_user("Amal")
        self.agent = self.make_user("Murat")
        self.assign(self.agent, "support_ticket")
        self.assign(self.agent, "suggestion")

    def test_support_ticket_chain(self):
        engine = self.svc.engine
        ticket = engine.submit("support_ticket", self.amal.id, {"title": "Laptop", "description": "Screen flickers"})

        ticket = engine.decide(self.agent.id, "support_ticket", ticket.id, "start")
        self.assertEqual(ticket.status, "in_progress")
        self.assertIsNone(ticket.decided_by_id)

        ticket = engine.decide(self.agent.id, "support_ticket", ticket.id, "resolve", {"note": "cable replaced"})
        self.assertEqual(ticket.status, "resolved")
        self.assertIsNotNone(ticket.resolved_at)
        self.assertIsNone(ticket.decided_at)

        ticket = engine.decide(self.agent.id, "support_ticket", ticket.id, "close")
        self.assertEqual(ticket.status, "closed")
        self.assertEqual(ticket.decided_by_id, self.agent.id)
        self.assertEqual(ticket.version, 4)

    def test_support_ticket_cannot_skip_steps(self):
        ticket = self.svc.engine.submit("support_ticket", self.amal.id, {"title": "Mouse", "description": "Broken"})
        with self.assertRaises(IllegalTransition):
            self.svc.engine.decide(self.agent.id, "support_ticket", ticket.id, "close")

    def test_suggestion_response_is_stored(self):
        engine = self.svc.engine
        s = engine.submit("suggestion", self.amal.id, {"subject": "Bike racks", "description": "We need bike racks"})
        s = engine.decide(self.agent.id, "suggestion", s.id, "review", {"response": "Budget requested"})
        self.assertEqual(s.status, "reviewed")
        self.assertEqual(s.response, "Budget requested")
        s = engine.decide(self.agent.id, "suggestion", s.id, "reject", {"reason": "No budget"})
        self.assertEqual(s.status, "rejected")
        self.assertEqual(s.rejection_reason, "No budget")
        self.assertEqual(s.response, "Budget requested")

    def test_transfer_cannot_be_decided_generically(self):
        task = self.make_task(assignee=self.amal)
        transfer = self.svc.transfers.propose(self.amal.id, task.id, self.agent.id)
        with self.assertRaises(ValidationFailed):
            self.svc.engine.decide(self.agent.id, "task_transfer", transfer.id, "accept")


if __name__ == "__main__":
    unittest.main()
