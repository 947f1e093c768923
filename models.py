from datetime import datetime, date
from decimal import Decimal

from flask_login import UserMixin
from sqlalchemy.orm import declared_attr

from extensions import db


def _iso(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _num(value):
    if isinstance(value, Decimal):
        return float(value)
    return value


# ======================
# Users
# ======================
class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    name = db.Column(db.String(200), nullable=True)

    # Global authority level: admin / manager / director / team_lead / employee
    role = db.Column(db.String(50), index=True, nullable=False, default="employee")

    # Opaque bearer token resolved by the login manager (issuance is external)
    api_token = db.Column(db.String(128), unique=True, index=True, nullable=True)

    # Line manager; leave requests are routed here on submit
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    is_active_flag = db.Column("is_active", db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_active(self):
        return bool(self.is_active_flag)

    @staticmethod
    def _norm(value) -> str:
        return (value or "").strip().lower().replace("-", "_").replace(" ", "_")

    def has_role(self, *roles) -> bool:
        mine = self._norm(self.role)
        return bool(mine) and any(mine == self._norm(r) for r in roles)

    @property
    def label(self):
        return (self.name or self.email or f"User#{self.id}").strip()

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "manager_id": self.manager_id,
        }

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role}>"


# ======================
# Reviewer assignments (per-kind review authority)
# ======================
class ReviewerAssignment(db.Model):
    __tablename__ = "reviewer_assignments"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Request kind code (advance_request, suggestion, support_ticket, ...)
    kind = db.Column(db.String(40), nullable=False, index=True)

    # Soft toggle (keep row, allow revoke)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    user = db.relationship("User", foreign_keys=[user_id], lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("user_id", "kind", name="uq_reviewer_assignment_user_kind"),
        db.Index("ix_reviewer_assignment_kind_active", "kind", "is_active"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


# ======================
# Projects & tasks
# ======================
class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    project_manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class Task(db.Model):
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), default="todo", nullable=False)

    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=True, index=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Expense approver for this task; NULL falls back to the project manager
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "project_id": self.project_id,
            "assigned_to_id": self.assigned_to_id,
            "created_by_id": self.created_by_id,
            "approver_id": self.approver_id,
        }


# ======================
# Request kinds
# ======================
class DecidableMixin:
    """Columns shared by every reviewable request kind.

    ``kind`` is a class constant, not a column. ``SUBJECT_FIELDS`` lists the
    kind-specific payload columns, ``version`` backs the compare-and-swap
    write in the workflow engine.
    """

    kind = None
    SUBJECT_FIELDS = ()

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    decided_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @declared_attr
    def requester_id(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    @declared_attr
    def decided_by_id(cls):
        return db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    def subject_fields(self) -> dict:
        return {name: _iso(_num(getattr(self, name, None))) for name in self.SUBJECT_FIELDS}

    def to_dict(self):
        data = {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "requester_id": self.requester_id,
            "version": self.version,
            "decided_by": self.decided_by_id,
            "decided_at": _iso(self.decided_at),
            "rejection_reason": self.rejection_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        data.update(self.subject_fields())
        return data

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={self.id} status={self.status} v={self.version}>"


class SupportTicket(DecidableMixin, db.Model):
    __tablename__ = "support_tickets"
    kind = "support_ticket"
    SUBJECT_FIELDS = ("title", "description", "priority", "category", "assigned_to_id", "resolved_at")

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(20), default="medium", nullable=False)
    category = db.Column(db.String(100), nullable=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    resolved_at = db.Column(db.DateTime, nullable=True)


class LeaveRequest(DecidableMixin, db.Model):
    __tablename__ = "leave_requests"
    kind = "leave_request"
    SUBJECT_FIELDS = (
        "leave_type", "start_date", "end_date", "days", "reason", "emergency_contact", "assigned_to_id",
    )

    leave_type = db.Column(db.String(40), default="annual", nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    days = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.Text, nullable=True)
    emergency_contact = db.Column(db.String(200), nullable=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)


class AdvanceRequest(DecidableMixin, db.Model):
    __tablename__ = "advance_requests"
    kind = "advance_request"
    SUBJECT_FIELDS = ("amount", "currency", "reason", "repayment_plan", "installment_count", "assigned_to_id")

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default="TRY", nullable=False)
    reason = db.Column(db.Text, nullable=False)
    repayment_plan = db.Column(db.String(20), default="salary", nullable=False)
    installment_count = db.Column(db.Integer, default=1, nullable=False)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)


class Suggestion(DecidableMixin, db.Model):
    __tablename__ = "suggestions"
    kind = "suggestion"
    SUBJECT_FIELDS = ("type", "subject", "description", "response", "assigned_to_id")

    # suggestion / complaint
    type = db.Column(db.String(20), default="suggestion", nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    response = db.Column(db.Text, nullable=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)


class TaskTransfer(DecidableMixin, db.Model):
    __tablename__ = "task_transfers"
    kind = "task_transfer"
    SUBJECT_FIELDS = ("task_id", "from_user_id", "to_user_id", "requested_by_id", "transfer_type", "reason")

    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id"), nullable=False, index=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # reassign / delegate / escalate
    transfer_type = db.Column(db.String(20), default="reassign", nullable=False)
    reason = db.Column(db.Text, nullable=True)

    __table_args__ = (
        db.CheckConstraint("to_user_id <> from_user_id", name="ck_task_transfer_distinct_users"),
        db.Index("ix_task_transfer_task_status", "task_id", "status"),
    )

    @property
    def requested_by_id(self):
        return self.requester_id


class TaskExpense(DecidableMixin, db.Model):
    __tablename__ = "task_expenses"
    kind = "task_expense"
    SUBJECT_FIELDS = (
        "task_id", "title", "description", "amount", "currency", "category",
        "vendor", "receipt_number", "expense_date", "ledger_entry_id", "ledger_recorded_at",
    )

    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default="TRY", nullable=False)
    category = db.Column(db.String(40), default="other", nullable=False)
    vendor = db.Column(db.String(200), nullable=True)
    receipt_number = db.Column(db.String(100), nullable=True)
    expense_date = db.Column(db.Date, nullable=False)

    # Completion marker of the ledger side effect (ledger lives in another bind, no FK)
    ledger_entry_id = db.Column(db.Integer, nullable=True)
    ledger_recorded_at = db.Column(db.DateTime, nullable=True)


# ======================
# Finance ledger (separate storage domain)
# ======================
class FinanceLedgerEntry(db.Model):
    __bind_key__ = "finance"
    __tablename__ = "finance_ledger_entries"

    id = db.Column(db.Integer, primary_key=True)
    entry_type = db.Column(db.String(20), default="expense", nullable=False)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    category = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    entry_date = db.Column(db.Date, nullable=True)

    # Cross-domain references (no FK across binds)
    employee_id = db.Column(db.Integer, nullable=False, index=True)
    task_id = db.Column(db.Integer, nullable=True, index=True)
    project_id = db.Column(db.Integer, nullable=True, index=True)
    approved_by_id = db.Column(db.Integer, nullable=False)

    # EXP-<expense id>; one ledger entry per approved expense
    reference_number = db.Column(db.String(64), unique=True, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "entry_type": self.entry_type,
            "amount": _num(self.amount),
            "currency": self.currency,
            "category": self.category,
            "description": self.description,
            "entry_date": _iso(self.entry_date),
            "employee_id": self.employee_id,
            "task_id": self.task_id,
            "project_id": self.project_id,
            "approved_by_id": self.approved_by_id,
            "reference_number": self.reference_number,
        }


# ======================
# Audit log
# ======================
class AuditLog(db.Model):
    __tablename__ = "audit_log"

    __table_args__ = (
        db.Index("ix_audit_log_kind_record", "kind", "record_id"),
    )

    id = db.Column(db.Integer, primary_key=True)

    kind = db.Column(db.String(40), nullable=True)
    record_id = db.Column(db.Integer, nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    action = db.Column(db.String(100), nullable=False)
    old_status = db.Column(db.String(50))
    new_status = db.Column(db.String(50))
    note = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "record_id": self.record_id,
            "user_id": self.user_id,
            "action": self.action,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "note": self.note,
            "created_at": _iso(self.created_at),
        }


# ======================
# Notifications
# ======================
class Notification(db.Model):
    # no __tablename__ => default is "notification"
    __table_args__ = (
        db.Index("ix_notification_user_read", "user_id", "is_read"),
        db.Index("ix_notification_event_key", "event_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    message = db.Column(db.String(255))
    type = db.Column(db.String(50), default="INFO")
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # what the notification points at
    kind = db.Column(db.String(40), nullable=True)
    record_id = db.Column(db.Integer, nullable=True)

    # event_key groups notifications emitted by the same event
    event_key = db.Column(db.String(64), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "message": self.message,
            "type": self.type,
            "is_read": bool(self.is_read),
            "kind": self.kind,
            "record_id": self.record_id,
            "actor_id": self.actor_id,
            "created_at": _iso(self.created_at),
        }


REQUEST_MODELS = (SupportTicket, LeaveRequest, AdvanceRequest, Suggestion, TaskTransfer, TaskExpense)
