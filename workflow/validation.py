# workflow/validation.py
"""Submission checks per request kind.

Each validator takes the raw subject fields and returns the cleaned column
values for the new row, raising ValidationFailed on the first bad field.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from workflow.errors import NotFound, ValidationFailed

MAX_TEXT = 2000

PRIORITIES = ("low", "medium", "high", "urgent")
SUGGESTION_TYPES = ("suggestion", "complaint")
REPAYMENT_PLANS = ("salary", "installment", "lump_sum")
EXPENSE_CATEGORIES = ("travel", "meals", "accommodation", "transport", "materials", "other")
LEAVE_TYPES = ("annual", "sick", "personal", "unpaid", "maternity", "paternity", "other")


def _fail(field, message):
    raise ValidationFailed(message, details={"field": field})


def clean_text(fields, name, *, required=False, min_len=0, max_len=MAX_TEXT):
    value = fields.get(name)
    if value is None:
        if required:
            _fail(name, f"'{name}' is required")
        return None
    if not isinstance(value, str):
        _fail(name, f"'{name}' must be a string")
    value = value.strip()
    if not value:
        if required:
            _fail(name, f"'{name}' is required")
        return None
    if len(value) < min_len or len(value) > max_len:
        _fail(name, f"'{name}' must be between {min_len} and {max_len} characters")
    return value


def clean_choice(fields, name, choices, default):
    value = fields.get(name)
    if value is None or value == "":
        return default
    value = str(value).strip().lower()
    if value not in choices:
        _fail(name, f"'{name}' must be one of {', '.join(choices)}")
    return value


def clean_amount(fields, name="amount", *, max_amount=None):
    raw = fields.get(name)
    if raw is None or raw == "":
        _fail(name, f"'{name}' is required")
    if isinstance(raw, bool):
        _fail(name, f"'{name}' must be a number")
    try:
        amount = Decimal(str(raw)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        _fail(name, f"'{name}' must be a number")
    if not amount.is_finite() or amount <= 0:
        _fail(name, f"'{name}' must be greater than zero")
    if max_amount is not None and amount > Decimal(str(max_amount)):
        _fail(name, f"'{name}' cannot exceed {max_amount:,.0f}")
    return amount


def clean_currency(fields, default):
    raw = fields.get("currency") or default
    value = str(raw).strip().upper()
    if len(value) != 3 or not value.isalpha():
        _fail("currency", "'currency' must be a 3-letter code")
    return value


def clean_date(fields, name, *, required=True):
    raw = fields.get(name)
    if raw is None or raw == "":
        if required:
            _fail(name, f"'{name}' is required")
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        _fail(name, f"'{name}' must be an ISO date (YYYY-MM-DD)")


def clean_int(fields, name, *, default, lo, hi):
    raw = fields.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        _fail(name, f"'{name}' must be an integer")
    if value < lo or value > hi:
        _fail(name, f"'{name}' must be between {lo} and {hi}")
    return value


# =========================
# Kinds
# =========================
def _support_ticket(fields, ctx):
    return {
        "title": clean_text(fields, "title", required=True, max_len=200),
        "description": clean_text(fields, "description", required=True),
        "priority": clean_choice(fields, "priority", PRIORITIES, "medium"),
        "category": clean_text(fields, "category", max_len=100),
    }


def _leave_request(fields, ctx):
    start = clean_date(fields, "start_date")
    end = clean_date(fields, "end_date")
    if start < date.today():
        _fail("start_date", "'start_date' cannot be in the past")
    if end < start:
        _fail("end_date", "'end_date' cannot be before 'start_date'")
    return {
        "leave_type": clean_choice(fields, "leave_type", LEAVE_TYPES, "annual"),
        "start_date": start,
        "end_date": end,
        "days": (end - start).days + 1,
        "reason": clean_text(fields, "reason"),
        "emergency_contact": clean_text(fields, "emergency_contact", max_len=200),
    }


def _advance_request(fields, ctx):
    cfg = ctx["config"]
    cleaned = {
        "amount": clean_amount(fields, max_amount=cfg.get("ADVANCE_MAX_AMOUNT")),
        "currency": clean_currency(fields, cfg.get("DEFAULT_CURRENCY", "TRY")),
        "reason": clean_text(fields, "reason", required=True),
        "repayment_plan": clean_choice(fields, "repayment_plan", REPAYMENT_PLANS, "salary"),
        "installment_count": clean_int(
            fields, "installment_count", default=1, lo=1, hi=int(cfg.get("ADVANCE_MAX_INSTALLMENTS", 12))
        ),
    }
    pending = ctx["store"].list_by_kind(
        "advance_request", requester_id=ctx["requester_id"], statuses=["pending"]
    )
    if pending:
        raise ValidationFailed("You already have a pending advance request", details={"field": "status"})
    return cleaned


def _suggestion(fields, ctx):
    return {
        "type": clean_choice(fields, "type", SUGGESTION_TYPES, "suggestion"),
        "subject": clean_text(fields, "subject", required=True, min_len=5, max_len=255),
        "description": clean_text(fields, "description", required=True, min_len=10),
    }


def _task_expense(fields, ctx):
    cfg = ctx["config"]
    task = ctx["store"].get_task(fields.get("task_id"))
    if task is None:
        raise NotFound(f"Task #{fields.get('task_id')} not found")
    return {
        "task_id": task.id,
        "title": clean_text(fields, "title", required=True, max_len=200),
        "description": clean_text(fields, "description"),
        "amount": clean_amount(fields),
        "currency": clean_currency(fields, cfg.get("DEFAULT_CURRENCY", "TRY")),
        "category": clean_choice(fields, "category", EXPENSE_CATEGORIES, "other"),
        "vendor": clean_text(fields, "vendor", max_len=200),
        "receipt_number": clean_text(fields, "receipt_number", max_len=100),
        "expense_date": clean_date(fields, "expense_date"),
    }


_VALIDATORS = {
    "support_ticket": _support_ticket,
    "leave_request": _leave_request,
    "advance_request": _advance_request,
    "suggestion": _suggestion,
    "task_expense": _task_expense,
}


def validate_submission(spec, fields, *, store, config, requester_id) -> dict:
    if not isinstance(fields, dict):
        raise ValidationFailed("subject fields must be an object")
    validator = _VALIDATORS.get(spec.kind)
    if validator is None:
        raise ValidationFailed(f"{spec.kind} cannot be submitted directly")
    ctx = {"store": store, "config": config or {}, "requester_id": requester_id}
    return validator(fields, ctx)
