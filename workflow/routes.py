# workflow/routes.py

import logging

from flask import current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import update

from . import workflow_bp
from extensions import db
from models import Notification
from permissions.decorators import roles_required
from utils.audit_helpers import audit_trail
from workflow.aggregator import RequestFilter
from workflow.errors import SideEffectFailed, ValidationFailed, WorkflowError
from workflow.registry import all_specs, get_kind
from workflow.services import get_services

logger = logging.getLogger(__name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed("request body must be a JSON object")
    return data


def _record_payload(kind, record, actor=None):
    data = record.to_dict()
    data["kind"] = kind
    if actor is not None:
        data["actions"] = get_services().engine.available_actions(actor, kind, record)
    return data


# =========================
# Errors
# =========================
@workflow_bp.errorhandler(WorkflowError)
def _handle_workflow_error(err):
    payload = {"success": False, "error": err.to_dict()}
    if isinstance(err, SideEffectFailed) and err.record is not None:
        # the status change stands; hand the committed record back
        payload["record"] = _record_payload(err.record.kind, err.record)
        logger.error("Side effect failed: %s", err.message)
    else:
        logger.info(
            "Workflow error %s on %s %s | user=%s | %s",
            err.code, request.method, request.path, current_user.get_id(), err.message,
        )
    return jsonify(payload), err.http_status


# =========================
# Kinds
# =========================
@workflow_bp.route("/kinds")
@login_required
def list_kinds():
    return jsonify({
        "success": True,
        "kinds": [
            {
                "kind": spec.kind,
                "statuses": list(spec.statuses),
                "initial": spec.initial,
                "terminal": sorted(spec.terminal),
                "transitions": [
                    {"from": src, "action": action, "to": dst}
                    for (src, action), dst in sorted(spec.transitions.items())
                ],
                "submittable": not spec.dedicated,
            }
            for spec in all_specs()
        ],
    })


# =========================
# Requests
# =========================
@workflow_bp.route("/requests", methods=["GET"])
@login_required
def list_requests():
    svc = get_services()
    cfg = current_app.config
    flt = RequestFilter.from_args(
        request.args,
        default_page_size=cfg.get("AGGREGATOR_PAGE_SIZE", 20),
        max_page_size=cfg.get("AGGREGATOR_MAX_PAGE_SIZE", 100),
    )
    actor = svc.engine.load_actor(current_user.id)
    page = svc.aggregator.list_requests(actor, flt)
    return jsonify({"success": True, **page.to_dict()})


@workflow_bp.route("/requests/<kind>", methods=["POST"])
@login_required
def submit_request(kind):
    svc = get_services()
    record = svc.engine.submit(kind, current_user.id, _json_body())
    return jsonify({"success": True, "record": _record_payload(record.kind, record)}), 201


@workflow_bp.route("/requests/<kind>/<int:record_id>", methods=["GET"])
@login_required
def view_request(kind, record_id):
    svc = get_services()
    actor = svc.engine.load_actor(current_user.id)
    record = svc.engine.get_request(actor.id, kind, record_id)
    return jsonify({
        "success": True,
        "record": _record_payload(record.kind, record, actor),
        "audit": [row.to_dict() for row in audit_trail(record.kind, record.id)],
    })


@workflow_bp.route("/requests/<kind>/<int:record_id>/decide", methods=["POST"])
@login_required
def decide_request(kind, record_id):
    svc = get_services()
    body = _json_body()
    action = body.pop("action", None)
    if not action:
        raise ValidationFailed("'action' is required", details={"field": "action"})
    record = svc.engine.decide(current_user.id, kind, record_id, action, body)
    return jsonify({"success": True, "record": _record_payload(record.kind, record)})


@workflow_bp.route("/requests/<kind>/<int:record_id>/side-effects/retry", methods=["POST"])
@login_required
def retry_side_effects(kind, record_id):
    svc = get_services()
    record = svc.engine.retry_side_effects(current_user.id, kind, record_id)
    return jsonify({"success": True, "record": _record_payload(record.kind, record)})


# =========================
# Transfers
# =========================
@workflow_bp.route("/tasks/<int:task_id>/transfers", methods=["POST"])
@login_required
def propose_transfer(task_id):
    svc = get_services()
    body = _json_body()
    record = svc.transfers.propose(
        current_user.id,
        task_id,
        body.get("to_user_id"),
        transfer_type=body.get("transfer_type") or "reassign",
        reason=body.get("reason"),
    )
    return jsonify({"success": True, "record": _record_payload(record.kind, record)}), 201


@workflow_bp.route("/tasks/<int:task_id>/transfers", methods=["GET"])
@login_required
def list_transfers(task_id):
    svc = get_services()
    rows = svc.transfers.list_for_task(current_user.id, task_id)
    return jsonify({"success": True, "items": [_record_payload(r.kind, r) for r in rows]})


@workflow_bp.route("/transfers/<int:transfer_id>/respond", methods=["POST"])
@login_required
def respond_transfer(transfer_id):
    svc = get_services()
    body = _json_body()
    answer = body.get("action") or body.get("answer")
    record = svc.transfers.respond(current_user.id, transfer_id, answer, reason=body.get("reason"))
    return jsonify({"success": True, "record": _record_payload(record.kind, record)})


# =========================
# Reviewer assignments (admin)
# =========================
@workflow_bp.route("/assignments", methods=["GET"])
@roles_required("admin")
def list_assignments():
    svc = get_services()
    kind = request.args.get("kind")
    if kind:
        kind = get_kind(kind).kind
    rows = svc.directory.list_all(kind)
    return jsonify({"success": True, "items": [row.to_dict() for row in rows]})


@workflow_bp.route("/assignments", methods=["POST"])
@roles_required("admin")
def grant_assignment():
    svc = get_services()
    body = _json_body()
    kind = get_kind(body.get("kind")).kind
    user = svc.store.get_user(body.get("user_id"))
    if user is None:
        raise ValidationFailed("'user_id' does not match a user", details={"field": "user_id"})
    row = svc.directory.grant(user.id, kind, granted_by_id=current_user.id)
    return jsonify({"success": True, "assignment": row.to_dict()}), 201


@workflow_bp.route("/assignments/<int:user_id>/<kind>", methods=["DELETE"])
@roles_required("admin")
def revoke_assignment(user_id, kind):
    svc = get_services()
    kind = get_kind(kind).kind
    revoked = svc.directory.revoke(user_id, kind)
    return jsonify({"success": True, "revoked": revoked})


# =========================
# Notifications
# =========================
@workflow_bp.route("/notifications")
@login_required
def notifications():
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    q = Notification.query.filter_by(user_id=current_user.id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(100).all()
    return jsonify({"success": True, "items": [n.to_dict() for n in rows]})


@workflow_bp.route("/notifications/unread-count")
@login_required
def unread_notifications_count():
    count = Notification.query.filter_by(user_id=current_user.id, is_read=False).count()
    return jsonify({"count": count})


@workflow_bp.route("/notifications/mark-all-read", methods=["POST"])
@login_required
def mark_all_notifications_read():
    try:
        result = db.session.execute(
            update(Notification)
            .where(Notification.user_id == current_user.id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to mark notifications as read for user_id=%s", current_user.id)
        raise
    logger.info("Marked %s notifications as read for user_id=%s", result.rowcount, current_user.id)
    return jsonify({"success": True, "updated": result.rowcount})


@workflow_bp.route("/notifications/<int:notif_id>/read", methods=["POST"])
@login_required
def mark_notification_read(notif_id):
    n = Notification.query.filter_by(id=notif_id, user_id=current_user.id).first_or_404()
    if not n.is_read:
        n.is_read = True
        db.session.commit()
    return "", 204
