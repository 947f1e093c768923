# workflow/transfers.py
"""Task transfer negotiation.

A transfer is a proposal answered by its target: only ``to_user_id`` (or a
configured override role) may accept or reject, whoever proposed it. Accepting
repoints the task's assignee in the same transaction as the status change.
"""

import logging
from datetime import datetime
from functools import partial

from sqlalchemy import update

from models import Task
from permissions.resolver import GLOBAL_ROLES
from utils.audit_helpers import write_audit
from workflow.errors import Conflict, Forbidden, NotFound, ValidationFailed
from workflow.registry import get_kind
from workflow.validation import clean_text

logger = logging.getLogger(__name__)

KIND = "task_transfer"
TRANSFER_TYPES = ("reassign", "delegate", "escalate")

# accepted spellings of the two answers
_ANSWERS = {
    "accept": "accept",
    "accepted": "accept",
    "approve": "accept",
    "reject": "reject",
    "rejected": "reject",
}


def _repoint_task(task_id, from_user_id, to_user_id, session):
    """Move the task to the transfer target if it still belongs to the proposer's assignee."""
    owner_cond = Task.assigned_to_id.is_(None) if from_user_id is None else Task.assigned_to_id == from_user_id
    result = session.execute(
        update(Task)
        .where(Task.id == task_id, owner_cond)
        .values(assigned_to_id=to_user_id, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict(
            f"Task #{task_id} changed owner since the transfer was proposed",
            details={"task_id": task_id},
        )


class TransferNegotiator:
    def __init__(self, engine):
        self.engine = engine
        self.store = engine.store
        self.resolver = engine.resolver

    # =========================
    # Propose
    # =========================
    def propose(self, requester_id, task_id, to_user_id, transfer_type="reassign", reason=None):
        actor = self.engine.load_actor(requester_id)

        task = self.store.get_task(task_id)
        if task is None:
            raise NotFound(f"Task #{task_id} not found")

        if not self.resolver.can_propose_transfer(actor, task):
            raise Forbidden(f"You are not allowed to transfer task #{task.id}")

        target = self.store.get_user(to_user_id)
        if target is None or not target.is_active:
            raise NotFound(f"Target user {to_user_id!r} not found")

        transfer_type = (transfer_type or "reassign").strip().lower()
        if transfer_type not in TRANSFER_TYPES:
            raise ValidationFailed(
                f"'transfer_type' must be one of {', '.join(TRANSFER_TYPES)}",
                details={"field": "transfer_type"},
            )

        if task.assigned_to_id == target.id:
            raise ValidationFailed("Task is already assigned to this user", details={"field": "to_user_id"})

        reason = clean_text({"reason": reason}, "reason")

        # NOTE: several pending proposals for one task are allowed, even to the same target
        record = self.store.insert(KIND, {
            "requester_id": actor.id,
            "task_id": task.id,
            "from_user_id": task.assigned_to_id,
            "to_user_id": target.id,
            "transfer_type": transfer_type,
            "reason": reason,
            "status": get_kind(KIND).initial,
        })
        logger.info(
            "Transfer #%s proposed for task #%s: %s -> %s by user_id=%s",
            record.id, task.id, task.assigned_to_id, target.id, actor.id,
        )
        write_audit(kind=KIND, record_id=record.id, user_id=actor.id, action="PROPOSED", new_status=record.status, note=reason)

        msg = f'Task "{task.title}" is being transferred to you'
        if reason:
            msg += f" | {reason}"
        self.engine.notify_users([target.id], msg, record=record, actor_id=actor.id)

        if not actor.has_role("manager", "director", "admin"):
            project = self.store.get_project(task.project_id)
            if project and project.project_manager_id:
                self.engine.notify_users(
                    [project.project_manager_id],
                    f'{actor.label} wants to transfer task "{task.title}" to {target.label}',
                    record=record,
                    actor_id=actor.id,
                )
        return record

    # =========================
    # Respond
    # =========================
    def respond(self, actor_id, transfer_id, answer, reason=None):
        spec = get_kind(KIND)
        action = _ANSWERS.get((answer or "").strip().lower())
        if action is None:
            raise ValidationFailed("answer must be 'accept' or 'reject'", details={"field": "action"})

        actor = self.engine.load_actor(actor_id)
        record, version = self.store.get(KIND, transfer_id)

        if not self.resolver.can_decide(actor, KIND, record):
            raise Forbidden(f"Only the transfer target can answer transfer #{record.id}")

        to_status = spec.next_status(record.status, action)
        payload = {"reason": reason} if (reason and action == "reject") else {}
        patch, note = self.engine.decision_patch(spec, action, to_status, actor, payload)

        within = None
        if action == "accept":
            within = partial(_repoint_task, record.task_id, record.from_user_id, record.to_user_id)

        updated = self.engine.apply_transition(spec, record, version, patch, actor, action, within=within, note=note)

        task = self.store.get_task(updated.task_id)
        title = task.title if task else f"Task #{updated.task_id}"
        if action == "accept":
            self.engine.notify_users(
                [updated.from_user_id],
                f'Your task "{title}" was transferred',
                record=updated,
                actor_id=actor.id,
            )
        return updated

    # =========================
    # Read
    # =========================
    def list_for_task(self, actor_id, task_id):
        actor = self.engine.load_actor(actor_id)
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFound(f"Task #{task_id} not found")
        rows = self.store.list_by_kind(KIND, task_id=task.id)
        if actor.has_role(*GLOBAL_ROLES) or actor.id in (task.assigned_to_id, task.created_by_id):
            return rows
        return [r for r in rows if self.resolver.can_view(actor, KIND, r)]
