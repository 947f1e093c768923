# workflow/engine.py

import logging
import random
from datetime import datetime

from workflow.errors import (
    Conflict,
    Forbidden,
    SideEffectFailed,
    ValidationFailed,
)
from workflow.registry import get_kind
from workflow.validation import MAX_TEXT, validate_submission
from utils.audit_helpers import write_audit

logger = logging.getLogger(__name__)

# decision payload field -> record column (None: audit note only)
_PAYLOAD_COLUMNS = {
    "reason": "rejection_reason",
    "response": "response",
    "note": None,
}


class WorkflowEngine:
    """Submit and decide requests of any registered kind.

    ``decide`` is the only path that changes a request's status: load with
    version, authorize, look the move up in the registry, validate the
    payload, compare-and-swap, then run the side-effect hooks for the new
    status.
    """

    def __init__(self, store, resolver, dispatcher, notifier=None, config=None):
        self.store = store
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.config = dict(config or {})

    # =========================
    # Actors
    # =========================
    def load_actor(self, actor_id):
        actor = self.store.get_user(actor_id)
        if actor is None or not actor.is_active:
            raise Forbidden(f"Unknown or inactive actor: {actor_id!r}")
        return actor

    # =========================
    # Submit
    # =========================
    def submit(self, kind, requester_id, subject_fields):
        spec = get_kind(kind)
        if spec.dedicated:
            raise ValidationFailed(f"{spec.kind} requests are created through their own operation")

        requester = self.load_actor(requester_id)
        fields = validate_submission(
            spec,
            subject_fields or {},
            store=self.store,
            config=self.config,
            requester_id=requester.id,
        )
        fields["requester_id"] = requester.id
        fields["status"] = spec.initial

        assignee_id = None
        if spec.assign_to_manager:
            assignee_id = self._line_manager(requester)
            fields["assigned_to_id"] = assignee_id
        elif spec.auto_assign and self.config.get("AUTO_ASSIGN_REVIEWERS"):
            assignee_id = self._pick_reviewer(spec.kind, exclude=requester.id)
            fields["assigned_to_id"] = assignee_id

        record = self.store.insert(spec.kind, fields)
        logger.info("Submitted %s #%s by user_id=%s", spec.kind, record.id, requester.id)

        write_audit(
            kind=spec.kind,
            record_id=record.id,
            user_id=requester.id,
            action="SUBMITTED",
            new_status=record.status,
        )
        if assignee_id:
            self.notify_users(
                [assignee_id],
                f"New {spec.kind.replace('_', ' ')} #{record.id} was assigned to you",
                record=record,
                actor_id=requester.id,
            )
        return record

    def _line_manager(self, requester):
        if not requester.manager_id or requester.manager_id == requester.id:
            return None
        manager = self.store.get_user(requester.manager_id)
        if manager is None or not manager.is_active:
            logger.warning("No active line manager for user_id=%s", requester.id)
            return None
        return manager.id

    def _pick_reviewer(self, kind, exclude=None):
        candidates = [uid for uid in self.resolver.directory.reviewers_for(kind) if uid != exclude]
        if not candidates:
            return None
        return random.choice(candidates)

    # =========================
    # Decide
    # =========================
    def decide(self, actor_id, kind, record_id, action, payload=None):
        spec = get_kind(kind)
        if spec.dedicated:
            raise ValidationFailed(f"{spec.kind} requests are decided through their own operation")

        actor = self.load_actor(actor_id)
        record, version = self.store.get(spec.kind, record_id)

        if not self.resolver.can_decide(actor, spec.kind, record):
            raise Forbidden(f"You are not allowed to decide {spec.kind} #{record.id}")

        action = (action or "").strip().lower()
        to_status = spec.next_status(record.status, action)
        patch, note = self.decision_patch(spec, action, to_status, actor, payload)

        return self.apply_transition(spec, record, version, patch, actor, action, note=note)

    def decision_patch(self, spec, action, to_status, actor, payload):
        """Validate the decision payload and build the status patch."""
        payload = dict(payload or {})
        allowed = set(spec.required_fields.get(action, ())) | set(spec.optional_fields.get(action, ()))

        unknown = sorted(k for k in payload if k not in allowed)
        if unknown:
            raise ValidationFailed(
                f"Unexpected fields for '{action}': {', '.join(unknown)}",
                details={"fields": unknown},
            )

        cleaned = {}
        for name, value in payload.items():
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValidationFailed(f"'{name}' must be a string", details={"field": name})
            value = value.strip()
            if len(value) > MAX_TEXT:
                raise ValidationFailed(f"'{name}' is too long", details={"field": name})
            if value:
                cleaned[name] = value

        required = set(spec.required_fields.get(action, ()))
        if action == "reject" and self.config.get("REQUIRE_REJECTION_REASON"):
            required.add("reason")
        missing = sorted(required - set(cleaned))
        if missing:
            raise ValidationFailed(
                f"Missing required fields for '{action}': {', '.join(missing)}",
                details={"fields": missing},
            )

        now = datetime.utcnow()
        patch = {"status": to_status}
        if spec.is_terminal(to_status):
            patch["decided_by_id"] = actor.id
            patch["decided_at"] = now
            if action == "reject":
                # the slot always exists; empty when no reason was given
                patch["rejection_reason"] = cleaned.get("reason")

        for name, value in cleaned.items():
            column = _PAYLOAD_COLUMNS.get(name)
            if column and column != "rejection_reason" and hasattr(spec.model, column):
                patch[column] = value

        stamp = spec.timestamps.get(action)
        if stamp:
            patch[stamp] = now

        return patch, cleaned.get("note") or cleaned.get("reason")

    def apply_transition(self, spec, record, version, patch, actor, action, *, within=None, note=None):
        """Compare-and-swap the patch, then run side effects for the new status.

        Conflict propagates untouched: the losing writer must not run hooks.
        """
        old_status = record.status
        updated = self.store.conditional_update(spec.kind, record.id, version, patch, within=within)

        logger.info(
            "%s #%s: %s -(%s)-> %s by user_id=%s (v%s)",
            spec.kind, updated.id, old_status, action, updated.status, actor.id, updated.version,
        )
        write_audit(
            kind=spec.kind,
            record_id=updated.id,
            user_id=actor.id,
            action=action.upper(),
            old_status=old_status,
            new_status=updated.status,
            note=note,
        )

        updated = self._run_side_effects(spec, updated, actor)

        self.notify_users(
            [updated.requester_id],
            self._decision_message(spec, updated, actor, note),
            record=updated,
            actor_id=actor.id,
        )
        return updated

    # =========================
    # Side effects
    # =========================
    def _run_side_effects(self, spec, record, actor):
        # actor is session-bound and expired by the last commit
        actor_id = actor.id
        for hook in self.dispatcher.pending_hooks(record):
            try:
                marker = hook.run(record, actor)
            except Exception as exc:
                self.store.session.rollback()
                logger.exception("Side effect %s failed for %s #%s", hook.name, spec.kind, record.id)
                write_audit(
                    kind=spec.kind,
                    record_id=record.id,
                    user_id=actor_id,
                    action="SIDE_EFFECT_FAILED",
                    new_status=record.status,
                    note=f"{hook.name}: {exc}",
                )
                raise SideEffectFailed(
                    f"{spec.kind} #{record.id} is {record.status}, but {hook.name} did not complete; "
                    "it needs manual reconciliation",
                    record=record,
                    details={"hook": hook.name},
                ) from exc

            if marker:
                try:
                    record = self.store.conditional_update(spec.kind, record.id, record.version, marker)
                except Conflict as exc:
                    current, _version = self.store.get(spec.kind, record.id)
                    if hook.is_done(current):
                        logger.info(
                            "%s marker on %s #%s was set by a concurrent run", hook.name, spec.kind, record.id
                        )
                        record = current
                        continue
                    logger.error("Could not record %s marker on %s #%s", hook.name, spec.kind, record.id)
                    raise SideEffectFailed(
                        f"{hook.name} ran for {spec.kind} #{record.id} but its completion marker was not saved",
                        record=record,
                        details={"hook": hook.name},
                    ) from exc

            write_audit(
                kind=spec.kind,
                record_id=record.id,
                user_id=actor_id,
                action="SIDE_EFFECT_DONE",
                new_status=record.status,
                note=hook.name,
            )
        return record

    def retry_side_effects(self, actor_id, kind, record_id):
        """Re-run side effects whose marker is missing (operator reconciliation).

        A no-op when every hook for the record's status already ran.
        """
        spec = get_kind(kind)
        actor = self.load_actor(actor_id)
        record, _version = self.store.get(spec.kind, record_id)

        if not (self.resolver.is_admin(actor) or self.resolver.can_decide(actor, spec.kind, record)):
            raise Forbidden(f"You are not allowed to reconcile {spec.kind} #{record.id}")

        if not self.dispatcher.pending_hooks(record):
            return record

        logger.info("Retrying side effects for %s #%s by user_id=%s", spec.kind, record.id, actor.id)
        return self._run_side_effects(spec, record, actor)

    # =========================
    # Read
    # =========================
    def get_request(self, actor_id, kind, record_id):
        spec = get_kind(kind)
        actor = self.load_actor(actor_id)
        record, _version = self.store.get(spec.kind, record_id)
        if not self.resolver.can_view(actor, spec.kind, record):
            raise Forbidden(f"You are not allowed to view {spec.kind} #{record.id}")
        return record

    def available_actions(self, actor, kind, record) -> list:
        spec = get_kind(kind)
        if spec.is_terminal(record.status) or not self.resolver.can_decide(actor, spec.kind, record):
            return []
        return spec.actions_from(record.status)

    # =========================
    # Notifications
    # =========================
    @staticmethod
    def _decision_message(spec, record, actor, note):
        msg = f"Your {spec.kind.replace('_', ' ')} #{record.id} is now {record.status} ({actor.label})"
        if note:
            msg += f" | {note}"
        return msg

    def notify_users(self, user_ids, message, *, record, actor_id):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(
                user_ids,
                message,
                ntype="WORKFLOW",
                kind=record.kind,
                record_id=record.id,
                actor_id=actor_id,
            )
        except Exception:
            # fire-and-forget: a notifier failure never undoes a decision
            logger.exception("Notifier failed for %s #%s", record.kind, record.id)
