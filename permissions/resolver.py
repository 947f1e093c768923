# permissions/resolver.py
"""Role & assignment resolver.

Evaluated on every call: assignment membership can change between listing a
request and acting on it, so nothing here is cached.
"""

from __future__ import annotations

from workflow.registry import DECIDE_PARTY, get_kind

# Authority levels that act as an implicit assignment to every kind
GLOBAL_ROLES = ("admin", "manager", "team_lead", "director")

# Roles that may propose a transfer for a task they neither own nor created
TRANSFER_PROPOSER_ROLES = ("team_lead", "manager", "director", "admin")

# Record columns that make an actor a party to a request
_PARTY_COLUMNS = ("assigned_to_id", "to_user_id", "from_user_id")


class RoleResolver:
    def __init__(self, store, directory, transfer_override_roles=()):
        self.store = store
        self.directory = directory
        self.transfer_override_roles = tuple(transfer_override_roles or ())

    def has_global_role(self, actor) -> bool:
        return actor is not None and actor.has_role(*GLOBAL_ROLES)

    def can_view_kind(self, actor, kind: str) -> bool:
        """Kind-wide visibility: global management role or a kind assignment."""
        if actor is None:
            return False
        spec = get_kind(kind)
        if self.has_global_role(actor):
            return True
        return spec.kind in self.directory.list_assignments(actor.id)

    def can_view(self, actor, kind: str, record) -> bool:
        if actor is None:
            return False
        if record.requester_id == actor.id:
            return True
        if self.can_view_kind(actor, kind):
            return True
        if any(getattr(record, col, None) == actor.id for col in _PARTY_COLUMNS):
            return True
        spec = get_kind(kind)
        # the designated approver of an expense sees it without any assignment
        if spec.decide_predicate is not None and spec.decide_policy != DECIDE_PARTY:
            return bool(spec.decide_predicate(self, actor, record))
        return False

    def can_decide(self, actor, kind: str, record) -> bool:
        if actor is None:
            return False
        spec = get_kind(kind)

        if spec.decide_policy == DECIDE_PARTY:
            return bool(spec.decide_predicate and spec.decide_predicate(self, actor, record))

        if not self.can_view_kind(actor, kind):
            return False
        if spec.decide_predicate is not None:
            return bool(spec.decide_predicate(self, actor, record))
        return True

    def can_propose_transfer(self, actor, task) -> bool:
        if actor is None or task is None:
            return False
        if actor.id in (task.assigned_to_id, task.created_by_id):
            return True
        return actor.has_role(*TRANSFER_PROPOSER_ROLES)

    def is_admin(self, actor) -> bool:
        return actor is not None and actor.has_role("admin")
