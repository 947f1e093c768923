# workflow/registry.py
"""Request kind registry.

Single source of truth for every kind's statuses and legal moves. The engine
looks transitions up here and never branches on the kind itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from models import (
    AdvanceRequest,
    LeaveRequest,
    Suggestion,
    SupportTicket,
    TaskExpense,
    TaskTransfer,
)
from workflow.errors import IllegalTransition, UnknownKind

# Who may decide a kind:
#   REVIEWER: global role or kind assignment (plus an optional record predicate)
#   PARTY:    only the record predicate (e.g. the transfer target)
DECIDE_REVIEWER = "REVIEWER"
DECIDE_PARTY = "PARTY"


@dataclass(frozen=True)
class KindSpec:
    kind: str
    model: type
    statuses: tuple
    initial: str
    terminal: frozenset
    # (from_status, action) -> to_status
    transitions: dict
    # action -> payload fields that must be present
    required_fields: dict = field(default_factory=dict)
    # action -> payload fields that may be present
    optional_fields: dict = field(default_factory=dict)
    # text columns searched by the aggregator
    search_fields: tuple = ()
    decide_policy: str = DECIDE_REVIEWER
    # record-level capability predicate: (resolver, actor, record) -> bool
    decide_predicate: Optional[Callable] = None
    # action -> timestamp column stamped when the action is applied
    timestamps: dict = field(default_factory=dict)
    # kinds that get an auto-assigned reviewer on submit
    auto_assign: bool = False
    # kinds routed to the requester's line manager on submit
    assign_to_manager: bool = False
    # created and decided only through a dedicated component (transfers)
    dedicated: bool = False

    def actions_from(self, status: str) -> list:
        return sorted(a for (s, a) in self.transitions if s == status)

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal

    def next_status(self, status: str, action: str) -> str:
        action = (action or "").strip().lower()
        to_status = self.transitions.get((status, action))
        if to_status is None:
            raise IllegalTransition(
                f"{self.kind}: action '{action}' is not allowed from status '{status}'",
                details={"status": status, "action": action, "allowed": self.actions_from(status)},
            )
        return to_status

    def reachable_statuses(self) -> set:
        seen = {self.initial}
        frontier = [self.initial]
        while frontier:
            current = frontier.pop()
            for (src, _action), dst in self.transitions.items():
                if src == current and dst not in seen:
                    seen.add(dst)
                    frontier.append(dst)
        return seen


_APPROVAL_TRANSITIONS = {
    ("pending", "approve"): "approved",
    ("pending", "reject"): "rejected",
}

_REGISTRY: dict = {}


def register_kind(spec: KindSpec) -> KindSpec:
    _REGISTRY[spec.kind] = spec
    return spec


def get_kind(kind: str) -> KindSpec:
    spec = _REGISTRY.get((kind or "").strip().lower())
    if spec is None:
        raise UnknownKind(f"Unknown request kind: {kind!r}")
    return spec


def all_kinds() -> list:
    return list(_REGISTRY.keys())


def all_specs() -> list:
    return list(_REGISTRY.values())


# =========================
# Record-level predicates
# =========================
def _is_task_expense_approver(resolver, actor, record) -> bool:
    approver_id = resolver.store.designated_approver_id(record.task_id)
    return approver_id is not None and approver_id == actor.id


def _is_transfer_target(resolver, actor, record) -> bool:
    if record.to_user_id == actor.id:
        return True
    override_roles = resolver.transfer_override_roles
    return bool(override_roles) and actor.has_role(*override_roles)


# =========================
# Kinds
# =========================
register_kind(KindSpec(
    kind="support_ticket",
    model=SupportTicket,
    statuses=("open", "in_progress", "resolved", "closed"),
    initial="open",
    terminal=frozenset({"closed"}),
    transitions={
        ("open", "start"): "in_progress",
        ("in_progress", "resolve"): "resolved",
        ("resolved", "close"): "closed",
    },
    optional_fields={"resolve": ("note",), "close": ("note",)},
    timestamps={"resolve": "resolved_at"},
    search_fields=("title", "description", "category"),
    auto_assign=True,
))

register_kind(KindSpec(
    kind="leave_request",
    model=LeaveRequest,
    statuses=("pending", "approved", "rejected"),
    initial="pending",
    terminal=frozenset({"approved", "rejected"}),
    transitions=dict(_APPROVAL_TRANSITIONS),
    optional_fields={"reject": ("reason",), "approve": ("note",)},
    search_fields=("reason", "leave_type"),
    assign_to_manager=True,
))

register_kind(KindSpec(
    kind="advance_request",
    model=AdvanceRequest,
    statuses=("pending", "approved", "rejected"),
    initial="pending",
    terminal=frozenset({"approved", "rejected"}),
    transitions=dict(_APPROVAL_TRANSITIONS),
    optional_fields={"reject": ("reason",), "approve": ("note",)},
    search_fields=("reason",),
    auto_assign=True,
))

register_kind(KindSpec(
    kind="suggestion",
    model=Suggestion,
    statuses=("pending", "reviewed", "implemented", "rejected"),
    initial="pending",
    terminal=frozenset({"implemented", "rejected"}),
    transitions={
        ("pending", "review"): "reviewed",
        ("pending", "reject"): "rejected",
        ("reviewed", "implement"): "implemented",
        ("reviewed", "reject"): "rejected",
    },
    optional_fields={
        "review": ("response",),
        "implement": ("response",),
        "reject": ("reason", "response"),
    },
    search_fields=("subject", "description"),
    auto_assign=True,
))

register_kind(KindSpec(
    kind="task_transfer",
    model=TaskTransfer,
    statuses=("pending", "accepted", "rejected"),
    initial="pending",
    terminal=frozenset({"accepted", "rejected"}),
    transitions={
        ("pending", "accept"): "accepted",
        ("pending", "reject"): "rejected",
    },
    optional_fields={"accept": ("note",), "reject": ("reason",)},
    search_fields=("reason",),
    decide_policy=DECIDE_PARTY,
    decide_predicate=_is_transfer_target,
    dedicated=True,
))

register_kind(KindSpec(
    kind="task_expense",
    model=TaskExpense,
    statuses=("pending", "approved", "rejected"),
    initial="pending",
    terminal=frozenset({"approved", "rejected"}),
    transitions=dict(_APPROVAL_TRANSITIONS),
    optional_fields={"reject": ("reason",), "approve": ("note",)},
    search_fields=("title", "description", "vendor", "category"),
    decide_predicate=_is_task_expense_approver,
))
