# workflow/services.py
"""Wiring of the workflow collaborators for one Flask app."""

from dataclasses import dataclass

from flask import current_app

from permissions.directory import AssignmentDirectory
from permissions.resolver import RoleResolver
from services.finance_ledger import FinanceLedger
from services.notification_service import Notifier
from workflow.aggregator import Aggregator
from workflow.engine import WorkflowEngine
from workflow.side_effects import SideEffectDispatcher, default_dispatcher
from workflow.store import SqlAlchemyStore
from workflow.transfers import TransferNegotiator

EXTENSION_KEY = "request_workflow"

# config keys the engine reads
_ENGINE_KEYS = (
    "REQUIRE_REJECTION_REASON",
    "ADVANCE_MAX_AMOUNT",
    "ADVANCE_MAX_INSTALLMENTS",
    "DEFAULT_CURRENCY",
    "AUTO_ASSIGN_REVIEWERS",
)


@dataclass
class WorkflowServices:
    store: SqlAlchemyStore
    directory: AssignmentDirectory
    resolver: RoleResolver
    ledger: FinanceLedger
    notifier: Notifier
    dispatcher: SideEffectDispatcher
    engine: WorkflowEngine
    transfers: TransferNegotiator
    aggregator: Aggregator


def build_services(config, app=None, *, store=None, ledger=None, notifier=None) -> WorkflowServices:
    store = store or SqlAlchemyStore()
    directory = AssignmentDirectory()
    resolver = RoleResolver(store, directory, config.get("TRANSFER_OVERRIDE_ROLES") or ())
    ledger = ledger or FinanceLedger()
    notifier = notifier or Notifier()
    dispatcher = default_dispatcher(ledger, store)

    engine = WorkflowEngine(
        store,
        resolver,
        dispatcher,
        notifier=notifier,
        config={k: config.get(k) for k in _ENGINE_KEYS},
    )
    return WorkflowServices(
        store=store,
        directory=directory,
        resolver=resolver,
        ledger=ledger,
        notifier=notifier,
        dispatcher=dispatcher,
        engine=engine,
        transfers=TransferNegotiator(engine),
        aggregator=Aggregator(
            store,
            resolver,
            max_workers=config.get("AGGREGATOR_MAX_WORKERS", 6),
            app=app,
        ),
    )


def init_app(app) -> WorkflowServices:
    services = build_services(app.config, app)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> WorkflowServices:
    return current_app.extensions[EXTENSION_KEY]
