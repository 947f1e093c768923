# workflow/store.py
"""Request record store over Flask-SQLAlchemy.

Reads hand back detached snapshots together with the version they were read
at, so a decision is always evaluated against the state it loaded even if a
competing writer commits in between. Every write is a version-conditioned
UPDATE; nothing else in the package mutates request rows.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Project, Task, User
from workflow.errors import Conflict, NotFound
from workflow.registry import get_kind

logger = logging.getLogger(__name__)

# columns a patch is never allowed to touch
_IMMUTABLE = frozenset({"id", "requester_id", "created_at", "version"})


class SqlAlchemyStore:
    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    def _detach(self, obj):
        if obj is not None:
            self.session.expunge(obj)
        return obj

    # =========================
    # Request records
    # =========================
    def get(self, kind: str, record_id):
        """Return ``(record, version)`` or raise NotFound."""
        spec = get_kind(kind)
        try:
            rid = int(record_id)
        except (TypeError, ValueError):
            raise NotFound(f"{kind} #{record_id} not found")

        record = self.session.get(spec.model, rid, populate_existing=True)
        if record is None:
            raise NotFound(f"{kind} #{record_id} not found")
        version = record.version
        return self._detach(record), version

    def list_by_kind(self, kind: str, *, requester_id=None, involving_id=None, statuses=None, since=None, task_id=None) -> list:
        spec = get_kind(kind)
        model = spec.model
        q = model.query

        if task_id is not None and hasattr(model, "task_id"):
            q = q.filter(model.task_id == int(task_id))

        if requester_id is not None:
            q = q.filter(model.requester_id == requester_id)

        if involving_id is not None:
            conds = [model.requester_id == involving_id]
            for col in ("assigned_to_id", "to_user_id", "from_user_id"):
                if hasattr(model, col):
                    conds.append(getattr(model, col) == involving_id)
            if hasattr(model, "task_id"):
                conds.append(model.task_id.in_(self.approver_task_ids(involving_id)))
            q = q.filter(db.or_(*conds))

        if statuses:
            q = q.filter(model.status.in_(list(statuses)))

        if since is not None:
            q = q.filter(model.created_at >= since)

        rows = q.order_by(model.created_at.desc(), model.id.desc()).all()
        for row in rows:
            self.session.expunge(row)
        return rows

    def insert(self, kind: str, fields: dict):
        spec = get_kind(kind)
        now = datetime.utcnow()
        record = spec.model(**fields)
        if not record.status:
            record.status = spec.initial
        record.version = 1
        record.created_at = fields.get("created_at") or now
        record.updated_at = now
        try:
            self.session.add(record)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Insert failed for kind=%s", kind)
            raise
        rid = record.id
        return self.get(kind, rid)[0]

    def conditional_update(
        self,
        kind: str,
        record_id,
        expected_version: int,
        patch: dict,
        *,
        within: Optional[Callable] = None,
    ):
        """Compare-and-swap write.

        Applies ``patch`` and bumps ``version`` only if the row still holds
        ``expected_version``. ``within(session)`` runs inside the same
        transaction and may raise to abort it. Raises Conflict when the
        version no longer matches.
        """
        spec = get_kind(kind)
        model = spec.model
        bad = _IMMUTABLE.intersection(patch)
        if bad:
            raise ValueError(f"immutable fields in patch: {sorted(bad)}")

        values = dict(patch)
        values["version"] = expected_version + 1
        values["updated_at"] = datetime.utcnow()

        try:
            result = self.session.execute(
                update(model)
                .where(model.id == int(record_id), model.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.session.rollback()
                raise Conflict(
                    f"{kind} #{record_id} was changed by someone else",
                    details={"expected_version": expected_version},
                )
            if within is not None:
                within(self.session)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Conditional update failed for %s #%s", kind, record_id)
            raise
        except Exception:
            self.session.rollback()
            raise

        return self.get(kind, record_id)[0]

    # =========================
    # Collaborator lookups
    # =========================
    def get_user(self, user_id) -> Optional[User]:
        if user_id is None:
            return None
        try:
            return self.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    def get_task(self, task_id) -> Optional[Task]:
        if task_id is None:
            return None
        try:
            return self.session.get(Task, int(task_id))
        except (TypeError, ValueError):
            return None

    def get_project(self, project_id) -> Optional[Project]:
        if project_id is None:
            return None
        return self.session.get(Project, int(project_id))

    def designated_approver_id(self, task_id):
        """Task approver, falling back to the owning project's manager."""
        task = self.get_task(task_id)
        if task is None:
            return None
        if task.approver_id:
            return task.approver_id
        project = self.get_project(task.project_id)
        return project.project_manager_id if project else None

    def approver_task_ids(self, user_id):
        """Select of task ids whose expenses ``user_id`` approves."""
        managed_projects = select(Project.id).where(Project.project_manager_id == user_id)
        return select(Task.id).where(
            db.or_(
                Task.approver_id == user_id,
                db.and_(Task.approver_id.is_(None), Task.project_id.in_(managed_projects)),
            )
        )
