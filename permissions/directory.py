# permissions/directory.py
"""Assignment directory: which request kinds an actor may review beyond
their global role. Always read fresh; callers own any caching."""

import logging

from extensions import db
from models import ReviewerAssignment

logger = logging.getLogger(__name__)


class AssignmentDirectory:
    def list_assignments(self, actor_id) -> set:
        if actor_id is None:
            return set()
        rows = (
            db.session.query(ReviewerAssignment.kind)
            .filter(
                ReviewerAssignment.user_id == int(actor_id),
                ReviewerAssignment.is_active.is_(True),
            )
            .all()
        )
        return {kind for (kind,) in rows}

    def reviewers_for(self, kind: str) -> list:
        rows = (
            db.session.query(ReviewerAssignment.user_id)
            .filter(
                ReviewerAssignment.kind == kind,
                ReviewerAssignment.is_active.is_(True),
            )
            .order_by(ReviewerAssignment.user_id.asc())
            .all()
        )
        return [uid for (uid,) in rows]

    def grant(self, user_id: int, kind: str, *, granted_by_id=None) -> ReviewerAssignment:
        row = ReviewerAssignment.query.filter_by(user_id=user_id, kind=kind).first()
        if row:
            row.is_active = True
        else:
            row = ReviewerAssignment(user_id=user_id, kind=kind, created_by_id=granted_by_id)
            db.session.add(row)
        db.session.commit()
        logger.info("Granted %s review to user_id=%s (by %s)", kind, user_id, granted_by_id)
        return row

    def revoke(self, user_id: int, kind: str) -> bool:
        row = ReviewerAssignment.query.filter_by(user_id=user_id, kind=kind, is_active=True).first()
        if not row:
            return False
        row.is_active = False
        db.session.commit()
        logger.info("Revoked %s review from user_id=%s", kind, user_id)
        return True

    def list_all(self, kind=None) -> list:
        q = ReviewerAssignment.query.filter(ReviewerAssignment.is_active.is_(True))
        if kind:
            q = q.filter(ReviewerAssignment.kind == kind)
        return q.order_by(ReviewerAssignment.kind.asc(), ReviewerAssignment.user_id.asc()).all()
