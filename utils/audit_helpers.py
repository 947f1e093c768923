import logging

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import AuditLog

logger = logging.getLogger(__name__)


def write_audit(*, kind, record_id, user_id, action, old_status=None, new_status=None, note=None):
    """Append an audit row in its own commit. Audit loss is logged, not raised."""
    try:
        db.session.add(AuditLog(
            kind=kind,
            record_id=record_id,
            user_id=user_id,
            action=action,
            old_status=old_status,
            new_status=new_status,
            note=note,
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Audit write failed: %s %s #%s", action, kind, record_id)


def audit_trail(kind, record_id) -> list:
    return (
        AuditLog.query
        .filter_by(kind=kind, record_id=record_id)
        .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
        .all()
    )
