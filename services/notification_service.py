"""Fire-and-forget notifications.

Delivery is somebody else's problem: we only write Notification rows. A
failure here is logged and never reaches the decision that triggered it.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import Notification

logger = logging.getLogger(__name__)


class Notifier:
    def notify(self, user_ids, message, *, ntype="INFO", kind=None, record_id=None, actor_id=None, skip_actor=True):
        unique_ids = {int(uid) for uid in (user_ids or []) if uid}
        if skip_actor and actor_id:
            unique_ids.discard(int(actor_id))
        if not unique_ids:
            return 0

        now = datetime.utcnow()
        event_key = uuid.uuid4().hex
        try:
            db.session.add_all([
                Notification(
                    user_id=uid,
                    message=(message or "")[:255],
                    type=ntype,
                    is_read=False,
                    created_at=now,
                    kind=kind,
                    record_id=record_id,
                    actor_id=actor_id,
                    event_key=event_key,
                )
                for uid in sorted(unique_ids)
            ])
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Notification delivery failed (kind=%s record_id=%s)", kind, record_id)
            return 0
        return len(unique_ids)
