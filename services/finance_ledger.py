"""Finance ledger collaborator.

Lives in its own bind (``finance``). ``record_expense`` is idempotent on the
entry's reference number, so replaying the same approval returns the entry
that already exists instead of booking it twice.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import FinanceLedgerEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    amount: Decimal
    currency: str
    category: str
    description: str
    employee_id: int
    approved_by_id: int
    reference_number: str
    task_id: Optional[int] = None
    project_id: Optional[int] = None
    entry_date: Optional[date] = None
    entry_type: str = "expense"


class FinanceLedger:
    def find_by_reference(self, reference_number: str) -> Optional[FinanceLedgerEntry]:
        return FinanceLedgerEntry.query.filter_by(reference_number=reference_number).first()

    def record_expense(self, entry: LedgerEntry) -> int:
        existing = self.find_by_reference(entry.reference_number)
        if existing:
            logger.info("Ledger entry %s already booked as #%s", entry.reference_number, existing.id)
            return existing.id

        row = FinanceLedgerEntry(
            entry_type=entry.entry_type,
            amount=entry.amount,
            currency=entry.currency,
            category=entry.category,
            description=entry.description,
            entry_date=entry.entry_date,
            employee_id=entry.employee_id,
            task_id=entry.task_id,
            project_id=entry.project_id,
            approved_by_id=entry.approved_by_id,
            reference_number=entry.reference_number,
        )
        try:
            db.session.add(row)
            db.session.commit()
        except IntegrityError:
            # lost a race with another booking of the same reference
            db.session.rollback()
            existing = self.find_by_reference(entry.reference_number)
            if existing is None:
                raise
            return existing.id
        except SQLAlchemyError:
            # leave the shared session usable for the caller's audit write
            db.session.rollback()
            logger.exception("Booking ledger entry %s failed", entry.reference_number)
            raise

        logger.info("Booked ledger entry #%s (%s %s %s)", row.id, entry.reference_number, entry.amount, entry.currency)
        return row.id
