"""
Invoice Repository for Consultflow

Data access for invoices, credit notes and the per-(practitioner, series)
numbering counter.
"""

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BillingCadence, DocumentKind, InvoiceStatus
from ..core.exceptions import RepositoryException
from ..models.invoice import Invoice, InvoiceCounter
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class InvoiceRepository(BaseRepository[Invoice]):
    def __init__(self, db: Session):
        super().__init__(db, Invoice)
        self.logger = logging.getLogger(__name__)

    def get_for_booking(self, booking_id: str) -> Optional[Invoice]:
        """The per-booking invoice (never a credit note)."""
        query = self.db.query(Invoice).filter(
            Invoice.booking_id == booking_id,
            Invoice.document_kind == DocumentKind.INVOICE.value,
        )
        return self._execute_first(query)

    def insert_if_absent(self, **fields) -> Optional[Invoice]:
        """
        Insert inside a savepoint; None when a unique index already holds an
        equivalent row (a booking's invoice or a period's monthly draft).
        """
        try:
            with self.db.begin_nested():
                invoice = Invoice(**fields)
                self.db.add(invoice)
                self.db.flush()
            return invoice
        except IntegrityError:
            self.logger.info("Invoice insert lost to an existing row; caller re-reads it")
            return None
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to create invoice: {str(e)}")
            raise RepositoryException(f"Failed to create invoice: {str(e)}")

    def get_monthly_draft(
        self, practitioner_id: str, client_id: str, period_start: datetime, period_end: datetime
    ) -> Optional[Invoice]:
        query = (
            self.db.query(Invoice)
            .filter(
                Invoice.practitioner_id == practitioner_id,
                Invoice.client_id == client_id,
                Invoice.billing_type == BillingCadence.MONTHLY.value,
                Invoice.document_kind == DocumentKind.INVOICE.value,
                Invoice.status == InvoiceStatus.DRAFT.value,
                Invoice.period_start == period_start,
                Invoice.period_end == period_end,
            )
            .order_by(Invoice.created_at)
        )
        return self._execute_first(query)

    def get_credit_notes_for(self, invoice_id: str) -> List[Invoice]:
        query = self.db.query(Invoice).filter(
            Invoice.rectifies_invoice_id == invoice_id,
            Invoice.document_kind == DocumentKind.CREDIT_NOTE.value,
        )
        return self._execute_query(query)

    def next_number(self, practitioner_id: str, series: str) -> int:
        """
        Reserve the next number in ``series`` for the practitioner.

        The counter row is bumped with a conditional UPDATE so two issuers
        never read the same value; the first use of a series inserts it.
        """
        try:
            for _ in range(3):
                counter = (
                    self.db.query(InvoiceCounter)
                    .filter(
                        InvoiceCounter.practitioner_id == practitioner_id,
                        InvoiceCounter.series == series,
                    )
                    .first()
                )
                if counter is None:
                    try:
                        with self.db.begin_nested():
                            self.db.add(
                                InvoiceCounter(practitioner_id=practitioner_id, series=series, next_number=2)
                            )
                            self.db.flush()
                        return 1
                    except IntegrityError:
                        continue

                current = counter.next_number
                result = self.db.execute(
                    update(InvoiceCounter)
                    .where(
                        InvoiceCounter.practitioner_id == practitioner_id,
                        InvoiceCounter.series == series,
                        InvoiceCounter.next_number == current,
                    )
                    .values(next_number=current + 1)
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount == 1:
                    self.db.flush()
                    return int(current)
                self.db.expire(counter)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to reserve invoice number: {str(e)}")
            raise RepositoryException(f"Failed to reserve invoice number: {str(e)}")
        raise RepositoryException(f"Could not reserve invoice number in series {series}")
