"""
Payment Repository for Consultflow

Implements data access for checkout payment sessions and the email
communication log.
"""

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import PaymentSessionStatus
from ..core.exceptions import RepositoryException
from ..models.payment import EmailCommunication, PaymentSession
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PaymentRepository(BaseRepository[PaymentSession]):
    """
    Repository for payment session data access.

    At most one session per booking or invoice is ``pending`` at a time;
    callers look one up with ``get_pending_for_*`` before creating another.
    """

    def __init__(self, db: Session):
        super().__init__(db, PaymentSession)
        self.logger = logging.getLogger(__name__)

    def get_pending_for_booking(self, booking_id: str) -> Optional[PaymentSession]:
        query = (
            self.db.query(PaymentSession)
            .filter(
                PaymentSession.booking_id == booking_id,
                PaymentSession.status == PaymentSessionStatus.PENDING.value,
            )
            .order_by(PaymentSession.created_at.desc())
        )
        return self._execute_first(query)

    def get_pending_for_invoice(self, invoice_id: str) -> Optional[PaymentSession]:
        query = (
            self.db.query(PaymentSession)
            .filter(
                PaymentSession.invoice_id == invoice_id,
                PaymentSession.status == PaymentSessionStatus.PENDING.value,
            )
            .order_by(PaymentSession.created_at.desc())
        )
        return self._execute_first(query)

    def list_pending_for_booking(self, booking_id: str) -> List[PaymentSession]:
        query = self.db.query(PaymentSession).filter(
            PaymentSession.booking_id == booking_id,
            PaymentSession.status == PaymentSessionStatus.PENDING.value,
        )
        return self._execute_query(query)

    def get_completed_for_booking(self, booking_id: str) -> Optional[PaymentSession]:
        query = (
            self.db.query(PaymentSession)
            .filter(
                PaymentSession.booking_id == booking_id,
                PaymentSession.status == PaymentSessionStatus.COMPLETED.value,
            )
            .order_by(PaymentSession.completed_at.desc())
        )
        return self._execute_first(query)

    def get_by_stripe_session_id(self, stripe_session_id: str) -> Optional[PaymentSession]:
        query = self.db.query(PaymentSession).filter(PaymentSession.stripe_session_id == stripe_session_id)
        return self._execute_first(query)

    def mark_completed(
        self, session: PaymentSession, payment_intent_id: Optional[str], completed_at: datetime
    ) -> PaymentSession:
        session.status = PaymentSessionStatus.COMPLETED.value
        session.completed_at = completed_at
        if payment_intent_id:
            session.stripe_payment_intent_id = payment_intent_id
        self.flush()
        return session

    def mark_cancelled(self, session: PaymentSession) -> PaymentSession:
        session.status = PaymentSessionStatus.CANCELLED.value
        self.flush()
        return session

    # ========== Email communications ==========

    def log_email(
        self,
        *,
        practitioner_id: str,
        email_type: str,
        recipient_email: str,
        status: str,
        client_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        bill_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        subject: Optional[str] = None,
        provider_message_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> EmailCommunication:
        try:
            row = EmailCommunication(
                practitioner_id=practitioner_id,
                client_id=client_id,
                booking_id=booking_id,
                bill_id=bill_id,
                invoice_id=invoice_id,
                email_type=email_type,
                recipient_email=recipient_email,
                subject=subject,
                status=status,
                provider_message_id=provider_message_id,
                error_message=error_message,
            )
            self.db.add(row)
            self.db.flush()
            return row
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to log email communication: {str(e)}")
            raise RepositoryException(f"Failed to log email communication: {str(e)}")

    def list_emails_for_booking(self, booking_id: str) -> List[EmailCommunication]:
        try:
            return (
                self.db.query(EmailCommunication)
                .filter(EmailCommunication.booking_id == booking_id)
                .order_by(EmailCommunication.created_at)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to list email communications: {str(e)}")
            raise RepositoryException(f"Failed to list email communications: {str(e)}")
