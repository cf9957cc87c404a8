# backend/consultflow/repositories/factory.py
"""
Repository Factory for Consultflow

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from .base_repository import BaseRepository

# Avoid circular imports
if TYPE_CHECKING:
    from .bill_repository import BillRepository
    from .billing_settings_repository import BillingSettingsRepository
    from .booking_repository import BookingRepository
    from .calendar_repository import CalendarRepository
    from .invoice_repository import InvoiceRepository
    from .payment_repository import PaymentRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation to ensure consistent initialization
    and makes it easy to swap implementations if needed.
    """

    @staticmethod
    def create_base_repository(db: Session, model) -> BaseRepository:
        """Create a generic base repository for any model."""
        return BaseRepository(db, model)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking operations."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_bill_repository(db: Session) -> "BillRepository":
        """Create repository for bill snapshots and the email sweeper claim."""
        from .bill_repository import BillRepository

        return BillRepository(db)

    @staticmethod
    def create_billing_settings_repository(db: Session) -> "BillingSettingsRepository":
        from .billing_settings_repository import BillingSettingsRepository

        return BillingSettingsRepository(db)

    @staticmethod
    def create_calendar_repository(db: Session) -> "CalendarRepository":
        from .calendar_repository import CalendarRepository

        return CalendarRepository(db)

    @staticmethod
    def create_invoice_repository(db: Session) -> "InvoiceRepository":
        """Create repository for invoices, credit notes and numbering."""
        from .invoice_repository import InvoiceRepository

        return InvoiceRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> "PaymentRepository":
        """Create repository for payment sessions and email logs."""
        from .payment_repository import PaymentRepository

        return PaymentRepository(db)
