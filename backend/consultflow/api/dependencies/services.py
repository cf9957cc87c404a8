# backend/consultflow/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Every request builds its own collaborators (processor, calendar client,
notifier) so no credentials or HTTP state are shared between practitioners.
"""

import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.config import settings
from ...integrations.analytics import LogAnalyticsSink
from ...integrations.google_calendar_client import GoogleCalendarClient
from ...integrations.invoice_pdf import InvoicePdfRenderer
from ...integrations.protocols import (
    AnalyticsSink,
    CalendarService,
    InvoicePdfGenerator,
    NotificationSink,
    PaymentProcessor,
)
from ...integrations.stripe_processor import StripePaymentProcessor
from ...services.booking_orchestrator import BookingOrchestrator
from ...services.cancellation_refund_service import CancellationRefundService
from ...services.checkout_service import CheckoutService
from ...services.email import ConsoleEmailService, EmailService
from ...services.invoice_aggregator import InvoiceAggregator
from ...services.invoice_service import InvoiceService
from ...services.payment_email_scheduler import PaymentEmailScheduler
from ...services.payment_webhook_reconciler import PaymentWebhookReconciler
from .database import get_db

logger = logging.getLogger(__name__)


def get_payment_processor() -> PaymentProcessor:
    return StripePaymentProcessor()


def get_calendar_service(db: Session = Depends(get_db)) -> CalendarService:
    return GoogleCalendarClient(db, timeout=settings.calendar_request_timeout_seconds)


def get_notification_sink(db: Session = Depends(get_db)) -> NotificationSink:
    """Resend-backed sender when an API key is configured, console logger otherwise."""
    if not settings.resend_api_key:
        logger.warning("RESEND_API_KEY not set; emails will be logged instead of sent")
        return ConsoleEmailService()
    return EmailService(db)


def get_analytics_sink() -> AnalyticsSink:
    return LogAnalyticsSink()


def get_pdf_generator(db: Session = Depends(get_db)) -> InvoicePdfGenerator:
    return InvoicePdfRenderer(db)


def get_invoice_service(
    db: Session = Depends(get_db),
    pdf_generator: InvoicePdfGenerator = Depends(get_pdf_generator),
) -> InvoiceService:
    return InvoiceService(db, pdf_generator=pdf_generator)


def get_booking_orchestrator(
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notification_sink),
    calendar: CalendarService = Depends(get_calendar_service),
    analytics: AnalyticsSink = Depends(get_analytics_sink),
) -> BookingOrchestrator:
    """
    Get booking orchestrator instance.

    Args:
        db: Database session
        notifier: Sends the creation-time payment request
        calendar: Stages the practitioner's calendar event
        analytics: Receives booking_created events

    Returns:
        BookingOrchestrator instance
    """
    return BookingOrchestrator(db, notifier, calendar, analytics=analytics)


def get_checkout_service(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    invoice_service: InvoiceService = Depends(get_invoice_service),
) -> CheckoutService:
    return CheckoutService(db, processor, invoice_service=invoice_service)


def get_webhook_reconciler(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: NotificationSink = Depends(get_notification_sink),
    calendar: CalendarService = Depends(get_calendar_service),
    analytics: AnalyticsSink = Depends(get_analytics_sink),
    invoice_service: InvoiceService = Depends(get_invoice_service),
) -> PaymentWebhookReconciler:
    return PaymentWebhookReconciler(
        db, processor, notifier, calendar, analytics=analytics, invoice_service=invoice_service
    )


def get_cancellation_refund_service(
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: NotificationSink = Depends(get_notification_sink),
    calendar: CalendarService = Depends(get_calendar_service),
    invoice_service: InvoiceService = Depends(get_invoice_service),
) -> CancellationRefundService:
    return CancellationRefundService(
        db, processor, notifier=notifier, calendar=calendar, invoice_service=invoice_service
    )


def get_payment_email_scheduler(
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notification_sink),
) -> PaymentEmailScheduler:
    return PaymentEmailScheduler(db, notifier)


def get_invoice_aggregator(
    db: Session = Depends(get_db),
    invoice_service: InvoiceService = Depends(get_invoice_service),
    notifier: NotificationSink = Depends(get_notification_sink),
) -> InvoiceAggregator:
    return InvoiceAggregator(db, invoice_service=invoice_service, notifier=notifier)
