# backend/consultflow/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from .database import get_db
from .services import (
    get_analytics_sink,
    get_booking_orchestrator,
    get_calendar_service,
    get_cancellation_refund_service,
    get_checkout_service,
    get_invoice_aggregator,
    get_invoice_service,
    get_notification_sink,
    get_payment_email_scheduler,
    get_payment_processor,
    get_pdf_generator,
    get_webhook_reconciler,
)

__all__ = [
    # Database
    "get_db",
    # Collaborators
    "get_analytics_sink",
    "get_calendar_service",
    "get_notification_sink",
    "get_payment_processor",
    "get_pdf_generator",
    # Services
    "get_booking_orchestrator",
    "get_cancellation_refund_service",
    "get_checkout_service",
    "get_invoice_aggregator",
    "get_invoice_service",
    "get_payment_email_scheduler",
    "get_webhook_reconciler",
]
