"""External service integrations for the Consultflow platform."""

from .analytics import LogAnalyticsSink
from .google_calendar_client import GoogleCalendarClient, GoogleCalendarError
from .invoice_pdf import InvoicePdfRenderer
from .stripe_processor import StripePaymentProcessor, verify_webhook

__all__ = [
    "GoogleCalendarClient",
    "GoogleCalendarError",
    "InvoicePdfRenderer",
    "LogAnalyticsSink",
    "StripePaymentProcessor",
    "verify_webhook",
]
