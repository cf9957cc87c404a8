# backend/consultflow/models/__init__.py
"""
Database models for Consultflow.

Importing this package registers every table on ``Base.metadata``.
"""

from consultflow.models.bill import Bill
from consultflow.models.billing_settings import BillingSettings
from consultflow.models.booking import Booking
from consultflow.models.calendar import CalendarCredential, CalendarEvent
from consultflow.models.invoice import Invoice, InvoiceCounter
from consultflow.models.payment import EmailCommunication, PaymentSession
from consultflow.models.practitioner import Client, Practitioner

__all__ = [
    "Bill",
    "BillingSettings",
    "Booking",
    "CalendarCredential",
    "CalendarEvent",
    "Client",
    "EmailCommunication",
    "Invoice",
    "InvoiceCounter",
    "PaymentSession",
    "Practitioner",
]
