# backend/consultflow/core/enums.py
"""Lifecycle enums shared by models, services and schemas."""

from enum import Enum


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"  # Awaiting payment before being confirmed
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELED = "canceled"


class BillingCadence(str, Enum):
    PER_BOOKING = "per_booking"
    MONTHLY = "monthly"


class BillStatus(str, Enum):
    SCHEDULED = "scheduled"  # Payment email owned by the sweeper
    PENDING = "pending"
    SENT = "sent"
    PAID = "paid"
    DISPUTED = "disputed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


PAYABLE_BILL_STATUSES = frozenset({BillStatus.SCHEDULED, BillStatus.PENDING, BillStatus.SENT})


class CalendarEventType(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class CalendarEventStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class CalendarVariant(str, Enum):
    """What kind of external event to stage for a booking."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    INTERNAL_CONFIRMED = "internal_confirmed"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELED = "canceled"


class DocumentKind(str, Enum):
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"


class PaymentSessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ConsultationMode(str, Enum):
    ONLINE = "online"
    IN_PERSON = "in_person"


class ConsultationType(str, Enum):
    FIRST = "first"
    FOLLOWUP = "followup"


class EmailKind(str, Enum):
    """Notification templates understood by the notification sink."""

    PAYMENT_REQUEST = "payment_request"
    MONTHLY_PAYMENT_REQUEST = "monthly_payment_request"
    RECEIPT = "receipt"
    MONTHLY_RECEIPT = "monthly_receipt"
    CANCELLATION = "cancellation"
    REFUND = "refund"


class EmailCommunicationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
