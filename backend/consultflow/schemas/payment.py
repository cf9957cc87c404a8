"""
Payment, refund, invoicing and job result schemas.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from .base import StandardizedModel


class CheckoutResult(StandardizedModel):
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    reused: bool = False
    already_paid: bool = False


class RefundResult(StandardizedModel):
    booking_id: str
    bill_id: str
    refund_id: str
    amount: Decimal
    credit_note_id: Optional[str] = None


class PaymentCancellationResult(StandardizedModel):
    booking_id: str
    cancelled_sessions: int = 0
    canceled_bills: int = 0


class BookingCancellationResult(StandardizedModel):
    booking_id: str
    status: str
    already_canceled: bool = False
    refund: Optional[RefundResult] = None
    payment_cancellation: Optional[PaymentCancellationResult] = None


class WebhookResponse(StandardizedModel):
    status: str
    event_type: Optional[str] = None
    message: Optional[str] = None


class SweepResult(StandardizedModel):
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    failed_bill_ids: List[str] = Field(default_factory=list)


class AggregationResult(StandardizedModel):
    invoice_id: str
    linked_bill_ids: List[str]
    unlinked_bill_ids: List[str] = Field(default_factory=list)
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    created: bool = False


class GroupError(StandardizedModel):
    practitioner_id: str
    client_id: str
    error: str


class MonthlyConsolidationResult(StandardizedModel):
    period_label: str
    period_start: str
    period_end: str
    groups: int = 0
    invoices: int = 0
    linked_bills: int = 0
    emails_sent: int = 0
    errors: List[GroupError] = Field(default_factory=list)
