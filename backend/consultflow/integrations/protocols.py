# backend/consultflow/integrations/protocols.py
"""
Interfaces for the external collaborators of the booking lifecycle.

Services receive these through their constructors so each request builds
its own client and tests can pass in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from consultflow.core.enums import CalendarVariant, EmailKind


@dataclass(frozen=True)
class CheckoutLineItem:
    name: str
    amount_cents: int
    currency: str
    quantity: int = 1
    description: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: Optional[str]
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CalendarEventRef:
    external_event_id: str
    meet_link: Optional[str] = None


@dataclass(frozen=True)
class CalendarEventRequest:
    summary: str
    start: datetime
    end: datetime
    attendees: Sequence[str]
    notes: Optional[str] = None
    location: Optional[str] = None
    with_video_link: bool = False


@dataclass
class NotificationResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    subject: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    """Verified processor event reduced to what the reconciler reads."""

    id: str
    type: str
    data: Dict[str, Any]
    account: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    """Hosted-checkout payment processor (Stripe in production)."""

    def create_checkout_session(
        self,
        *,
        line_items: List[CheckoutLineItem],
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        customer_email: Optional[str] = None,
        connected_account_id: Optional[str] = None,
        application_fee_cents: int = 0,
    ) -> CheckoutSession:
        ...

    def expire_session(self, session_id: str, *, connected_account_id: Optional[str] = None) -> None:
        ...

    def refund(
        self,
        payment_intent_id: str,
        *,
        reason: str,
        metadata: Mapping[str, str],
        connected_account_id: Optional[str] = None,
    ) -> str:
        ...

    def get_receipt_url(
        self, payment_intent_id: str, *, connected_account_id: Optional[str] = None
    ) -> Optional[str]:
        ...


class CalendarService(Protocol):
    def create_event(
        self, practitioner_id: str, variant: CalendarVariant, request: CalendarEventRequest
    ) -> CalendarEventRef:
        ...

    def upgrade_to_confirmed(
        self,
        practitioner_id: str,
        external_event_id: str,
        attendees: Sequence[str],
        summary: Optional[str] = None,
    ) -> CalendarEventRef:
        ...

    def cancel_event(self, practitioner_id: str, external_event_id: str) -> None:
        ...

    def delete_event(self, practitioner_id: str, external_event_id: str) -> None:
        ...


class NotificationSink(Protocol):
    def send(self, kind: EmailKind, recipient: str, data: Mapping[str, Any]) -> NotificationResult:
        ...


class AnalyticsSink(Protocol):
    def track(self, event: str, distinct_id: str, properties: Mapping[str, Any]) -> None:
        ...


class InvoicePdfGenerator(Protocol):
    def generate_and_store(self, invoice_id: str) -> Optional[str]:
        ...
