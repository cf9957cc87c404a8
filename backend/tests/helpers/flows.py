"""Small multi-step helpers shared by service and route tests."""

from typing import Optional

from consultflow.integrations.protocols import WebhookEvent
from consultflow.services.checkout_service import CheckoutService
from consultflow.services.payment_webhook_reconciler import CHECKOUT_COMPLETED, PaymentWebhookReconciler


def checkout_completed_event(
    session_id: str,
    *,
    booking_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    payment_intent: Optional[str] = "pi_test_1",
    account: Optional[str] = None,
    event_id: str = "evt_test_1",
    amount_total: Optional[int] = None,
) -> WebhookEvent:
    metadata = {}
    if booking_id:
        metadata["booking_id"] = booking_id
    if invoice_id:
        metadata["invoice_id"] = invoice_id
    data = {"id": session_id, "payment_intent": payment_intent, "metadata": dict(metadata)}
    if amount_total is not None:
        data["amount_total"] = amount_total
    return WebhookEvent(
        id=event_id,
        type=CHECKOUT_COMPLETED,
        data=data,
        account=account,
        metadata=metadata,
    )


def pay_booking(
    checkout_service: CheckoutService,
    reconciler: PaymentWebhookReconciler,
    booking_id: str,
    payment_intent: str = "pi_test_1",
) -> str:
    """Open checkout for the booking and deliver its completion event; returns the session id."""
    checkout = checkout_service.checkout_for_booking(booking_id)
    reconciler.handle_event(
        checkout_completed_event(checkout.session_id, booking_id=booking_id, payment_intent=payment_intent)
    )
    return checkout.session_id
