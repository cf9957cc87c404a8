# backend/consultflow/routes/v1/payments.py
"""
Payment routes - API v1

Endpoints:
    GET /bookings/{booking_id}   → Redirect to (new or reused) checkout for a booking
    GET /invoices/{invoice_id}   → Redirect to checkout for a monthly invoice
    POST /webhooks/stripe        → Handle Stripe webhooks
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
import stripe

from ...api.dependencies import get_checkout_service, get_webhook_reconciler
from ...core.config import settings
from ...core.exceptions import DomainException
from ...integrations.stripe_processor import verify_webhook
from ...schemas.payment import CheckoutResult, WebhookResponse
from ...services.checkout_service import CheckoutService
from ...services.payment_webhook_reconciler import PaymentWebhookReconciler
from .bookings import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments-v1"])


def _redirect(result: CheckoutResult, paid_path: str) -> RedirectResponse:
    if result.already_paid or not result.checkout_url:
        return RedirectResponse(f"{settings.public_base_url}{paid_path}", status_code=303)
    return RedirectResponse(result.checkout_url, status_code=303)


@router.get("/bookings/{booking_id}", response_class=RedirectResponse)
async def pay_booking(
    booking_id: str,
    checkout_service: CheckoutService = Depends(get_checkout_service),
) -> RedirectResponse:
    """Payment link target from the payment request email."""
    try:
        result = await asyncio.to_thread(checkout_service.checkout_for_booking, booking_id)
    except DomainException as e:
        handle_domain_exception(e)
    return _redirect(result, f"/payment/success?booking_id={booking_id}")


@router.get("/invoices/{invoice_id}", response_class=RedirectResponse)
async def pay_invoice(
    invoice_id: str,
    checkout_service: CheckoutService = Depends(get_checkout_service),
) -> RedirectResponse:
    try:
        result = await asyncio.to_thread(checkout_service.checkout_for_invoice, invoice_id)
    except DomainException as e:
        handle_domain_exception(e)
    return _redirect(result, f"/payment/success?invoice_id={invoice_id}")


@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    reconciler: PaymentWebhookReconciler = Depends(get_webhook_reconciler),
) -> WebhookResponse:
    """
    Handle Stripe webhook events from both platform and connected accounts.

    Tries each configured webhook secret until one verifies the signature.

    Returns:
        Reconciliation outcome (always 200 once the signature is verified,
        so Stripe does not retry-storm on internal failures)

    Note:
        This endpoint has no authentication as it uses webhook signature verification
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("Webhook received without signature")
        raise HTTPException(status_code=400, detail="No signature")

    webhook_secrets = settings.webhook_secrets
    if not webhook_secrets:
        logger.error("No webhook secrets configured")
        raise HTTPException(status_code=500, detail="Webhook configuration error")

    try:
        event = verify_webhook(payload, sig_header, webhook_secrets)
    except stripe.SignatureVerificationError:
        logger.error(f"Webhook signature verification failed with all {len(webhook_secrets)} configured secrets")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        logger.error("Webhook payload could not be parsed")
        raise HTTPException(status_code=400, detail="Invalid payload")

    if event.account:
        logger.info(f"Event {event.type} from connected account: {event.account}")
    else:
        logger.info(f"Event {event.type} from platform account")

    try:
        return await asyncio.to_thread(reconciler.handle_event, event)
    except Exception as e:
        logger.error(f"Unexpected webhook error: {str(e)}")
        # 200 so Stripe does not retry non-recoverable errors
        return WebhookResponse(
            status="error",
            event_type=event.type,
            message="Error logged - returning 200 to prevent retries",
        )


__all__ = ["router"]
