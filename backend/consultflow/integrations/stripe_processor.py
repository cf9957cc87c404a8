# backend/consultflow/integrations/stripe_processor.py
"""
Stripe Checkout implementation of the PaymentProcessor interface.

Connected-account calls pass ``stripe_account`` so funds and refunds stay
on the practitioner's Stripe account.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Mapping, Optional

import stripe

from consultflow.core.config import settings
from consultflow.core.exceptions import ExternalServiceException

from .protocols import CheckoutLineItem, CheckoutSession, WebhookEvent

logger = logging.getLogger(__name__)


class StripeNotConfiguredError(ExternalServiceException):
    def __init__(self) -> None:
        super().__init__("Stripe secret key not configured", service="stripe", code="STRIPE_NOT_CONFIGURED")


def configure_stripe() -> bool:
    """Set the module-level API key and network policy; returns False when unconfigured."""
    if not settings.stripe_secret_key:
        logger.warning("Stripe secret key not configured")
        return False
    stripe.api_key = settings.stripe_secret_key.get_secret_value()
    stripe.max_network_retries = 1
    return True


def _account_kwargs(connected_account_id: Optional[str]) -> Dict[str, Any]:
    return {"stripe_account": connected_account_id} if connected_account_id else {}


class StripePaymentProcessor:
    """Thin wrapper around the Stripe SDK; every StripeError becomes ExternalServiceException."""

    def __init__(self) -> None:
        self.configured = configure_stripe()

    def _require_configured(self) -> None:
        if not self.configured:
            raise StripeNotConfiguredError()

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
        self._require_configured()
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": item.currency.lower(),
                        "product_data": {
                            "name": item.name,
                            **({"description": item.description} if item.description else {}),
                        },
                        "unit_amount": item.amount_cents,
                    },
                    "quantity": item.quantity,
                }
                for item in line_items
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
            "payment_intent_data": {"metadata": dict(metadata)},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if connected_account_id and application_fee_cents > 0:
            params["payment_intent_data"]["application_fee_amount"] = application_fee_cents

        try:
            session = stripe.checkout.Session.create(**params, **_account_kwargs(connected_account_id))
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session: {str(e)}")
            raise ExternalServiceException(
                f"Failed to create checkout session: {str(e)}", service="stripe", authoritative=True
            ) from e
        expires_at = getattr(session, "expires_at", None)
        return CheckoutSession(
            session_id=session.id,
            url=getattr(session, "url", None),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        )

    def expire_session(self, session_id: str, *, connected_account_id: Optional[str] = None) -> None:
        self._require_configured()
        try:
            stripe.checkout.Session.expire(session_id, **_account_kwargs(connected_account_id))
        except stripe.StripeError as e:
            logger.warning(f"Stripe error expiring checkout session {session_id}: {str(e)}")
            raise ExternalServiceException(
                f"Failed to expire checkout session: {str(e)}", service="stripe", authoritative=False
            ) from e

    def refund(
        self,
        payment_intent_id: str,
        *,
        reason: str,
        metadata: Mapping[str, str],
        connected_account_id: Optional[str] = None,
    ) -> str:
        self._require_configured()
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                reason=reason,
                metadata=dict(metadata),
                idempotency_key=f"refund:{payment_intent_id}",
                **_account_kwargs(connected_account_id),
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe error refunding payment intent {payment_intent_id}: {str(e)}")
            raise ExternalServiceException(
                f"Failed to refund payment: {str(e)}", service="stripe", authoritative=True
            ) from e
        return str(refund.id)

    def get_receipt_url(
        self, payment_intent_id: str, *, connected_account_id: Optional[str] = None
    ) -> Optional[str]:
        self._require_configured()
        try:
            intent = stripe.PaymentIntent.retrieve(
                payment_intent_id,
                expand=["latest_charge"],
                **_account_kwargs(connected_account_id),
            )
        except stripe.StripeError as e:
            raise ExternalServiceException(
                f"Failed to retrieve payment intent: {str(e)}", service="stripe", authoritative=False
            ) from e
        charge = getattr(intent, "latest_charge", None)
        return getattr(charge, "receipt_url", None) if charge is not None else None


def verify_webhook(payload: bytes, signature: str, secrets: List[str]) -> WebhookEvent:
    """
    Verify ``payload`` against each configured secret in turn.

    Raises ValueError for an unparsable payload and
    stripe.SignatureVerificationError when no secret matches.
    """
    last_error: Optional[Exception] = None
    for secret in secrets:
        try:
            event = stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            last_error = e
            continue
        return to_webhook_event(event)
    if last_error is not None:
        raise last_error
    raise stripe.SignatureVerificationError("No webhook secrets configured", signature)


def to_webhook_event(event: Any) -> WebhookEvent:
    """Reduce a Stripe event (or a plain dict in tests) to a WebhookEvent."""
    raw = event.to_dict() if hasattr(event, "to_dict") else dict(event)
    data_object = (raw.get("data") or {}).get("object") or {}
    metadata = {str(k): str(v) for k, v in (data_object.get("metadata") or {}).items() if v is not None}
    return WebhookEvent(
        id=str(raw.get("id") or ""),
        type=str(raw.get("type") or ""),
        data=dict(data_object),
        account=raw.get("account"),
        metadata=metadata,
    )
