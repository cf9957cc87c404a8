"""
Template registry for strongly-typed access to Jinja templates.

Use with TemplateService to avoid stringly-typed paths.
"""

from enum import Enum

from consultflow.core.enums import EmailKind


class TemplateRegistry(str, Enum):
    PAYMENT_REQUEST = "email/payments/payment_request.html"
    MONTHLY_PAYMENT_REQUEST = "email/payments/monthly_payment_request.html"
    RECEIPT = "email/payments/receipt.html"
    MONTHLY_RECEIPT = "email/payments/monthly_receipt.html"
    CANCELLATION = "email/payments/cancellation.html"
    REFUND = "email/payments/refund.html"

    @classmethod
    def for_kind(cls, kind: EmailKind) -> "TemplateRegistry":
        return cls[EmailKind(kind).name]
