"""
Centralized email subject builders.

Keep subjects in code (not templates) for versioning and logging.
Bodies remain in Jinja templates.
"""

from typing import Any, Mapping

from consultflow.core.enums import EmailKind

BRAND_NAME = "Consultflow"


class EmailSubject:
    """Utility class with static builders for email subjects."""

    @staticmethod
    def payment_request(practitioner_name: str) -> str:
        return f"Payment request for your consultation with {practitioner_name}"

    @staticmethod
    def monthly_payment_request(period_label: str) -> str:
        return f"Your consultations invoice for {period_label}"

    @staticmethod
    def receipt() -> str:
        return "Payment received - thank you"

    @staticmethod
    def monthly_receipt(period_label: str) -> str:
        return f"Payment received for {period_label}"

    @staticmethod
    def cancellation() -> str:
        return "Your consultation has been cancelled"

    @staticmethod
    def refund() -> str:
        return "Your refund is on its way"

    @staticmethod
    def for_kind(kind: EmailKind, data: Mapping[str, Any]) -> str:
        practitioner_name = str(data.get("practitioner_name") or BRAND_NAME)
        period_label = str(data.get("period_label") or "")
        if kind == EmailKind.PAYMENT_REQUEST:
            return EmailSubject.payment_request(practitioner_name)
        if kind == EmailKind.MONTHLY_PAYMENT_REQUEST:
            return EmailSubject.monthly_payment_request(period_label)
        if kind == EmailKind.RECEIPT:
            return EmailSubject.receipt()
        if kind == EmailKind.MONTHLY_RECEIPT:
            return EmailSubject.monthly_receipt(period_label)
        if kind == EmailKind.CANCELLATION:
            return EmailSubject.cancellation()
        return EmailSubject.refund()
