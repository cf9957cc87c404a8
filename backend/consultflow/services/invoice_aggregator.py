# backend/consultflow/services/invoice_aggregator.py
"""
Invoice Aggregator for Consultflow (monthly cadence)

Keeps exactly one draft invoice per (practitioner, client, period) whose
membership and totals always equal the current set of monthly bills for
bookings starting inside the period. Re-running is safe: membership is
replaced, never appended.
"""

from datetime import datetime, timezone
import logging
import re
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import BillingCadence, EmailCommunicationStatus, EmailKind
from ..core.exceptions import ConsistencyViolation, NotFoundException, ValidationException
from ..integrations.protocols import NotificationSink
from ..models.invoice import Invoice
from ..repositories.factory import RepositoryFactory
from ..schemas.payment import AggregationResult, GroupError, MonthlyConsolidationResult
from .advisory import report_consistency_violation, run_advisory
from .base import BaseService, Clock
from .invoice_service import InvoiceService
from .payment_email_scheduler import invoice_payment_url

logger = logging.getLogger(__name__)

_PERIOD_LABEL = re.compile(r"^(\d{4})-(\d{2})$")


def compute_utc_period_from_label(label: str) -> Tuple[datetime, datetime]:
    """``YYYY-MM`` -> [first day 00:00 UTC, first day of next month 00:00 UTC)."""
    match = _PERIOD_LABEL.match(label or "")
    if not match:
        raise ValidationException(
            "Period must be formatted as YYYY-MM", code="INVALID_PERIOD", details={"period": label}
        )
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationException("Month must be between 01 and 12", code="INVALID_PERIOD", details={"period": label})
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc) if month == 12 else datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def previous_month_label(now: datetime) -> str:
    year, month = now.year, now.month - 1
    if month == 0:
        year, month = year - 1, 12
    return f"{year:04d}-{month:02d}"


class InvoiceAggregator(BaseService):
    def __init__(
        self,
        db: Session,
        invoice_service: Optional[InvoiceService] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.invoice_service = invoice_service or InvoiceService(db, clock=clock)
        self.notifier = notifier
        self.bill_repository = RepositoryFactory.create_bill_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.invoice_repository = RepositoryFactory.create_invoice_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)

    @BaseService.measure_operation("ensure_monthly_draft_and_link_bills")
    def ensure_monthly_draft_and_link_bills(
        self,
        practitioner_id: str,
        client_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> AggregationResult:
        client = self.booking_repository.get_client(practitioner_id, client_id)
        if client is None:
            raise NotFoundException(f"Client {client_id} not found")
        invoice, created = self.invoice_service.find_or_create_draft(
            lambda: self.invoice_repository.get_monthly_draft(practitioner_id, client_id, period_start, period_end),
            practitioner_id=practitioner_id,
            client=client,
            billing_type=BillingCadence.MONTHLY.value,
            currency=settings.default_currency,
            period_start=period_start,
            period_end=period_end,
        )

        candidates = self.bill_repository.find_monthly_candidates(
            practitioner_id, client_id, invoice.id, period_start, period_end
        )
        candidate_ids = [bill.id for bill in candidates]
        if not candidates:
            report_consistency_violation(
                ConsistencyViolation(
                    "Monthly aggregation found no candidate bills",
                    context={
                        "practitioner_id": practitioner_id,
                        "client_id": client_id,
                        "invoice_id": invoice.id,
                        "period_start": period_start.isoformat(),
                    },
                ),
                stage="monthly_aggregation",
            )

        unlinked = self.bill_repository.unlink_from_invoice(invoice.id, candidate_ids)
        self.bill_repository.link_to_invoice(candidate_ids, invoice.id)
        if candidates:
            invoice.currency = candidates[0].currency
        self.invoice_service.recompute_totals(invoice, candidates)

        if unlinked:
            self.logger.info(f"Unlinked {len(unlinked)} stale bill(s) from invoice {invoice.id}")
        return AggregationResult(
            invoice_id=invoice.id,
            linked_bill_ids=candidate_ids,
            unlinked_bill_ids=unlinked,
            subtotal=invoice.subtotal,
            tax_total=invoice.tax_total,
            total=invoice.total,
            created=created,
        )

    def _send_invoice_email(self, invoice: Invoice, period_label: str, sessions: int) -> bool:
        if self.notifier is None:
            return False
        result = self.notifier.send(
            EmailKind.MONTHLY_PAYMENT_REQUEST,
            invoice.client_email,
            {
                "client_name": invoice.client_name,
                "period_label": period_label,
                "sessions": sessions,
                "amount": invoice.total,
                "currency": invoice.currency,
                "payment_url": invoice_payment_url(invoice.id),
            },
        )
        run_advisory(
            "email_log",
            self.payment_repository.log_email,
            practitioner_id=invoice.practitioner_id,
            client_id=invoice.client_id,
            invoice_id=invoice.id,
            email_type=EmailKind.MONTHLY_PAYMENT_REQUEST.value,
            recipient_email=invoice.client_email,
            subject=result.subject,
            status=(EmailCommunicationStatus.SENT if result.success else EmailCommunicationStatus.FAILED).value,
            provider_message_id=result.message_id,
            error_message=result.error,
        )
        if not result.success:
            raise RuntimeError(result.error or "monthly invoice email failed")
        return True

    @BaseService.measure_operation("run_monthly_consolidation")
    def run_monthly_consolidation(
        self, period_label: Optional[str] = None, *, dry_run: bool = False
    ) -> MonthlyConsolidationResult:
        """
        Aggregate every (practitioner, client) pair with monthly bills in the period.

        A failing group is recorded in ``errors`` and the run continues.
        """
        label = period_label or previous_month_label(self.now())
        period_start, period_end = compute_utc_period_from_label(label)
        groups = self.bill_repository.find_monthly_groups(period_start, period_end)
        result = MonthlyConsolidationResult(
            period_label=label,
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
            groups=len(groups),
        )

        for practitioner_id, client_id in groups:
            try:
                if dry_run:
                    draft = self.invoice_repository.get_monthly_draft(
                        practitioner_id, client_id, period_start, period_end
                    )
                    candidates = self.bill_repository.find_monthly_candidates(
                        practitioner_id, client_id, draft.id if draft else None, period_start, period_end
                    )
                    result.linked_bills += len(candidates)
                    result.invoices += 1 if candidates else 0
                    continue

                with self.transaction():
                    aggregation = self.ensure_monthly_draft_and_link_bills(
                        practitioner_id, client_id, period_start, period_end
                    )
                result.invoices += 1
                result.linked_bills += len(aggregation.linked_bill_ids)

                invoice = self.invoice_repository.get_by_id(aggregation.invoice_id)
                if invoice is not None and aggregation.linked_bill_ids and invoice.total > 0:
                    with self.transaction():
                        sent = run_advisory(
                            "monthly_invoice_email",
                            self._send_invoice_email,
                            invoice,
                            label,
                            len(aggregation.linked_bill_ids),
                            default=False,
                            context={"invoice_id": invoice.id},
                        )
                    if sent:
                        result.emails_sent += 1
            except Exception as e:
                self.logger.error(
                    f"Monthly consolidation failed for practitioner {practitioner_id} client {client_id}: {str(e)}"
                )
                result.errors.append(
                    GroupError(practitioner_id=practitioner_id, client_id=client_id, error=str(e))
                )

        self.logger.info(
            f"Monthly consolidation {label}: {result.invoices} invoice(s), {result.linked_bills} bill(s), "
            f"{len(result.errors)} error(s){' (dry run)' if dry_run else ''}"
        )
        return result
