# backend/consultflow/tasks/billing_tasks.py
"""
Celery tasks for billing.

- send_scheduled_bill_emails: claim due scheduled bills and email their payment requests
- run_monthly_invoicing: consolidate last month's monthly-cadence bills into invoices
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from consultflow.core.config import settings
from consultflow.database import SessionLocal
from consultflow.integrations.invoice_pdf import InvoicePdfRenderer
from consultflow.integrations.protocols import NotificationSink
from consultflow.services.email import ConsoleEmailService, EmailService
from consultflow.services.invoice_aggregator import InvoiceAggregator
from consultflow.services.invoice_service import InvoiceService
from consultflow.services.payment_email_scheduler import PaymentEmailScheduler
from consultflow.tasks.celery_app import typed_task

logger = logging.getLogger(__name__)


def build_notifier(db: Session) -> NotificationSink:
    if not settings.resend_api_key:
        return ConsoleEmailService()
    return EmailService(db)


@typed_task(name="consultflow.tasks.billing_tasks.send_scheduled_bill_emails")
def send_scheduled_bill_emails(limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Sweep due scheduled bills.

    Runs every 5 minutes. Each claimed bill is locked before sending, so
    overlapping runs never email the same bill twice.
    """
    db: Session = SessionLocal()
    try:
        scheduler = PaymentEmailScheduler(db, build_notifier(db))
        result = scheduler.send_due_bills(limit=limit)
        logger.info(f"Scheduled bill sweep: claimed={result.claimed} sent={result.sent} failed={result.failed}")
        return result.model_dump(mode="json")
    finally:
        db.close()


@typed_task(name="consultflow.tasks.billing_tasks.run_monthly_invoicing")
def run_monthly_invoicing(period: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
    """Consolidate ``period`` (YYYY-MM, default previous month) into draft invoices."""
    db: Session = SessionLocal()
    try:
        invoice_service = InvoiceService(db, pdf_generator=InvoicePdfRenderer(db))
        aggregator = InvoiceAggregator(db, invoice_service=invoice_service, notifier=build_notifier(db))
        result = aggregator.run_monthly_consolidation(period, dry_run=dry_run)
        return result.model_dump(mode="json")
    finally:
        db.close()
