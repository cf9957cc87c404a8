# backend/consultflow/routes/v1/cron.py
"""
Cron routes - API v1

HTTP triggers for the billing jobs, for schedulers that call URLs instead
of running Celery beat. Protected by ``Authorization: Bearer <CRON_SECRET>``.

Endpoints:
    POST /send-scheduled-bills - Sweep due scheduled payment emails
    POST /invoicing/monthly - Monthly invoice consolidation (?period=YYYY-MM&dry_run=true)
"""

import asyncio
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ...api.dependencies import get_invoice_aggregator, get_payment_email_scheduler
from ...core.config import settings
from ...core.exceptions import DomainException
from ...schemas.payment import MonthlyConsolidationResult, SweepResult
from ...services.invoice_aggregator import InvoiceAggregator
from ...services.payment_email_scheduler import PaymentEmailScheduler
from .bookings import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron-v1"])


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    expected = settings.cron_secret.get_secret_value() if settings.cron_secret else ""
    if not expected:
        logger.error("CRON_SECRET not configured; refusing cron request")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.post(
    "/send-scheduled-bills",
    response_model=SweepResult,
    dependencies=[Depends(require_cron_secret)],
)
async def send_scheduled_bills(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    scheduler: PaymentEmailScheduler = Depends(get_payment_email_scheduler),
) -> SweepResult:
    return await asyncio.to_thread(scheduler.send_due_bills, None, limit)


@router.post(
    "/invoicing/monthly",
    response_model=MonthlyConsolidationResult,
    dependencies=[Depends(require_cron_secret)],
)
async def run_monthly_invoicing(
    period: Optional[str] = Query(default=None, description="YYYY-MM; defaults to the previous month"),
    dry_run: bool = Query(default=False),
    aggregator: InvoiceAggregator = Depends(get_invoice_aggregator),
) -> MonthlyConsolidationResult:
    try:
        return await asyncio.to_thread(aggregator.run_monthly_consolidation, period, dry_run=dry_run)
    except DomainException as e:
        handle_domain_exception(e)


__all__ = ["router", "require_cron_secret"]
