# backend/consultflow/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to the orchestrator and the
cancellation/refund service.

Endpoints:
    POST / - Create a booking with its bill, calendar event and payment request
    POST /{booking_id}/cancel - Cancel a booking (refunds a paid bill)
    POST /{booking_id}/refund - Refund the paid bill of a booking
    POST /{booking_id}/mark-paid - Record a payment taken outside Stripe
    POST /{booking_id}/confirm - Confirm a pending booking without payment
    POST /{booking_id}/resend-payment-email - Send the payment request again
"""

import asyncio
import logging
from typing import Any, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from fastapi.params import Path

from ...api.dependencies import get_booking_orchestrator, get_cancellation_refund_service
from ...core.exceptions import DomainException
from ...schemas.booking import (
    BookingActionResponse,
    BookingCancelRequest,
    BookingRefundRequest,
    CreateBookingRequest,
    CreateBookingResult,
)
from ...schemas.payment import BookingCancellationResult, RefundResult
from ...services.booking_orchestrator import BookingOrchestrator
from ...services.cancellation_refund_service import CancellationRefundService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _booking_path() -> Any:
    return Path(
        ...,
        description="Booking ULID",
        pattern=ULID_PATH_PATTERN,
        examples=["01HF4G12ABCDEF3456789XYZAB"],
    )


@router.post(
    "",
    response_model=CreateBookingResult,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid time window or billing terms"},
        404: {"description": "Practitioner or client not found"},
        502: {"description": "Payment email could not be sent; nothing was created"},
    },
)
async def create_booking(
    booking_data: CreateBookingRequest = Body(...),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> CreateBookingResult:
    """
    Create a booking.

    Per-booking bills that are due now get their payment request emailed
    before this returns; if that email fails the booking is rolled back
    and 502 is returned.
    """
    try:
        return await asyncio.to_thread(orchestrator.create_booking, booking_data)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingCancellationResult,
    responses={404: {"description": "Booking not found"}, 502: {"description": "Refund failed"}},
)
async def cancel_booking(
    booking_id: str = _booking_path(),
    cancel_data: Optional[BookingCancelRequest] = Body(default=None),
    service: CancellationRefundService = Depends(get_cancellation_refund_service),
) -> BookingCancellationResult:
    """Cancel a booking."""
    try:
        reason = cancel_data.reason if cancel_data else None
        return await asyncio.to_thread(service.cancel_booking, booking_id, reason)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/refund",
    response_model=RefundResult,
    responses={
        404: {"description": "Booking not found"},
        409: {"description": "No paid bill, or bill already refunded"},
        502: {"description": "Stripe refund failed"},
    },
)
async def refund_booking(
    booking_id: str = _booking_path(),
    refund_data: Optional[BookingRefundRequest] = Body(default=None),
    service: CancellationRefundService = Depends(get_cancellation_refund_service),
) -> RefundResult:
    try:
        reason = refund_data.reason if refund_data else None
        return await asyncio.to_thread(service.refund_booking, booking_id, reason)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/mark-paid",
    response_model=BookingActionResponse,
    responses={404: {"description": "Booking or bill not found"}, 409: {"description": "Bill not payable"}},
)
async def mark_booking_paid(
    booking_id: str = _booking_path(),
    service: CancellationRefundService = Depends(get_cancellation_refund_service),
) -> BookingActionResponse:
    """Mark a booking as paid manually (cash, bank transfer)."""
    try:
        bill = await asyncio.to_thread(service.mark_booking_paid_manually, booking_id)
        return BookingActionResponse(booking_id=booking_id, status=bill.status, message="Bill marked as paid")
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/confirm",
    response_model=BookingActionResponse,
    responses={404: {"description": "Booking not found"}, 409: {"description": "Booking canceled"}},
)
async def confirm_booking(
    booking_id: str = _booking_path(),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> BookingActionResponse:
    """Confirm a pending booking and its calendar event; the bill stays unpaid."""
    try:
        booking = await asyncio.to_thread(orchestrator.confirm_booking, booking_id)
        return BookingActionResponse(booking_id=booking_id, status=booking.status, message="Booking confirmed")
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/resend-payment-email",
    response_model=BookingActionResponse,
    responses={
        404: {"description": "Booking or bill not found"},
        409: {"description": "Booking canceled or bill not payable"},
        502: {"description": "Payment email could not be sent"},
    },
)
async def resend_payment_email(
    booking_id: str = _booking_path(),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> BookingActionResponse:
    try:
        bill = await asyncio.to_thread(orchestrator.resend_payment_email, booking_id)
        return BookingActionResponse(booking_id=booking_id, status=bill.status, message="Payment email sent")
    except DomainException as e:
        handle_domain_exception(e)


__all__ = ["router", "handle_domain_exception"]
