"""
Booking request and response schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from ..core.enums import ConsultationMode, ConsultationType
from .base import StandardizedModel, StrictRequestModel
from .billing import BillingTerms


class CreateBookingRequest(StrictRequestModel):
    """
    Booking creation input.

    ``billing`` replaces the resolved terms for this booking only;
    ``override_amount`` keeps the resolved cadence but fixes the price.
    """

    practitioner_id: str
    client_id: str
    start_time: datetime
    end_time: datetime
    mode: Optional[ConsultationMode] = None
    location_address: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = None
    consultation_type: Optional[ConsultationType] = None
    series_id: Optional[str] = None
    billing: Optional[BillingTerms] = None
    override_amount: Optional[Decimal] = Field(default=None, ge=0)
    suppress_payment_email: bool = False


class CreateBookingResult(StandardizedModel):
    booking_id: str
    bill_id: str
    booking_status: str
    bill_status: str
    requires_payment: bool
    payment_url: Optional[str] = None


class BookingActionResponse(StandardizedModel):
    """Generic response for booking state-changing actions."""

    booking_id: str
    status: str
    message: Optional[str] = None


class BookingCancelRequest(StrictRequestModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class BookingRefundRequest(StrictRequestModel):
    reason: Optional[str] = Field(default=None, max_length=500)
