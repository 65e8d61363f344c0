# backend/app/routes/v1/booking_payments.py
"""
Booking Payment API Routes - API v1

Versioned endpoints under /api/v1/bookings/{booking_id}/payments.
Each call runs one payment operation to completion and returns the
structured result; failures are mapped to HTTP errors by error code.

Endpoints:
    POST /{booking_id}/payments/accept   → Business accepts; charge the booking
    POST /{booking_id}/payments/decline  → Business declines; void or refund
    POST /{booking_id}/payments/cancel   → Customer cancels; apply refund policy
"""

import asyncio
import logging
from typing import Dict, Optional, Type

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError

from ...core.exceptions import (
    BusinessRuleException,
    ConflictException,
    DomainException,
    GatewayUnavailable,
    NotFoundException,
    ServiceException,
)
from ...events.publisher import EventPublisher
from ...schemas.booking_payment import (
    BookingPaymentResult,
    CancelBookingRequest,
    DeclineBookingRequest,
)
from ...services.booking_payment_service import BookingPaymentService
from ...services.dependencies import get_booking_payment_service, get_event_publisher

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["booking-payments-v1"])

_ERROR_CLASSES: Dict[str, Type[DomainException]] = {
    "BookingNotFound": NotFoundException,
    "InvalidBookingState": ConflictException,
    "GatewayUnavailable": GatewayUnavailable,
    "InternalError": ServiceException,
}


def _to_http_exception(result: BookingPaymentResult) -> HTTPException:
    error_class = _ERROR_CLASSES.get(result.error_code or "", BusinessRuleException)
    error = error_class(
        result.message or "Payment operation failed",
        code=result.error_code,
        details=result.model_dump(mode="json", exclude={"event"}),
    )
    return error.to_http_exception()


def _complete(result: BookingPaymentResult, publisher: EventPublisher) -> BookingPaymentResult:
    """Raise for failed results; queue the notification event for successful ones."""
    if not result.success:
        raise _to_http_exception(result)

    if result.event is not None:
        try:
            publisher.publish(result.event)
            publisher.outbox_repo.db.commit()
        except SQLAlchemyError as exc:
            # The payment already settled; the outbox row can be re-published by a retry.
            publisher.outbox_repo.db.rollback()
            logger.error(
                f"Failed to queue {result.event.name} for booking {result.booking_id}: {exc}"
            )
    return result


@router.post("/{booking_id}/payments/accept", response_model=BookingPaymentResult)
async def accept_booking_payment(
    booking_id: str,
    service: BookingPaymentService = Depends(get_booking_payment_service),
    publisher: EventPublisher = Depends(get_event_publisher),
) -> BookingPaymentResult:
    """
    Accept a booking and settle its payment.

    Captures the customer's authorization, or charges the platform fee and
    service amount separately when the authorization was never confirmed.
    Safe to retry: a booking whose payment already succeeded is not charged again.
    """
    result = await asyncio.to_thread(service.accept, booking_id)
    return await asyncio.to_thread(_complete, result, publisher)


@router.post("/{booking_id}/payments/decline", response_model=BookingPaymentResult)
async def decline_booking_payment(
    booking_id: str,
    payload: Optional[DeclineBookingRequest] = Body(default=None),
    service: BookingPaymentService = Depends(get_booking_payment_service),
    publisher: EventPublisher = Depends(get_event_publisher),
) -> BookingPaymentResult:
    """Decline a booking, voiding or refunding every authorization it holds."""
    request = payload or DeclineBookingRequest()
    result = await asyncio.to_thread(
        service.decline, booking_id, request.declined_by, request.reason
    )
    return await asyncio.to_thread(_complete, result, publisher)


@router.post("/{booking_id}/payments/cancel", response_model=BookingPaymentResult)
async def cancel_booking_payment(
    booking_id: str,
    payload: Optional[CancelBookingRequest] = Body(default=None),
    service: BookingPaymentService = Depends(get_booking_payment_service),
    publisher: EventPublisher = Depends(get_event_publisher),
) -> BookingPaymentResult:
    """
    Cancel a booking on the customer's behalf.

    More than 24 hours out the service amount is refunded and the platform
    fee kept; inside 24 hours nothing is refunded.
    """
    request = payload or CancelBookingRequest()
    result = await asyncio.to_thread(
        service.customer_cancel, booking_id, request.cancelled_by, request.reason
    )
    return await asyncio.to_thread(_complete, result, publisher)
