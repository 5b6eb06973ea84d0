"""
Driver endpoints
================

POST /api/v1/drivers/{driver_id}/bookings/{booking_id}/confirm-payment
POST /api/v1/drivers/{driver_id}/bookings/{booking_id}/reject-payment
POST /api/v1/drivers/{driver_id}/bookings/{booking_id}/start
POST /api/v1/drivers/{driver_id}/bookings/{booking_id}/complete
"""

from fastapi import APIRouter, Depends, Request

from rideledger.api.dependencies import get_booking_service, get_settlement_service
from rideledger.api.middleware import limiter
from rideledger.api.schemas import (
    BookingResponse,
    RejectPaymentRequest,
    SettlementResponse,
    SplitRowResponse,
    error_responses,
)
from rideledger.services.bookings import BookingService
from rideledger.services.settlement import ManualSettlementService

router = APIRouter(prefix="/drivers/{driver_id}/bookings", tags=["drivers"])


@router.post(
    "/{booking_id}/confirm-payment",
    response_model=SettlementResponse,
    summary="Confirm a cash/bank payment",
    responses=error_responses(403, 404, 409),
)
@limiter.limit("60/minute")
async def confirm_payment(
    request: Request,
    driver_id: str,
    booking_id: str,
    settlement: ManualSettlementService = Depends(get_settlement_service),
    bookings: BookingService = Depends(get_booking_service),
):
    record = await settlement.confirm_payment(booking_id, driver_id)
    return SettlementResponse(
        booking=BookingResponse.model_validate(await bookings.get(booking_id)),
        transaction_id=record.transaction.id,
        amount=record.transaction.amount,
        splits=[SplitRowResponse.model_validate(row) for row in record.splits],
    )


@router.post(
    "/{booking_id}/reject-payment",
    response_model=BookingResponse,
    summary="Reject a cash/bank payment",
    description="A non-empty reason is required; no transaction is written.",
    responses=error_responses(403, 404, 409),
)
@limiter.limit("60/minute")
async def reject_payment(
    request: Request,
    driver_id: str,
    booking_id: str,
    body: RejectPaymentRequest,
    settlement: ManualSettlementService = Depends(get_settlement_service),
):
    return await settlement.reject_payment(booking_id, driver_id, body.reason)


@router.post(
    "/{booking_id}/start",
    response_model=BookingResponse,
    summary="Start the trip",
    responses=error_responses(403, 404, 409),
)
@limiter.limit("60/minute")
async def start_trip(
    request: Request,
    driver_id: str,
    booking_id: str,
    bookings: BookingService = Depends(get_booking_service),
):
    return await bookings.start_trip(booking_id, driver_id)


@router.post(
    "/{booking_id}/complete",
    response_model=BookingResponse,
    summary="Complete the trip",
    responses=error_responses(403, 404, 409),
)
@limiter.limit("60/minute")
async def complete_trip(
    request: Request,
    driver_id: str,
    booking_id: str,
    bookings: BookingService = Depends(get_booking_service),
):
    return await bookings.complete_trip(booking_id, driver_id)
