"""
Booking endpoints
=================

POST /api/v1/bookings/guest                      -- book without an account
GET  /api/v1/bookings/guest/{token}              -- look a booking up by access token
POST /api/v1/bookings/guest/{token}/cancel       -- rider cancellation
POST /api/v1/accounts/{account_id}/bookings      -- book from an account
POST /api/v1/bookings/{booking_id}/payment-intent  -- (re)create the card intent
POST /api/v1/bookings/{booking_id}/payment/confirm -- confirm the card payment
"""

from fastapi import APIRouter, Depends, Request

from rideledger.api.dependencies import get_booking_service, get_payment_orchestrator
from rideledger.api.middleware import limiter
from rideledger.api.schemas import (
    AccountBookingRequest,
    BookingCreatedResponse,
    BookingResponse,
    ConfirmCardPaymentRequest,
    GuestBookingRequest,
    GuestBookingResponse,
    IntentResponse,
    error_responses,
)
from rideledger.services.bookings import BookingResult, BookingService
from rideledger.services.payments import PaymentOrchestrator

router = APIRouter(tags=["bookings"])


def _created(result: BookingResult) -> dict:
    return {
        "booking": BookingResponse.model_validate(result.booking),
        "payment": IntentResponse.model_validate(result.intent) if result.intent else None,
        "payment_error": result.payment_error,
        "payment_retryable": result.payment_retryable,
    }


@router.post(
    "/bookings/guest",
    status_code=201,
    response_model=GuestBookingResponse,
    summary="Create a guest booking",
    description=(
        "Creates (or reuses) the guest identity for the email, prices the "
        "journey and issues the access token used for later lookups. Card "
        "bookings also get a payment intent; if the processor fails the "
        "booking stays pending_payment and payment_error explains why."
    ),
    responses=error_responses(409),
)
@limiter.limit("30/minute")
async def create_guest_booking(
    request: Request,
    body: GuestBookingRequest,
    service: BookingService = Depends(get_booking_service),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    result = await service.create_guest_booking(
        body.to_journey(),
        name=body.name,
        email=body.email,
        phone=body.phone,
        payments=payments,
    )
    return GuestBookingResponse(
        guest_identity_id=result.guest.id,
        access_token=result.access_token.token,
        access_token_expires_at=result.access_token.expires_at,
        **_created(result),
    )


@router.get(
    "/bookings/guest/{token}",
    response_model=BookingResponse,
    summary="Get a guest booking by access token",
    responses=error_responses(404, 410),
)
@limiter.limit("100/minute")
async def get_guest_booking(
    request: Request,
    token: str,
    service: BookingService = Depends(get_booking_service),
):
    return await service.get_by_token(token)


@router.post(
    "/bookings/guest/{token}/cancel",
    response_model=BookingResponse,
    summary="Cancel a guest booking",
    responses=error_responses(404, 409, 410),
)
@limiter.limit("30/minute")
async def cancel_guest_booking(
    request: Request,
    token: str,
    service: BookingService = Depends(get_booking_service),
):
    return await service.cancel_by_token(token)


@router.post(
    "/accounts/{account_id}/bookings",
    status_code=201,
    response_model=BookingCreatedResponse,
    summary="Create a booking for an account",
    responses=error_responses(404, 409),
)
@limiter.limit("30/minute")
async def create_account_booking(
    request: Request,
    account_id: str,
    body: AccountBookingRequest,
    service: BookingService = Depends(get_booking_service),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    result = await service.create_account_booking(
        account_id, body.to_journey(), payments=payments
    )
    return BookingCreatedResponse(**_created(result))


@router.post(
    "/bookings/{booking_id}/payment-intent",
    response_model=IntentResponse,
    summary="Create or fetch the booking's payment intent",
    description="Idempotent: a retry returns the same intent instead of a second charge.",
    responses=error_responses(404, 409, 502),
)
@limiter.limit("30/minute")
async def create_payment_intent(
    request: Request,
    booking_id: str,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.create_intent(booking_id)


@router.post(
    "/bookings/{booking_id}/payment/confirm",
    response_model=BookingResponse,
    summary="Confirm a card payment",
    responses=error_responses(404, 409, 500, 502),
)
@limiter.limit("30/minute")
async def confirm_card_payment(
    request: Request,
    booking_id: str,
    body: ConfirmCardPaymentRequest,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.confirm_with_processor(booking_id, body.payment_method)
