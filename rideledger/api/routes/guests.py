"""
Guest promotion
===============

POST /api/v1/guests/{guest_id}/promote -- turn a guest into an account

The caller proves ownership with a booking access token; every booking
of the guest (or only the token's booking) moves to the new account.
"""

from fastapi import APIRouter, Depends, Request

from rideledger.api.dependencies import get_booking_service, get_promotion_service
from rideledger.api.middleware import limiter
from rideledger.api.schemas import (
    AccountResponse,
    PromoteRequest,
    PromotionResponse,
    error_responses,
)
from rideledger.services.bookings import BookingService
from rideledger.services.promotion import PromotionService

router = APIRouter(prefix="/guests", tags=["guests"])


@router.post(
    "/{guest_id}/promote",
    response_model=PromotionResponse,
    summary="Promote a guest identity to an account",
    responses=error_responses(403, 404, 409, 410),
)
@limiter.limit("10/minute")
async def promote_guest(
    request: Request,
    guest_id: str,
    body: PromoteRequest,
    bookings: BookingService = Depends(get_booking_service),
    promotion: PromotionService = Depends(get_promotion_service),
):
    token = await bookings.guests.resolve_token(body.access_token)
    result = await promotion.promote(
        guest_id, token.booking_id, body.password, include_history=body.include_history
    )
    return PromotionResponse(
        account=AccountResponse.model_validate(result.account),
        relinked_booking_ids=result.relinked_booking_ids,
        resumed=result.resumed,
    )
