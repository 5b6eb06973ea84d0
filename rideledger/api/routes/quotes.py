"""
Quote endpoint
==============

POST /api/v1/quotes -- price a journey without booking it
"""

from fastapi import APIRouter, Depends, Request

from rideledger.api.dependencies import get_booking_service
from rideledger.api.middleware import limiter
from rideledger.api.schemas import QuoteRequest, QuoteResponse, SplitResponse
from rideledger.config import settings
from rideledger.services.bookings import BookingService
from rideledger.services.ledger import split_rates

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.post("", response_model=QuoteResponse, summary="Quote a journey")
@limiter.limit("100/minute")
async def create_quote(
    request: Request,
    body: QuoteRequest,
    service: BookingService = Depends(get_booking_service),
):
    fare = service.quote(body.to_journey())
    split = fare.split(**split_rates())
    return QuoteResponse(
        booking_type=fare.booking_type,
        distance_miles=fare.distance_miles,
        estimated_minutes=fare.estimated_minutes,
        is_peak=fare.is_peak,
        base_fare=fare.base_fare,
        distance_fare=fare.distance_fare,
        vehicle_feature_fare=fare.vehicle_feature_fare,
        support_worker_fare=fare.support_worker_fare,
        peak_surcharge=fare.peak_surcharge,
        total=fare.total,
        currency=settings.currency,
        split=SplitResponse(**vars(split)),
    )
