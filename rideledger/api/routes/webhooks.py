"""
Processor webhooks
==================

POST /api/v1/webhooks/processor -- signed payment intent events

A settlement that cannot be written answers 500 so the processor
redelivers; the open reconciliation issue is reused across deliveries.
"""

from fastapi import APIRouter, Depends, Request

from rideledger.api.dependencies import get_payment_orchestrator, get_processor
from rideledger.api.schemas import WebhookAck, error_responses
from rideledger.infrastructure.processor import PaymentProcessor
from rideledger.services.payments import PaymentOrchestrator

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/processor",
    response_model=WebhookAck,
    summary="Receive a processor event",
    responses=error_responses(500),
)
async def processor_webhook(
    request: Request,
    processor: PaymentProcessor = Depends(get_processor),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    payload = await request.body()
    event = processor.parse_event(payload, request.headers.get("stripe-signature", ""))
    booking = await payments.handle_processor_event(event)
    return WebhookAck(booking_status=booking.status if booking else None)
