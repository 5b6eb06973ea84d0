"""
Admin / observability endpoints
===============================

GET   /api/v1/admin/health                          -- simple health check
PATCH /api/v1/admin/bookings/{booking_id}/crew      -- assign driver and support workers
POST  /api/v1/admin/bookings/{booking_id}/cancel    -- cancel any unfinished booking
GET   /api/v1/admin/reconciliation                  -- open reconciliation issues
POST  /api/v1/admin/reconciliation/{issue_id}/retry   -- re-run a failed settlement
POST  /api/v1/admin/reconciliation/{issue_id}/resolve -- close an issue handled by hand
PUT   /api/v1/admin/payout-accounts/{recipient_id}    -- register a crew member's connected account
"""

from fastapi import APIRouter, Depends, Request

from rideledger.api.dependencies import get_booking_service, get_payment_orchestrator
from rideledger.api.middleware import limiter
from rideledger.api.schemas import (
    BookingResponse,
    CrewRequest,
    HealthResponse,
    PayoutAccountRequest,
    PayoutAccountResponse,
    ReconciliationIssueResponse,
    error_responses,
)
from rideledger.services.bookings import BookingService
from rideledger.services.payments import PaymentOrchestrator

router = APIRouter(prefix="/admin", tags=["admin"])


@router.patch(
    "/bookings/{booking_id}/crew",
    response_model=BookingResponse,
    summary="Assign the driver and support workers paid by this booking",
    responses=error_responses(404, 409),
)
@limiter.limit("100/minute")
async def assign_crew(
    request: Request,
    booking_id: str,
    body: CrewRequest,
    service: BookingService = Depends(get_booking_service),
):
    return await service.assign_crew(booking_id, body.driver_id, body.support_worker_ids)


@router.post(
    "/bookings/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel a booking",
    responses=error_responses(404, 409),
)
@limiter.limit("100/minute")
async def cancel_booking(
    request: Request,
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    return await service.cancel(booking_id, cancelled_by="admin")


@router.get(
    "/reconciliation",
    response_model=list[ReconciliationIssueResponse],
    summary="List open reconciliation issues",
)
@limiter.limit("100/minute")
async def list_reconciliation_issues(
    request: Request,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.list_open_issues()


@router.post(
    "/reconciliation/{issue_id}/retry",
    response_model=BookingResponse,
    summary="Retry the settlement behind an issue",
    responses=error_responses(404, 409, 500, 502),
)
@limiter.limit("100/minute")
async def retry_reconciliation(
    request: Request,
    issue_id: str,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.retry_reconciliation(issue_id)


@router.post(
    "/reconciliation/{issue_id}/resolve",
    response_model=ReconciliationIssueResponse,
    summary="Mark an issue as resolved by hand",
    responses=error_responses(404, 409),
)
@limiter.limit("100/minute")
async def resolve_reconciliation(
    request: Request,
    issue_id: str,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.resolve_issue(issue_id)


@router.put(
    "/payout-accounts/{recipient_id}",
    response_model=PayoutAccountResponse,
    summary="Register the connected account a driver or support worker is paid to",
)
@limiter.limit("100/minute")
async def register_payout_account(
    request: Request,
    recipient_id: str,
    body: PayoutAccountRequest,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.register_payout_account(recipient_id, body.processor_account_id)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
