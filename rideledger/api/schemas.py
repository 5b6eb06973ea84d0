"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from rideledger.domain.entities import Location
from rideledger.domain.enums import (
    BookingStatus,
    BookingType,
    IssueStatus,
    PaymentMethod,
    RecipientType,
    SplitStatus,
)
from rideledger.services.bookings import JourneyRequest


# ── Requests ──────────────────────────────────────────────────────────


class JourneyFields(BaseModel):
    pickup_address: str = Field(..., min_length=1, max_length=255)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_address: str = Field(..., min_length=1, max_length=255)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    pickup_time: datetime
    vehicle_features: list[str] = Field(default_factory=list)
    support_workers_count: int = Field(0, ge=0)
    booking_type: Optional[BookingType] = None

    def to_journey(self, **extra) -> JourneyRequest:
        return JourneyRequest(
            pickup_address=self.pickup_address,
            pickup=Location(self.pickup_lat, self.pickup_lng),
            dropoff_address=self.dropoff_address,
            dropoff=Location(self.dropoff_lat, self.dropoff_lng),
            pickup_time=self.pickup_time,
            vehicle_features=tuple(self.vehicle_features),
            support_workers_count=self.support_workers_count,
            booking_type=self.booking_type,
            **extra,
        )


class QuoteRequest(JourneyFields):
    pass


class AccountBookingRequest(JourneyFields):
    payment_method: PaymentMethod = PaymentMethod.CASH_BANK
    special_requirements: Optional[str] = None
    notes: Optional[str] = None

    def to_journey(self, **extra) -> JourneyRequest:
        return super().to_journey(
            payment_method=self.payment_method,
            special_requirements=self.special_requirements,
            notes=self.notes,
            **extra,
        )


class GuestBookingRequest(AccountBookingRequest):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    phone: str = Field(..., min_length=1, max_length=40)


class ConfirmCardPaymentRequest(BaseModel):
    payment_method: str = Field(..., min_length=1, description="Processor payment method id")


class RejectPaymentRequest(BaseModel):
    reason: str = ""


class PromoteRequest(BaseModel):
    access_token: str
    password: str
    include_history: bool = True


class CrewRequest(BaseModel):
    driver_id: Optional[str] = None
    support_worker_ids: list[str] = Field(default_factory=list)


class PayoutAccountRequest(BaseModel):
    processor_account_id: str = Field(..., pattern=r"^acct_[A-Za-z0-9]+$", max_length=255)


# ── Responses ─────────────────────────────────────────────────────────


class SplitResponse(BaseModel):
    total: Decimal
    driver_share: Decimal
    support_worker_share: Decimal
    processor_fee: Decimal
    platform_fee: Decimal


class QuoteResponse(BaseModel):
    booking_type: BookingType
    distance_miles: float
    estimated_minutes: int
    is_peak: bool
    base_fare: Decimal
    distance_fare: Decimal
    vehicle_feature_fare: Decimal
    support_worker_fare: Decimal
    peak_surcharge: Decimal
    total: Decimal
    currency: str
    split: SplitResponse


class BookingResponse(BaseModel):
    id: str
    status: BookingStatus
    booking_type: BookingType
    payment_method: PaymentMethod
    guest_identity_id: Optional[str] = None
    account_id: Optional[str] = None
    pickup_address: str
    dropoff_address: str
    pickup_time: datetime
    vehicle_features: list[str] = []
    support_workers_count: int
    currency: str
    fare_estimate: Decimal
    driver_id: Optional[str] = None
    support_worker_ids: list[str] = []
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class IntentResponse(BaseModel):
    booking_id: str
    processor_intent_id: str
    client_secret: str
    amount: Decimal
    currency: str
    created: bool

    model_config = {"from_attributes": True}


class BookingCreatedResponse(BaseModel):
    booking: BookingResponse
    payment: Optional[IntentResponse] = None
    payment_error: Optional[str] = None
    payment_retryable: bool = False


class GuestBookingResponse(BookingCreatedResponse):
    guest_identity_id: str
    access_token: str
    access_token_expires_at: datetime


class SplitRowResponse(BaseModel):
    recipient_id: Optional[str] = None
    recipient_type: RecipientType
    amount: Decimal
    status: SplitStatus

    model_config = {"from_attributes": True}


class SettlementResponse(BaseModel):
    booking: BookingResponse
    transaction_id: str
    amount: Decimal
    splits: list[SplitRowResponse]


class AccountResponse(BaseModel):
    id: str
    email: str
    name: str
    promoted_from_guest_id: Optional[str] = None

    model_config = {"from_attributes": True}


class PromotionResponse(BaseModel):
    account: AccountResponse
    relinked_booking_ids: list[str]
    resumed: bool


class ReconciliationIssueResponse(BaseModel):
    id: str
    booking_id: Optional[str] = None
    processor_intent_id: Optional[str] = None
    amount: Optional[Decimal] = None
    reason: str
    status: IssueStatus
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PayoutAccountResponse(BaseModel):
    recipient_id: str
    processor_account_id: str

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    received: bool = True
    booking_status: Optional[BookingStatus] = None


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
    retryable: Optional[bool] = None
    issue_id: Optional[str] = None


ERROR_DESCRIPTIONS = {
    403: "Not allowed for this caller",
    404: "Booking, account or issue not found",
    409: "Not allowed in the booking's current state",
    410: "Access token expired",
    500: "Charge taken but not recorded; see issue_id",
    502: "Payment processor failed; see retryable",
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    """OpenAPI ``responses=`` entries for the errors a route can return."""
    return {
        code: {"model": ErrorResponse, "description": ERROR_DESCRIPTIONS[code]}
        for code in status_codes
    }
