"""
Payment processor gateway.

``PaymentProcessor`` is the seam the payment orchestrator depends on;
``StripeProcessor`` is the production adapter.  The Stripe SDK is
blocking, so every call runs in a worker thread under
``asyncio.wait_for``: a slow processor turns into a ``ProcessorError``
after ``processor_timeout_seconds`` instead of holding the request open.
A timed-out create is safe to retry because every create carries an
idempotency key derived from the booking id.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from functools import partial
from typing import Optional, Protocol

import stripe

from rideledger.domain.errors import ProcessorError, ValidationError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
EVENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_FAILED = "payment_intent.payment_failed"


@dataclass(frozen=True)
class ProcessorIntent:
    id: str
    client_secret: str
    status: str


@dataclass(frozen=True)
class ProcessorEvent:
    type: str
    intent_id: str
    amount_minor: Optional[int] = None
    failure_message: Optional[str] = None


class PaymentProcessor(Protocol):
    async def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        transfer_destination: Optional[str] = None,
        application_fee: Optional[Decimal] = None,
    ) -> ProcessorIntent: ...

    async def create_transfer(
        self,
        *,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str: ...

    async def confirm_payment(
        self, *, client_secret: str, payment_method: str
    ) -> ProcessorIntent: ...

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent: ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def intent_id_from_secret(client_secret: str) -> str:
    """``pi_123_secret_abc`` -> ``pi_123``."""
    intent_id, sep, _ = client_secret.partition("_secret_")
    if not sep or not intent_id:
        raise ValidationError("Malformed client secret")
    return intent_id


class StripeProcessor:
    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str] = None,
        timeout_seconds: float = 8.0,
        max_network_retries: int = 1,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        stripe.max_network_retries = max_network_retries

    async def _call(self, fn, **kwargs):
        if not self.api_key:
            raise ProcessorError("Payment processor is not configured", retryable=False)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(fn, api_key=self.api_key, **kwargs)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Processor call %s timed out", fn.__qualname__)
            raise ProcessorError("Payment processor timed out")
        except stripe.CardError as exc:
            raise ProcessorError(exc.user_message or "Card declined", retryable=False)
        except stripe.StripeError as exc:
            logger.warning("Processor call %s failed: %s", fn.__qualname__, exc)
            raise ProcessorError(exc.user_message or "Payment processor error")

    async def create_payment_intent(
        self,
        *,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        transfer_destination: Optional[str] = None,
        application_fee: Optional[Decimal] = None,
    ) -> ProcessorIntent:
        params = dict(
            amount=to_minor_units(amount),
            currency=currency.lower(),
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
        )
        if transfer_destination:
            # Destination charge: everything but the fee lands on the connected account
            params["transfer_data"] = {"destination": transfer_destination}
            params["application_fee_amount"] = to_minor_units(
                application_fee or Decimal("0")
            )
        intent = await self._call(
            stripe.PaymentIntent.create, idempotency_key=idempotency_key, **params
        )
        return ProcessorIntent(
            id=intent["id"], client_secret=intent["client_secret"], status=intent["status"]
        )

    async def create_transfer(
        self,
        *,
        amount: Decimal,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """Move a recipient's share from the platform balance to their account."""
        transfer = await self._call(
            stripe.Transfer.create,
            amount=to_minor_units(amount),
            currency=currency.lower(),
            destination=destination,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return transfer["id"]

    async def confirm_payment(
        self, *, client_secret: str, payment_method: str
    ) -> ProcessorIntent:
        intent = await self._call(
            stripe.PaymentIntent.confirm,
            intent=intent_id_from_secret(client_secret),
            payment_method=payment_method,
        )
        return ProcessorIntent(
            id=intent["id"], client_secret=intent["client_secret"], status=intent["status"]
        )

    def parse_event(self, payload: bytes, signature: str) -> ProcessorEvent:
        if not self.webhook_secret:
            raise ProcessorError("Webhook secret is not configured", retryable=False)
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError):
            raise ValidationError("Invalid processor signature")

        obj = event["data"]["object"]
        error = obj.get("last_payment_error") or {}
        return ProcessorEvent(
            type=event["type"],
            intent_id=obj["id"],
            amount_minor=obj.get("amount_received") or obj.get("amount"),
            failure_message=error.get("message"),
        )
