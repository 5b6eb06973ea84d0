"""FastAPI dependency injection helpers."""

from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rideledger.config import settings
from rideledger.infrastructure.database import async_session_factory
from rideledger.infrastructure.processor import PaymentProcessor, StripeProcessor
from rideledger.infrastructure.redis_client import get_redis
from rideledger.services.bookings import BookingService
from rideledger.services.payments import PaymentOrchestrator
from rideledger.services.promotion import PromotionService
from rideledger.services.settlement import ManualSettlementService


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


_processor: Optional[StripeProcessor] = None


def get_processor() -> PaymentProcessor:
    global _processor
    if _processor is None:
        _processor = StripeProcessor(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout_seconds=settings.processor_timeout_seconds,
            max_network_retries=settings.processor_max_network_retries,
        )
    return _processor


def get_booking_service(db: AsyncSession = Depends(get_db)) -> BookingService:
    return BookingService(db)


def get_payment_orchestrator(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_processor),
    redis: Optional[aioredis.Redis] = Depends(get_redis),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, processor, redis=redis)


def get_settlement_service(db: AsyncSession = Depends(get_db)) -> ManualSettlementService:
    return ManualSettlementService(db)


def get_promotion_service(db: AsyncSession = Depends(get_db)) -> PromotionService:
    return PromotionService(db)
