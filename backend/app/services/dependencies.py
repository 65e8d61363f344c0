# backend/app/services/dependencies.py
"""
Dependency injection functions for services.

Routes depend on these instead of constructing services themselves, so
tests can swap the payment gateway or the whole service through
``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from ..core.config import settings
from ..database import get_db
from ..events.publisher import EventPublisher
from ..integrations.payment_gateway import PaymentGatewayClient
from ..integrations.stripe_gateway import StripePaymentGateway
from ..repositories.factory import RepositoryFactory
from .booking_payment_service import BookingPaymentService


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGatewayClient:
    """
    Process-wide Stripe gateway built from settings.

    Usage in routes:
        gateway: PaymentGatewayClient = Depends(get_payment_gateway)
    """
    return StripePaymentGateway(
        api_key=settings.stripe_secret_key.get_secret_value(),
        max_network_retries=settings.stripe_max_network_retries,
        timeout_seconds=settings.stripe_timeout_seconds,
        default_currency=settings.stripe_currency,
    )


def get_booking_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
) -> BookingPaymentService:
    """
    Dependency injection function for BookingPaymentService.

    Usage in routes:
        service: BookingPaymentService = Depends(get_booking_payment_service)
    """
    return BookingPaymentService(
        db,
        gateway,
        booking_repository=RepositoryFactory.create_booking_repository(db),
        ledger_repository=RepositoryFactory.create_payment_ledger_repository(db),
        config=settings,
    )


def get_event_publisher(db: Session = Depends(get_db)) -> EventPublisher:
    """Outbox publisher sharing the request's database session."""
    return EventPublisher(RepositoryFactory.create_event_outbox_repository(db))
