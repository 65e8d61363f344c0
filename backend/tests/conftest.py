"""
Shared fixtures for the booking payments test suite.

- ``unit_db``: a fresh in-memory SQLite database per test
- ``gateway``: an in-memory payment gateway with failure injection
- ``make_booking``: seeds a booking plus its checkout authorization reference
- ``make_service``: a BookingPaymentService on a fixed clock
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import ulid

from app.core.config import settings
from app.database import Base
from app.integrations.payment_gateway import (
    Authorization,
    GatewayNotFoundError,
    PaymentGatewayError,
    Refund,
    Reversal,
)

# Import models so Base.metadata is populated for create_all.
import app.models  # noqa: F401
from app.models.booking import Booking
from app.models.payment import AuthorizationRole
from app.repositories.payment_ledger_repository import PaymentLedgerRepository
from app.services.booking_payment_service import BookingPaymentService

FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def unit_db() -> Session:
    """Provide a session on a private in-memory engine with working SAVEPOINTs."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's implicit transactions break SAVEPOINT; let SQLAlchemy emit BEGIN itself.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, expire_on_commit=False, future=True)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


class FakePaymentGateway:
    """In-memory gateway that records every call and honors idempotency keys."""

    def __init__(self) -> None:
        self.authorizations: Dict[str, Authorization] = {}
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []
        self.failures: Dict[Tuple[str, Optional[str]], PaymentGatewayError] = {}
        self.create_states: Dict[str, str] = {}
        self.refunds: List[Refund] = []
        self.reversals: List[Reversal] = []
        self._by_key: Dict[str, Any] = {}
        self._seq = 0

    def add(self, authorization_id: str, state: str, amount: int = 12000, **fields: Any) -> Authorization:
        received = amount if state == "succeeded" else 0
        fields.setdefault("amount_received", received)
        authorization = Authorization(id=authorization_id, state=state, amount=amount, **fields)
        self.authorizations[authorization_id] = authorization
        return authorization

    def fail(self, method: str, error: PaymentGatewayError, authorization_id: Optional[str] = None) -> None:
        self.failures[(method, authorization_id)] = error

    def expire_idempotency_keys(self) -> None:
        """Forget replayable responses, as the gateway does once its key window passes."""
        self._by_key.clear()

    def calls_to(self, method: str) -> List[Tuple[str, Optional[str], Optional[str]]]:
        return [call for call in self.calls if call[0] == method]

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_fake_{self._seq}"

    def _enter(self, method: str, authorization_id: Optional[str], key: Optional[str] = None) -> None:
        self.calls.append((method, authorization_id, key))
        error = self.failures.get((method, authorization_id)) or self.failures.get((method, None))
        if error is not None:
            raise error

    def _lookup(self, authorization_id: str) -> Authorization:
        if authorization_id not in self.authorizations:
            raise GatewayNotFoundError(f"No such payment_intent: {authorization_id}", code="resource_missing")
        return self.authorizations[authorization_id]

    def get_authorization(self, authorization_id: str) -> Authorization:
        self._enter("get_authorization", authorization_id)
        return self._lookup(authorization_id)

    def confirm_authorization(self, authorization_id: str, *, idempotency_key: Optional[str] = None) -> Authorization:
        self._enter("confirm_authorization", authorization_id, idempotency_key)
        authorization = replace(self._lookup(authorization_id), state="requires_capture")
        self.authorizations[authorization_id] = authorization
        return authorization

    def capture_authorization(self, authorization_id: str, *, idempotency_key: Optional[str] = None) -> Authorization:
        self._enter("capture_authorization", authorization_id, idempotency_key)
        current = self._lookup(authorization_id)
        authorization = replace(current, state="succeeded", amount_received=current.amount)
        self.authorizations[authorization_id] = authorization
        return authorization

    def cancel_authorization(self, authorization_id: str, *, idempotency_key: Optional[str] = None) -> Authorization:
        self._enter("cancel_authorization", authorization_id, idempotency_key)
        authorization = replace(self._lookup(authorization_id), state="canceled")
        self.authorizations[authorization_id] = authorization
        return authorization

    def create_and_confirm_authorization(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: Dict[str, Any],
        capture_method: str = "automatic",
        destination_account_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Authorization:
        self._enter("create_and_confirm_authorization", metadata.get("payment_type"), idempotency_key)
        if idempotency_key in self._by_key:
            return self.authorizations[self._by_key[idempotency_key]]
        state = self.create_states.get(
            metadata.get("payment_type", ""),
            "succeeded" if capture_method == "automatic" else "requires_capture",
        )
        authorization = Authorization(
            id=self._next_id("pi"),
            state=state,
            amount=amount,
            currency=currency,
            amount_received=amount if state == "succeeded" else 0,
            payment_method_id=payment_method_id,
            customer_id=customer_id,
            transfer_id=self._next_id("tr") if destination_account_id and state == "succeeded" else None,
        )
        self.authorizations[authorization.id] = authorization
        if idempotency_key:
            self._by_key[idempotency_key] = authorization.id
        return authorization

    def create_refund(
        self,
        authorization_id: str,
        *,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        self._enter("create_refund", authorization_id, idempotency_key)
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        current = self._lookup(authorization_id)
        refunded = amount if amount is not None else current.amount_received - current.amount_refunded
        self.authorizations[authorization_id] = replace(
            current, amount_refunded=current.amount_refunded + refunded
        )
        refund = Refund(id=self._next_id("re"), amount=refunded)
        self.refunds.append(refund)
        if idempotency_key:
            self._by_key[idempotency_key] = refund
        return refund

    def reverse_transfer(
        self,
        transfer_id: str,
        *,
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Reversal:
        self._enter("reverse_transfer", transfer_id, idempotency_key)
        reversal = Reversal(id=self._next_id("trr"), amount=amount)
        self.reversals.append(reversal)
        return reversal


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def make_booking(unit_db: Session):
    """Seed a booking ``hours_until`` hours after FIXED_NOW with its checkout authorization."""

    def _make(
        *,
        hours_until: float = 48,
        status: str = "pending",
        total: Decimal = Decimal("120.00"),
        fee: Optional[Decimal] = Decimal("20.00"),
        authorization_id: Optional[str] = "pi_checkout",
        **overrides: Any,
    ) -> Booking:
        start = FIXED_NOW + timedelta(hours=hours_until)
        values: Dict[str, Any] = {
            "id": str(ulid.ULID()),
            "customer_id": str(ulid.ULID()),
            "business_id": str(ulid.ULID()),
            "booking_reference": "BK-1001",
            "booking_date": start.date(),
            "start_time": start.time(),
            "timezone": "UTC",
            "total_amount": total,
            "service_fee": fee,
            "status": status,
            "payment_status": "pending",
            "payment_method_id": "pm_card_visa",
            "gateway_customer_id": "cus_test",
            "business_connect_account_id": "acct_business",
        }
        values.update(overrides)
        booking = Booking(**values)
        unit_db.add(booking)
        unit_db.flush()
        if authorization_id:
            PaymentLedgerRepository(unit_db).record_authorization(
                booking.id, authorization_id, AuthorizationRole.PRIMARY, total
            )
        unit_db.commit()
        return booking

    return _make


@pytest.fixture
def make_service(unit_db: Session, gateway: FakePaymentGateway):
    def _make(policy: str = "charge_immediately", now: datetime = FIXED_NOW) -> BookingPaymentService:
        config = settings.model_copy(update={"accept_charge_policy": policy})
        return BookingPaymentService(unit_db, gateway, config=config, clock=lambda: now)

    return _make


@pytest.fixture
def service(make_service) -> BookingPaymentService:
    return make_service()
