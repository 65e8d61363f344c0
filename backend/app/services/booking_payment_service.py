# backend/app/services/booking_payment_service.py
"""
Booking Payment Service.

Drives a booking's money through the three decisions that follow checkout:

- accept: the business takes the booking; the platform fee and service
  amount are charged (or the service amount stays authorized until 24
  hours before the booking under the deferred policy)
- decline: the business refuses; every authorization is voided or refunded
- customer cancel: the customer withdraws; the refund depends on whether
  the booking was accepted and how close it is to starting

Gateway mutations are keyed ``booking:{booking_id}:{operation}:{authorization_id}``
so retries never charge or refund twice. Every money movement is committed
to the ledger before the next gateway call, which lets a failed or
interrupted operation be retried from where it stopped.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Callable, Dict, Iterator, Optional, Type, TypedDict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..constants.payment_status import (
    CANCELLABLE_STATES,
    RECREATE_STATES,
    AuthorizationState,
    BookingPaymentStatus,
)
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    BookingNotFound,
    BusinessRuleException,
    DomainException,
    FeeChargeFailed,
    GatewayUnavailable,
    InvalidBookingState,
    MissingPaymentMethod,
    RefundTargetNotCaptured,
    RepositoryException,
    ServiceAmountChargeFailed,
    ServiceException,
    UnexpectedGatewayState,
)
from ..domain.money import MoneySplit, from_minor_units, split_total, to_decimal, to_minor_units
from ..domain.payment_topology import DualAuthorization, PaymentTopology, SingleAuthorization
from ..domain.timing import Clock, is_within_cutoff, scheduled_start, utc_now
from ..events.booking_events import BookingPaymentEvent
from ..integrations.payment_gateway import (
    Authorization,
    GatewayNotFoundError,
    GatewayUnavailableError,
    PaymentGatewayClient,
    PaymentGatewayError,
)
from ..models.booking import Booking, BookingStatus
from ..models.payment import AuthorizationRole, PaymentScheduleStatus, TransactionDirection
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import BookingRepository
from ..repositories.payment_ledger_repository import PaymentLedgerRepository
from ..schemas.booking_payment import BookingPaymentResult, OperationStage, PaymentIssue
from .base import BaseService
from .payment_ledger_service import PaymentLedgerService
from .transfer_reversal_service import NOT_ATTEMPTED, TransferReversalService

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

LEG_ROLES = {
    "fee": AuthorizationRole.FEE,
    "service_amount": AuthorizationRole.SERVICE_AMOUNT,
}
LEG_FAILURES: Dict[str, Type[BusinessRuleException]] = {
    "fee": FeeChargeFailed,
    "service_amount": ServiceAmountChargeFailed,
}


class ScheduleCaptureResults(TypedDict):
    processed: int
    failed: int
    cancelled: int
    retry: int


@dataclass
class _Operation:
    result: BookingPaymentResult
    booking: Optional[Booking] = None

    @property
    def loaded(self) -> Booking:
        if self.booking is None:
            raise BookingNotFound(self.result.booking_id)
        return self.booking


class BookingPaymentService(BaseService):
    """Orchestrates accept, decline and customer cancel against the payment gateway."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayClient,
        booking_repository: Optional[BookingRepository] = None,
        ledger_repository: Optional[PaymentLedgerRepository] = None,
        config: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        super().__init__(db)
        config = config or default_settings
        self.gateway = gateway
        self.booking_repository = booking_repository or BookingRepository(db)
        self.ledger_repository = ledger_repository or PaymentLedgerRepository(db)
        self.ledger = PaymentLedgerService(db, self.ledger_repository, config.stripe_currency)
        self.reversals = TransferReversalService(db, gateway, self.ledger)
        self.currency = config.stripe_currency
        self.fee_rate = config.platform_fee_rate
        self.cutoff_hours = config.refund_cutoff_hours
        self.accept_charge_policy = config.accept_charge_policy
        self.clock = clock

    # Public operations

    @BaseService.measure_operation("accept_booking")
    def accept(self, booking_id: str) -> BookingPaymentResult:
        """Charge (or keep authorized) the booking's payment and mark it accepted."""
        return self._run("accept", booking_id, self._accept)

    @BaseService.measure_operation("decline_booking")
    def decline(
        self,
        booking_id: str,
        declined_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BookingPaymentResult:
        """Void or refund every authorization, then mark the booking declined."""
        return self._run(
            "decline", booking_id, lambda op: self._decline(op, declined_by, reason)
        )

    @BaseService.measure_operation("customer_cancel_booking")
    def customer_cancel(
        self,
        booking_id: str,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BookingPaymentResult:
        """Apply the cancellation refund policy and mark the booking cancelled."""
        return self._run(
            "cancel", booking_id, lambda op: self._cancel(op, cancelled_by, reason)
        )

    @BaseService.measure_operation("capture_due_schedules")
    def capture_due_schedules(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> ScheduleCaptureResults:
        """
        Capture service amounts whose deferred-capture time has arrived.

        Each due schedule is settled by re-running accept for its booking,
        which at this point falls inside the cutoff window and captures.
        Schedules for bookings that were declined or cancelled in the
        meantime are closed without a gateway call.
        """
        current = now or self.clock()
        results: ScheduleCaptureResults = {"processed": 0, "failed": 0, "cancelled": 0, "retry": 0}

        schedules = self.ledger_repository.get_due_schedules(current, limit)
        for schedule in schedules:
            schedule_id = schedule.id
            booking = self.booking_repository.get_by_id(schedule.booking_id)

            if booking is None or booking.is_terminal():
                with self.transaction():
                    self.ledger_repository.mark_schedule(
                        schedule,
                        PaymentScheduleStatus.CANCELLED,
                        current,
                        f"Booking is {booking.status if booking else 'missing'}",
                    )
                results["cancelled"] += 1
                continue

            outcome = self.accept(booking.id)
            schedule = self.ledger_repository.schedules.get_by_id(schedule_id)
            if schedule is None:
                continue

            if outcome.success and outcome.service_amount_charged:
                status, reason = PaymentScheduleStatus.PROCESSED, None
                results["processed"] += 1
            elif outcome.retryable:
                self.logger.warning(
                    f"Deferred capture for booking {booking.id} will be retried: {outcome.message}"
                )
                results["retry"] += 1
                continue
            else:
                status, reason = PaymentScheduleStatus.FAILED, outcome.message or "capture failed"
                results["failed"] += 1

            with self.transaction():
                self.ledger_repository.mark_schedule(schedule, status, current, reason)

        if schedules:
            self.logger.info(f"Deferred capture run: {results}")
        return results

    # Operation framing

    def _run(
        self,
        operation: str,
        booking_id: str,
        handler: Callable[[_Operation], None],
    ) -> BookingPaymentResult:
        op = _Operation(
            result=BookingPaymentResult(success=False, operation=operation, booking_id=booking_id)
        )
        try:
            handler(op)
        except DomainException as exc:
            self._fail(op, exc)
        except PaymentGatewayError as exc:
            self._fail(op, self._gateway_exception(exc, None, operation))
        except Exception as exc:
            self.logger.exception(f"Unexpected error during {operation} of booking {booking_id}")
            self._fail(
                op,
                ServiceException(
                    f"Unexpected error during {operation}: {exc}", code="InternalError"
                ),
            )

        result = op.result
        outcome = "success" if result.success else (result.error_code or "error")
        prometheus_metrics.record_booking_payment_outcome(operation, outcome)
        return result

    def _fail(self, op: _Operation, exc: DomainException) -> None:
        result = op.result
        self.logger.warning(
            f"{result.operation} failed for booking {result.booking_id} "
            f"at stage {result.stage.value}: {exc.code}: {exc.message}"
        )
        # Committed checkpoints survive; only the unfinished step is discarded.
        self.db.rollback()
        result.success = False
        result.stage = OperationStage.FAILED
        result.error_code = exc.code
        result.message = exc.message
        result.retryable = exc.retryable
        if op.booking is not None:
            try:
                self._snapshot(result, op.booking)
            except SQLAlchemyError as snapshot_error:
                self.logger.error(
                    f"Could not reload booking {result.booking_id} after failure: {snapshot_error}"
                )

    @contextmanager
    def _checkpoint(self, result: BookingPaymentResult, record_type: str) -> Iterator[None]:
        """Commit ledger and booking writes; a failure here is a warning, not an error."""
        try:
            with self.transaction():
                yield
        except (ServiceException, RepositoryException, SQLAlchemyError) as exc:
            self.ledger.report_failure(result, record_type, exc)

    def _load(self, op: _Operation, operation: str, allowed: frozenset[str]) -> Booking:
        booking = self.booking_repository.get_for_payment_update(op.result.booking_id)
        if booking is None:
            raise BookingNotFound(op.result.booking_id)
        op.booking = booking
        if booking.status not in allowed:
            raise InvalidBookingState(booking.id, booking.status, operation)
        op.result.stage = OperationStage.LOADED
        return booking

    def _finish(
        self,
        op: _Operation,
        event_type: str,
        refund_amount: Optional[Decimal] = None,
        cancellation_fee: Optional[Decimal] = None,
    ) -> None:
        result = op.result
        booking = op.loaded
        self._snapshot(result, booking)
        # Report what moved even if the booking row could not be updated.
        if refund_amount is not None:
            result.refund_amount = refund_amount
        if cancellation_fee is not None:
            result.cancellation_fee = cancellation_fee
        result.event = BookingPaymentEvent(
            booking_id=booking.id,
            event_type=event_type,
            occurred_at=self.clock(),
            refund_amount=refund_amount,
        )
        result.success = True
        result.stage = OperationStage.DONE
        self.logger.info(
            f"{result.operation} completed for booking {booking.id}: "
            f"status={result.booking_status} payment_status={result.payment_status}"
        )

    def _snapshot(self, result: BookingPaymentResult, booking: Booking) -> None:
        result.booking_status = booking.status
        result.payment_status = booking.payment_status
        result.fee_charged = bool(booking.fee_charged)
        result.service_amount_charged = bool(booking.service_amount_charged)
        result.service_amount_authorized = bool(booking.service_amount_authorized)
        if booking.refund_amount is not None:
            result.refund_amount = to_decimal(booking.refund_amount)
        if booking.cancellation_fee is not None:
            result.cancellation_fee = to_decimal(booking.cancellation_fee)

    # Gateway helpers

    def _gateway_exception(
        self,
        exc: PaymentGatewayError,
        authorization_id: Optional[str],
        operation: str,
        charge_failure: Optional[Type[BusinessRuleException]] = None,
    ) -> DomainException:
        details = {
            "authorization_id": authorization_id,
            "operation": operation,
            "gateway_code": exc.code,
            "decline_code": exc.decline_code,
        }
        if isinstance(exc, GatewayUnavailableError):
            return GatewayUnavailable(
                f"Payment gateway unavailable during {operation}: {exc}", details=details
            )
        if charge_failure is not None:
            return charge_failure(f"{operation} failed: {exc}", details=details)
        if isinstance(exc, GatewayNotFoundError):
            return UnexpectedGatewayState(authorization_id, "missing", operation)
        return UnexpectedGatewayState(authorization_id, exc.code or "error", operation)

    def _get_authorization(self, authorization_id: str, operation: str) -> Authorization:
        try:
            return self.gateway.get_authorization(authorization_id)
        except PaymentGatewayError as exc:
            raise self._gateway_exception(exc, authorization_id, operation) from exc

    def _resolve_topology(self, booking: Booking) -> Optional[PaymentTopology]:
        """Work out which authorizations a booking was paid through."""
        references = self.ledger_repository.get_authorization_references(booking.id)
        by_role: Dict[str, str] = {}
        for reference in references:
            by_role.setdefault(reference.role, reference.gateway_authorization_id)

        fee_id = booking.fee_payment_intent_id or by_role.get(AuthorizationRole.FEE.value)
        service_id = booking.service_amount_payment_intent_id or by_role.get(
            AuthorizationRole.SERVICE_AMOUNT.value
        )
        primary_id = self.ledger_repository.get_latest_authorization_id(booking.id)

        if fee_id or service_id:
            return DualAuthorization(
                fee_authorization_id=fee_id,
                service_amount_authorization_id=service_id,
                original_authorization_id=primary_id,
            )
        if primary_id:
            return SingleAuthorization(primary_id)
        return None

    def _split(self, booking: Booking) -> MoneySplit:
        return split_total(booking.total_amount, booking.service_fee, self.fee_rate)

    def _capture_now(self, booking: Booking) -> bool:
        """Whether the service amount is captured at accept rather than deferred."""
        if self.accept_charge_policy == "charge_immediately":
            return True
        return is_within_cutoff(booking, self.clock(), self.cutoff_hours)

    def _capture_due_at(self, booking: Booking) -> datetime:
        return scheduled_start(booking) - timedelta(hours=self.cutoff_hours)

    # Accept

    def _accept(self, op: _Operation) -> None:
        booking = self._load(
            op,
            "accept",
            frozenset({BookingStatus.PENDING.value, BookingStatus.ACCEPTED.value}),
        )
        result = op.result
        topology = self._resolve_topology(booking)
        if topology is None:
            raise MissingPaymentMethod(
                message=f"Booking {booking.id} has no payment authorization; checkout is incomplete"
            )
        result.authorization_ids = topology.authorization_ids()
        split = self._split(booking)

        if isinstance(topology, DualAuthorization):
            self._accept_dual(op, split, topology)
        else:
            authorization = self._get_authorization(topology.authorization_id, "accept")
            state = authorization.state
            if state == AuthorizationState.SUCCEEDED.value:
                self._accept_already_captured(op, split)
            elif state == AuthorizationState.REQUIRES_CAPTURE.value:
                self._accept_capture(op, split, authorization)
            elif state in RECREATE_STATES:
                self._accept_dual(
                    op,
                    split,
                    DualAuthorization(original_authorization_id=authorization.id),
                    source=authorization,
                )
            elif (
                state == AuthorizationState.CANCELED.value
                and booking.payment_method_id
                and booking.gateway_customer_id
                and authorization.payment_method_id == booking.payment_method_id
            ):
                # The combined authorization was voided by an earlier accept that
                # stopped before both charges were created.
                self._accept_dual(
                    op, split, DualAuthorization(original_authorization_id=authorization.id)
                )
            else:
                raise UnexpectedGatewayState(authorization.id, state, "accept")

        self._finish(op, "accepted")

    def _mark_accepted(self, booking: Booking, paid: bool) -> Dict[str, object]:
        changes: Dict[str, object] = {
            "status": BookingStatus.ACCEPTED.value,
            "payment_status": (
                BookingPaymentStatus.PAID.value if paid else BookingPaymentStatus.AUTHORIZED.value
            ),
        }
        if booking.accepted_at is None:
            changes["accepted_at"] = self.clock()
        return changes

    def _accept_already_captured(self, op: _Operation, split: MoneySplit) -> None:
        booking = op.loaded
        now = self.clock()
        self.logger.info(f"Payment for booking {booking.id} already captured; accept is a no-op")
        with self._checkpoint(op.result, "booking_state"):
            self.booking_repository.apply_payment_state(
                booking,
                service_fee=split.fee,
                service_amount=split.service_amount,
                fee_charged=True,
                fee_charged_at=booking.fee_charged_at or now,
                service_amount_charged=True,
                service_amount_charged_at=booking.service_amount_charged_at or now,
                service_amount_authorized=False,
                **self._mark_accepted(booking, paid=True),
            )
        op.result.stage = OperationStage.RECORDED

    def _accept_capture(
        self, op: _Operation, split: MoneySplit, authorization: Authorization
    ) -> None:
        booking = op.loaded
        result = op.result

        if not self._capture_now(booking):
            due_at = self._capture_due_at(booking)
            self.logger.info(
                f"Deferring capture of {authorization.id} for booking {booking.id} until {due_at}"
            )
            with self._checkpoint(result, "booking_state"):
                self.booking_repository.apply_payment_state(
                    booking,
                    service_fee=split.fee,
                    service_amount=split.service_amount,
                    service_amount_authorized=True,
                    **self._mark_accepted(booking, paid=False),
                )
                self.ledger.schedule_capture(result, booking, authorization.id, split.total, due_at)
            result.stage = OperationStage.RECORDED
            return

        try:
            captured = self.gateway.capture_authorization(
                authorization.id,
                idempotency_key=f"booking:{booking.id}:capture:{authorization.id}",
            )
        except PaymentGatewayError as exc:
            raise self._gateway_exception(exc, authorization.id, "capture") from exc
        if captured.state != AuthorizationState.SUCCEEDED.value:
            raise UnexpectedGatewayState(captured.id, captured.state, "capture")
        result.stage = OperationStage.DISPATCHED

        now = self.clock()
        with self._checkpoint(result, "booking_state"):
            self.booking_repository.apply_payment_state(
                booking,
                service_fee=split.fee,
                service_amount=split.service_amount,
                fee_charged=True,
                fee_charged_at=now,
                service_amount_charged=True,
                service_amount_charged_at=now,
                service_amount_authorized=False,
                **self._mark_accepted(booking, paid=True),
            )
            self._record_capture(result, booking, split, captured, now)
        result.stage = OperationStage.RECORDED

    def _record_capture(
        self,
        result: BookingPaymentResult,
        booking: Booking,
        split: MoneySplit,
        captured: Authorization,
        now: datetime,
    ) -> None:
        """Ledger entries for a captured combined authorization: charge, payout, schedules."""
        self.ledger.record_transaction(
            result,
            booking,
            gateway_reference_id=captured.id,
            amount=split.total,
            direction=TransactionDirection.CHARGE,
            transaction_type="booking_payment",
            description=f"Captured payment for booking {booking.booking_reference or booking.id}",
            metadata={
                "authorization_id": captured.id,
                "service_fee": str(split.fee),
                "service_amount": str(split.service_amount),
            },
        )
        self.ledger.record_payout(
            result,
            booking,
            gateway_reference_id=captured.id,
            gross_amount=split.total,
            platform_fee=split.fee,
            net_amount=split.service_amount,
            transfer_id=captured.transfer_id,
            payment_date=now,
        )
        self.ledger_repository.complete_schedules(booking.id, now)

    def _accept_dual(
        self,
        op: _Operation,
        split: MoneySplit,
        topology: DualAuthorization,
        source: Optional[Authorization] = None,
    ) -> None:
        """
        Settle the fee and the service amount as two separate charges.

        ``source`` is the combined authorization being replaced; it is voided
        once the stored payment method is known. Legs that already succeeded
        are left alone, so a retry picks up after the last committed leg.
        """
        booking = op.loaded
        result = op.result

        payment_method_id = booking.payment_method_id
        customer_id = booking.gateway_customer_id
        if source is not None:
            payment_method_id = source.payment_method_id or payment_method_id
            customer_id = source.customer_id or customer_id

        missing_leg = any(auth_id is None for _, auth_id in topology.legs())
        if missing_leg and not (payment_method_id and customer_id):
            raise MissingPaymentMethod(authorization_id=source.id if source else None)

        if source is not None:
            with self._checkpoint(result, "booking_state"):
                self.booking_repository.apply_payment_state(
                    booking,
                    payment_method_id=payment_method_id,
                    gateway_customer_id=customer_id,
                )
            try:
                self.gateway.cancel_authorization(
                    source.id, idempotency_key=f"booking:{booking.id}:void:{source.id}"
                )
            except PaymentGatewayError as exc:
                raise self._gateway_exception(exc, source.id, "void original authorization") from exc
            self.logger.info(
                f"Voided combined authorization {source.id} for booking {booking.id}; "
                "charging fee and service amount separately"
            )

        capture_service_now = self._capture_now(booking)
        service_settled = False
        for leg, existing_id in topology.legs():
            amount = split.fee if leg == "fee" else split.service_amount
            if amount <= 0:
                continue
            if existing_id:
                settled = self._settle_existing_leg(
                    op, split, leg, existing_id, amount, capture_service_now
                )
            else:
                settled = self._create_leg(
                    op,
                    split,
                    leg,
                    amount,
                    payment_method_id or "",
                    customer_id or "",
                    capture_service_now,
                )
            if leg == "service_amount":
                service_settled = settled
            elif not settled:
                raise FeeChargeFailed(f"Platform fee for booking {booking.id} was not charged")

        if split.service_amount <= 0:
            service_settled = True
        with self._checkpoint(result, "booking_state"):
            self.booking_repository.apply_payment_state(
                booking,
                service_fee=split.fee,
                service_amount=split.service_amount,
                **self._mark_accepted(booking, paid=service_settled),
            )
        result.authorization_ids = [
            auth_id
            for auth_id in (booking.fee_payment_intent_id, booking.service_amount_payment_intent_id)
            if auth_id
        ]
        result.stage = OperationStage.RECORDED

    def _settle_existing_leg(
        self,
        op: _Operation,
        split: MoneySplit,
        leg: str,
        authorization_id: str,
        amount: Decimal,
        capture_service_now: bool,
    ) -> bool:
        """Bring an already-created leg to its final state; True when its money is captured."""
        booking = op.loaded
        failure = LEG_FAILURES[leg]
        authorization = self._get_authorization(authorization_id, f"accept {leg}")

        if authorization.state == AuthorizationState.SUCCEEDED.value:
            if leg == "fee" and not booking.fee_charged:
                with self._checkpoint(op.result, "booking_state"):
                    self.booking_repository.apply_payment_state(
                        booking, fee_charged=True, fee_charged_at=self.clock()
                    )
            elif leg == "service_amount" and not booking.service_amount_charged:
                with self._checkpoint(op.result, "booking_state"):
                    self.booking_repository.apply_payment_state(
                        booking,
                        service_amount_charged=True,
                        service_amount_charged_at=self.clock(),
                        service_amount_authorized=False,
                    )
            return True

        if authorization.state != AuthorizationState.REQUIRES_CAPTURE.value:
            raise failure(
                f"{leg} payment {authorization_id} for booking {booking.id} "
                f"is {authorization.state}",
                details={"authorization_id": authorization_id, "state": authorization.state},
            )

        if leg == "service_amount" and not capture_service_now:
            self._defer_service_leg(op, authorization_id, amount)
            return False

        try:
            captured = self.gateway.capture_authorization(
                authorization_id,
                idempotency_key=f"booking:{booking.id}:capture:{authorization_id}",
            )
        except PaymentGatewayError as exc:
            raise self._gateway_exception(exc, authorization_id, f"capture {leg}", failure) from exc
        if captured.state != AuthorizationState.SUCCEEDED.value:
            raise failure(
                f"Capture of {leg} payment {authorization_id} ended in {captured.state}",
                details={"authorization_id": authorization_id, "state": captured.state},
            )
        op.result.stage = OperationStage.DISPATCHED
        self._record_leg(op, split, leg, captured, amount)
        return True

    def _create_leg(
        self,
        op: _Operation,
        split: MoneySplit,
        leg: str,
        amount: Decimal,
        payment_method_id: str,
        customer_id: str,
        capture_service_now: bool,
    ) -> bool:
        booking = op.loaded
        failure = LEG_FAILURES[leg]
        deferred = leg == "service_amount" and not capture_service_now

        try:
            authorization = self.gateway.create_and_confirm_authorization(
                amount=to_minor_units(amount),
                currency=self.currency,
                customer_id=customer_id,
                payment_method_id=payment_method_id,
                metadata={
                    "booking_id": booking.id,
                    "payment_type": "platform_fee" if leg == "fee" else "service_amount",
                    "booking_reference": booking.booking_reference or "",
                },
                capture_method="manual" if deferred else "automatic",
                destination_account_id=(
                    booking.business_connect_account_id if leg == "service_amount" else None
                ),
                idempotency_key=f"booking:{booking.id}:accept:{leg}",
            )
        except PaymentGatewayError as exc:
            raise self._gateway_exception(exc, None, f"charge {leg}", failure) from exc

        expected = (
            AuthorizationState.REQUIRES_CAPTURE.value
            if deferred
            else AuthorizationState.SUCCEEDED.value
        )
        if authorization.state != expected:
            raise failure(
                f"New {leg} payment {authorization.id} for booking {booking.id} "
                f"is {authorization.state}",
                details={"authorization_id": authorization.id, "state": authorization.state},
            )
        op.result.stage = OperationStage.DISPATCHED

        reference_column = (
            "fee_payment_intent_id" if leg == "fee" else "service_amount_payment_intent_id"
        )
        with self._checkpoint(op.result, "authorization_reference"):
            self.booking_repository.apply_payment_state(
                booking, **{reference_column: authorization.id}
            )
            self.ledger.record_authorization(
                op.result, booking, authorization.id, LEG_ROLES[leg], amount
            )

        if deferred:
            self._defer_service_leg(op, authorization.id, amount)
            return False
        self._record_leg(op, split, leg, authorization, amount)
        return True

    def _defer_service_leg(self, op: _Operation, authorization_id: str, amount: Decimal) -> None:
        booking = op.loaded
        due_at = self._capture_due_at(booking)
        with self._checkpoint(op.result, "payment_schedule"):
            self.booking_repository.apply_payment_state(booking, service_amount_authorized=True)
            self.ledger.schedule_capture(op.result, booking, authorization_id, amount, due_at)
        self.logger.info(
            f"Service amount {authorization_id} for booking {booking.id} authorized; "
            f"capture scheduled for {due_at}"
        )

    def _record_leg(
        self,
        op: _Operation,
        split: MoneySplit,
        leg: str,
        authorization: Authorization,
        amount: Decimal,
    ) -> None:
        booking = op.loaded
        result = op.result
        now = self.clock()
        label = booking.booking_reference or booking.id

        with self._checkpoint(result, f"{leg}_charge"):
            if leg == "fee":
                self.booking_repository.apply_payment_state(
                    booking, fee_charged=True, fee_charged_at=now
                )
                self.ledger.record_transaction(
                    result,
                    booking,
                    gateway_reference_id=authorization.id,
                    amount=amount,
                    direction=TransactionDirection.CHARGE,
                    transaction_type="platform_fee",
                    description=f"Platform fee for booking {label}",
                    metadata={"authorization_id": authorization.id, "payment_type": "platform_fee"},
                )
            else:
                self.booking_repository.apply_payment_state(
                    booking,
                    service_amount_charged=True,
                    service_amount_charged_at=now,
                    service_amount_authorized=False,
                )
                self.ledger.record_transaction(
                    result,
                    booking,
                    gateway_reference_id=authorization.id,
                    amount=amount,
                    direction=TransactionDirection.CHARGE,
                    transaction_type="service_amount",
                    description=f"Service amount for booking {label}",
                    metadata={
                        "authorization_id": authorization.id,
                        "payment_type": "service_amount",
                    },
                )
                self.ledger.record_payout(
                    result,
                    booking,
                    gateway_reference_id=authorization.id,
                    gross_amount=split.total,
                    platform_fee=split.fee,
                    net_amount=split.service_amount,
                    transfer_id=authorization.transfer_id,
                    payment_date=now,
                )
                self.ledger_repository.complete_schedules(booking.id, now)

    # Decline

    def _decline(self, op: _Operation, declined_by: Optional[str], reason: Optional[str]) -> None:
        booking = self._load(
            op,
            "decline",
            frozenset(
                {
                    BookingStatus.PENDING.value,
                    BookingStatus.ACCEPTED.value,
                    BookingStatus.DECLINED.value,
                }
            ),
        )
        result = op.result
        topology = self._resolve_topology(booking)
        authorization_ids = topology.authorization_ids() if topology else []
        result.authorization_ids = authorization_ids

        for authorization_id in authorization_ids:
            try:
                self._release_for_decline(op, authorization_id)
            except PaymentGatewayError as exc:
                error = self._gateway_exception(exc, authorization_id, "decline")
                self.logger.warning(
                    f"Decline step failed for booking {booking.id} payment {authorization_id}: {exc}"
                )
                result.sub_step_failures.append(
                    PaymentIssue(
                        step="decline_release",
                        code=error.code,
                        message=str(exc),
                        authorization_id=authorization_id,
                    )
                )
        result.stage = OperationStage.DISPATCHED

        with self._checkpoint(result, "booking_state"):
            self.booking_repository.apply_payment_state(
                booking,
                status=BookingStatus.DECLINED.value,
                declined_at=booking.declined_at or self.clock(),
                declined_by=declined_by or booking.declined_by,
                decline_reason=reason or booking.decline_reason,
                fee_charged=False,
                service_amount_charged=False,
                service_amount_authorized=False,
                payment_status=BookingPaymentStatus.PENDING.value,
            )
            self.ledger_repository.cancel_schedules(booking.id, "booking declined")
        result.stage = OperationStage.RECORDED
        self._finish(op, "declined")

    def _release_for_decline(self, op: _Operation, authorization_id: str) -> None:
        """Void an uncaptured authorization or refund a captured one; gateway errors propagate."""
        booking = op.loaded
        authorization = self.gateway.get_authorization(authorization_id)

        if authorization.state in CANCELLABLE_STATES:
            self.gateway.cancel_authorization(
                authorization_id,
                idempotency_key=f"booking:{booking.id}:decline_cancel:{authorization_id}",
            )
            self.logger.info(f"Voided {authorization_id} for declined booking {booking.id}")
            return

        if authorization.state != AuthorizationState.SUCCEEDED.value:
            self.logger.info(
                f"No action for {authorization_id} in state {authorization.state} "
                f"on declined booking {booking.id}"
            )
            return

        captured = authorization.amount_received or authorization.amount
        if authorization.amount_refunded >= captured:
            self.logger.info(f"{authorization_id} for booking {booking.id} already refunded")
            return

        refund = self.gateway.create_refund(
            authorization_id,
            metadata={"booking_id": booking.id, "reason": "booking_declined"},
            idempotency_key=f"booking:{booking.id}:decline_refund:{authorization_id}",
        )
        refunded = from_minor_units(refund.amount or captured - authorization.amount_refunded)
        with self._checkpoint(op.result, "decline_refund"):
            self.ledger.record_transaction(
                op.result,
                booking,
                gateway_reference_id=refund.id,
                amount=refunded,
                direction=TransactionDirection.REFUND,
                transaction_type="booking_decline_refund",
                description=f"Refund for declined booking {booking.booking_reference or booking.id}",
                metadata={
                    "authorization_id": authorization_id,
                    "refund_id": refund.id,
                    "reason": "booking_declined",
                },
            )

    # Customer cancel

    def _cancel(self, op: _Operation, cancelled_by: Optional[str], reason: Optional[str]) -> None:
        booking = self._load(
            op,
            "cancel",
            frozenset(
                {
                    BookingStatus.PENDING.value,
                    BookingStatus.ACCEPTED.value,
                    BookingStatus.CANCELLED.value,
                }
            ),
        )
        result = op.result

        if booking.status == BookingStatus.CANCELLED.value:
            self.logger.info(f"Booking {booking.id} already cancelled; returning recorded outcome")
            self._finish(op, "cancelled", to_decimal(booking.refund_amount))
            return

        topology = self._resolve_topology(booking)
        result.authorization_ids = topology.authorization_ids() if topology else []
        split = self._split(booking)
        was_accepted = booking.was_accepted

        refund_amount = ZERO
        cancellation_fee = ZERO
        extra: Dict[str, object] = {}

        if not was_accepted:
            for authorization_id in result.authorization_ids:
                self._void_for_cancel(op, authorization_id)
            extra["payment_status"] = BookingPaymentStatus.PENDING.value
            extra["service_amount_authorized"] = False
        elif is_within_cutoff(booking, self.clock(), self.cutoff_hours):
            cancellation_fee = split.total
            self.logger.info(
                f"Booking {booking.id} cancelled inside the {self.cutoff_hours}h window; no refund"
            )
            if booking.service_amount_authorized:
                self._capture_held_service_amount(op, topology, split, extra)
        else:
            cancellation_fee = split.fee
            refund_amount = self._refund_service_amount(op, topology, split, extra)
        result.stage = OperationStage.DISPATCHED

        if refund_amount > 0:
            extra["payment_status"] = BookingPaymentStatus.PARTIALLY_REFUNDED.value
        with self._checkpoint(result, "booking_state"):
            self.booking_repository.apply_payment_state(
                booking,
                status=BookingStatus.CANCELLED.value,
                cancelled_at=self.clock(),
                cancelled_by=cancelled_by,
                cancellation_reason=reason,
                cancellation_fee=cancellation_fee,
                refund_amount=refund_amount,
                **extra,
            )
            self.ledger_repository.cancel_schedules(booking.id, "booking cancelled")
        result.stage = OperationStage.RECORDED
        self._finish(op, "cancelled", refund_amount, cancellation_fee)

    def _void_for_cancel(self, op: _Operation, authorization_id: str) -> None:
        """Best-effort void of an authorization on a booking that was never accepted."""
        booking = op.loaded
        try:
            authorization = self.gateway.get_authorization(authorization_id)
            if authorization.state in CANCELLABLE_STATES:
                self.gateway.cancel_authorization(
                    authorization_id,
                    idempotency_key=f"booking:{booking.id}:cancel_void:{authorization_id}",
                )
        except PaymentGatewayError as exc:
            error = self._gateway_exception(exc, authorization_id, "cancel")
            self.logger.warning(
                f"Could not void {authorization_id} for cancelled booking {booking.id}: {exc}"
            )
            op.result.sub_step_failures.append(
                PaymentIssue(
                    step="cancel_void",
                    code=error.code,
                    message=str(exc),
                    authorization_id=authorization_id,
                )
            )

    def _capture_held_service_amount(
        self,
        op: _Operation,
        topology: Optional[PaymentTopology],
        split: MoneySplit,
        extra: Dict[str, object],
    ) -> None:
        """
        Capture a service amount still on hold when the customer cancels inside the window.

        The deferred capture for this booking is closed with the cancellation,
        so the kept amount has to be collected here.
        """
        booking = op.loaded
        result = op.result
        target = topology.refund_target() if topology else None
        if not target:
            return
        authorization = self._get_authorization(target, "cancel")
        if authorization.state != AuthorizationState.REQUIRES_CAPTURE.value:
            return

        try:
            captured = self.gateway.capture_authorization(
                target, idempotency_key=f"booking:{booking.id}:capture:{target}"
            )
        except GatewayUnavailableError as exc:
            raise self._gateway_exception(exc, target, "capture") from exc
        except PaymentGatewayError as exc:
            error = self._gateway_exception(exc, target, "capture")
            self.logger.warning(
                f"Could not capture held amount {target} for cancelled booking {booking.id}: {exc}"
            )
            result.sub_step_failures.append(
                PaymentIssue(
                    step="cancel_capture",
                    code=error.code,
                    message=str(exc),
                    authorization_id=target,
                )
            )
            return
        if captured.state != AuthorizationState.SUCCEEDED.value:
            raise UnexpectedGatewayState(captured.id, captured.state, "capture")
        result.stage = OperationStage.DISPATCHED
        self.logger.info(
            f"Captured held amount {target} for booking {booking.id} cancelled inside the window"
        )

        if isinstance(topology, DualAuthorization):
            self._record_leg(op, split, "service_amount", captured, split.service_amount)
        else:
            now = self.clock()
            with self._checkpoint(result, "booking_state"):
                self.booking_repository.apply_payment_state(
                    booking,
                    fee_charged=True,
                    fee_charged_at=booking.fee_charged_at or now,
                    service_amount_charged=True,
                    service_amount_charged_at=now,
                    service_amount_authorized=False,
                )
                self._record_capture(result, booking, split, captured, now)
        extra["payment_status"] = BookingPaymentStatus.PAID.value
        extra["service_amount_authorized"] = False

    def _refund_service_amount(
        self,
        op: _Operation,
        topology: Optional[PaymentTopology],
        split: MoneySplit,
        extra: Dict[str, object],
    ) -> Decimal:
        """Refund the service amount, keeping the platform fee; returns the amount refunded."""
        booking = op.loaded
        result = op.result

        target = topology.refund_target() if topology else None
        if not target:
            raise RefundTargetNotCaptured(None, None)
        authorization = self._get_authorization(target, "cancel")

        if authorization.state == AuthorizationState.REQUIRES_CAPTURE.value:
            # Service amount was only authorized; releasing the hold is the refund.
            try:
                self.gateway.cancel_authorization(
                    target, idempotency_key=f"booking:{booking.id}:cancel_release:{target}"
                )
            except PaymentGatewayError as exc:
                raise self._gateway_exception(exc, target, "release authorization") from exc
            self.logger.info(f"Released uncaptured service amount {target} for booking {booking.id}")
            extra["service_amount_authorized"] = False
            return ZERO

        if authorization.state != AuthorizationState.SUCCEEDED.value:
            raise RefundTargetNotCaptured(target, authorization.state)

        refund_amount = split.service_amount
        previous = self.ledger_repository.find_transaction(
            booking.id, "booking_cancellation_refund"
        )
        if previous is not None:
            self.logger.info(
                f"Cancellation refund {previous.gateway_reference_id} for booking {booking.id} "
                "already recorded; not refunding again"
            )
            return to_decimal(previous.amount)
        if authorization.amount_refunded >= to_minor_units(refund_amount):
            self.logger.warning(
                f"{target} for booking {booking.id} already has "
                f"{from_minor_units(authorization.amount_refunded)} refunded; not refunding again"
            )
            return refund_amount

        payout = self.ledger_repository.get_payout_for_booking(booking.id)
        reversal = NOT_ATTEMPTED
        if payout is not None and self.reversals.should_reverse(booking, payout):
            with self._checkpoint(result, "transfer_reversal"):
                reversal = self.reversals.reverse_for_refund(result, booking, payout, refund_amount)

        metadata = {
            "booking_id": booking.id,
            "refund_type": "service_amount_only",
            "service_fee_kept": str(split.fee),
            **reversal.as_metadata(),
        }
        try:
            refund = self.gateway.create_refund(
                target,
                amount=to_minor_units(refund_amount),
                metadata=metadata,
                idempotency_key=f"booking:{booking.id}:cancel_refund:{target}",
            )
        except PaymentGatewayError as exc:
            raise self._gateway_exception(exc, target, "refund") from exc
        self.logger.info(
            f"Refunded {refund_amount} of {target} for cancelled booking {booking.id} ({refund.id})"
        )

        with self._checkpoint(result, "cancellation_refund"):
            self.ledger.record_transaction(
                result,
                booking,
                gateway_reference_id=refund.id,
                amount=refund_amount,
                direction=TransactionDirection.REFUND,
                transaction_type="booking_cancellation_refund",
                description=(
                    f"Service amount refund for cancelled booking "
                    f"{booking.booking_reference or booking.id}"
                ),
                metadata={**metadata, "authorization_id": target, "refund_id": refund.id},
            )
        return refund_amount
