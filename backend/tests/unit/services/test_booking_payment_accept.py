from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError

from app.integrations.payment_gateway import GatewayUnavailableError, PaymentGatewayError
from app.models.booking import Booking
from app.models.payment import (
    BookingPaymentAuthorization,
    BookingPaymentSchedule,
    BusinessPayoutRecord,
    FinancialTransaction,
)


def _transactions(db, booking_id):
    return db.query(FinancialTransaction).filter_by(booking_id=booking_id).all()


class TestAcceptCapture:
    def test_capture_records_charge_and_payout(self, unit_db, gateway, make_booking, service):
        booking = make_booking(hours_until=48)
        gateway.add("pi_checkout", "requires_capture", amount=12000)

        result = service.accept(booking.id)

        assert result.success is True
        assert result.booking_status == "accepted"
        assert result.payment_status == "paid"
        assert result.fee_charged is True
        assert result.service_amount_charged is True
        assert result.service_amount_authorized is False
        assert result.event is not None and result.event.name == "booking.accepted"

        [(_, auth_id, key)] = gateway.calls_to("capture_authorization")
        assert auth_id == "pi_checkout"
        assert key == f"booking:{booking.id}:capture:pi_checkout"

        [ftr] = _transactions(unit_db, booking.id)
        assert ftr.amount == Decimal("120.00")
        assert ftr.direction == "charge"
        assert ftr.gateway_reference_id == "pi_checkout"

        payout = unit_db.query(BusinessPayoutRecord).filter_by(booking_id=booking.id).one()
        assert payout.gross_payment_amount == Decimal("120.00")
        assert payout.platform_fee == Decimal("20.00")
        assert payout.net_payment_amount == Decimal("100.00")

        stored = unit_db.get(Booking, booking.id)
        assert stored.service_fee == Decimal("20.00")
        assert stored.service_amount == Decimal("100.00")
        assert stored.accepted_at is not None

    def test_accept_twice_does_not_charge_or_record_again(self, unit_db, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "requires_capture", amount=12000)

        first = service.accept(booking.id)
        second = service.accept(booking.id)

        assert first.success and second.success
        assert len(gateway.calls_to("capture_authorization")) == 1
        assert len(_transactions(unit_db, booking.id)) == 1
        assert (first.fee_charged, first.service_amount_charged) == (
            second.fee_charged,
            second.service_amount_charged,
        )

    def test_already_succeeded_authorization_is_a_no_op(self, unit_db, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "succeeded", amount=12000)

        result = service.accept(booking.id)

        assert result.success is True
        assert result.fee_charged is True
        assert result.service_amount_charged is True
        assert result.service_amount_authorized is False
        assert gateway.calls_to("capture_authorization") == []
        assert _transactions(unit_db, booking.id) == []

    def test_capture_failure_leaves_booking_pending(self, unit_db, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "requires_capture", amount=12000)
        gateway.fail("capture_authorization", GatewayUnavailableError("connection reset"))

        result = service.accept(booking.id)

        assert result.success is False
        assert result.error_code == "GatewayUnavailable"
        assert result.retryable is True
        assert result.stage == "failed"
        assert result.booking_status == "pending"
        assert _transactions(unit_db, booking.id) == []

    def test_ledger_write_failure_is_a_warning(self, unit_db, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "requires_capture", amount=12000)

        with patch.object(
            service.ledger_repository, "insert_transaction", side_effect=SQLAlchemyError("disk full")
        ):
            result = service.accept(booking.id)

        assert result.success is True
        assert result.booking_status == "accepted"
        [warning] = result.ledger_warnings
        assert warning.code == "LedgerWriteFailed"
        assert warning.step == "financial_transaction"
        assert warning.authorization_id == "pi_checkout"
        assert unit_db.get(Booking, booking.id).service_amount_charged is True


class TestAcceptDualCharge:
    def test_unconfirmed_authorization_is_replaced_by_two_charges(
        self, unit_db, gateway, make_booking, service
    ):
        booking = make_booking()
        gateway.add(
            "pi_checkout",
            "requires_confirmation",
            amount=12000,
            payment_method_id="pm_saved",
            customer_id="cus_saved",
        )

        result = service.accept(booking.id)

        assert result.success is True
        assert result.fee_charged is True
        assert result.service_amount_charged is True
        assert [c[1] for c in gateway.calls_to("cancel_authorization")] == ["pi_checkout"]

        creates = gateway.calls_to("create_and_confirm_authorization")
        assert [c[2] for c in creates] == [
            f"booking:{booking.id}:accept:fee",
            f"booking:{booking.id}:accept:service_amount",
        ]

        amounts = sorted(t.amount for t in _transactions(unit_db, booking.id))
        assert amounts == [Decimal("20.00"), Decimal("100.00")]

        stored = unit_db.get(Booking, booking.id)
        assert stored.fee_payment_intent_id is not None
        assert stored.service_amount_payment_intent_id is not None
        assert stored.payment_method_id == "pm_saved"
        roles = {
            ref.role
            for ref in unit_db.query(BookingPaymentAuthorization).filter_by(booking_id=booking.id)
        }
        assert roles == {"primary", "fee", "service_amount"}

        payout = unit_db.query(BusinessPayoutRecord).filter_by(booking_id=booking.id).one()
        assert payout.gateway_reference_id == stored.service_amount_payment_intent_id
        assert payout.transfer_id is not None

    def test_missing_payment_method_fails_without_gateway_mutation(
        self, gateway, make_booking, service
    ):
        booking = make_booking(payment_method_id=None, gateway_customer_id=None)
        gateway.add("pi_checkout", "requires_payment_method", amount=12000)

        result = service.accept(booking.id)

        assert result.success is False
        assert result.error_code == "MissingPaymentMethod"
        assert gateway.calls_to("cancel_authorization") == []
        assert gateway.calls_to("create_and_confirm_authorization") == []

    def test_service_leg_failure_keeps_fee_and_retry_resumes(
        self, unit_db, gateway, make_booking, service
    ):
        booking = make_booking()
        gateway.add("pi_checkout", "requires_confirmation", amount=12000)
        gateway.fail(
            "create_and_confirm_authorization",
            PaymentGatewayError("Your card was declined.", code="card_declined"),
            authorization_id="service_amount",
        )

        failed = service.accept(booking.id)

        assert failed.success is False
        assert failed.error_code == "ServiceAmountChargeFailed"
        assert failed.fee_charged is True
        assert failed.service_amount_charged is False
        assert [t.amount for t in _transactions(unit_db, booking.id)] == [Decimal("20.00")]

        gateway.failures.clear()
        retried = service.accept(booking.id)

        assert retried.success is True
        assert retried.service_amount_charged is True
        fee_creates = [
            c for c in gateway.calls_to("create_and_confirm_authorization") if c[1] == "platform_fee"
        ]
        assert len(fee_creates) == 1
        assert len(_transactions(unit_db, booking.id)) == 2

    def test_fee_leg_failure_is_reported_distinctly(self, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "requires_confirmation", amount=12000)
        gateway.create_states["platform_fee"] = "requires_action"

        result = service.accept(booking.id)

        assert result.success is False
        assert result.error_code == "FeeChargeFailed"
        assert result.fee_charged is False

    def test_retry_after_voiding_original_creates_both_charges(self, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "requires_confirmation", amount=12000, payment_method_id="pm_card_visa")
        gateway.fail(
            "create_and_confirm_authorization",
            PaymentGatewayError("Your card was declined.", code="card_declined"),
            authorization_id="platform_fee",
        )
        assert service.accept(booking.id).error_code == "FeeChargeFailed"
        assert gateway.authorizations["pi_checkout"].state == "canceled"

        gateway.failures.clear()
        retried = service.accept(booking.id)

        assert retried.success is True
        assert retried.fee_charged is True
        assert retried.service_amount_charged is True
        assert len(gateway.calls_to("cancel_authorization")) == 1

    def test_authorization_voided_elsewhere_is_not_recharged(self, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "canceled", amount=12000, payment_method_id="pm_other")

        result = service.accept(booking.id)

        assert result.success is False
        assert result.error_code == "UnexpectedGatewayState"
        assert gateway.calls_to("create_and_confirm_authorization") == []


class TestAcceptErrors:
    def test_unknown_booking(self, service):
        result = service.accept("01HZZZZZZZZZZZZZZZZZZZZZZZ")

        assert result.success is False
        assert result.error_code == "BookingNotFound"
        assert result.retryable is False

    def test_cancelled_booking_cannot_be_accepted(self, gateway, make_booking, service):
        booking = make_booking(status="cancelled")

        result = service.accept(booking.id)

        assert result.error_code == "InvalidBookingState"
        assert gateway.calls == []

    def test_processing_authorization_is_unexpected(self, gateway, make_booking, service):
        booking = make_booking()
        gateway.add("pi_checkout", "processing", amount=12000)

        result = service.accept(booking.id)

        assert result.success is False
        assert result.error_code == "UnexpectedGatewayState"

    def test_booking_without_authorization(self, make_booking, service):
        booking = make_booking(authorization_id=None)

        result = service.accept(booking.id)

        assert result.error_code == "MissingPaymentMethod"


class TestDeferredCapture:
    def test_service_amount_stays_authorized_until_cutoff(
        self, unit_db, gateway, make_booking, make_service
    ):
        booking = make_booking(hours_until=72)
        gateway.add("pi_checkout", "requires_capture", amount=12000)
        service = make_service(policy="authorize_until_24h")

        result = service.accept(booking.id)

        assert result.success is True
        assert result.booking_status == "accepted"
        assert result.payment_status == "authorized"
        assert result.service_amount_authorized is True
        assert result.service_amount_charged is False
        assert gateway.calls_to("capture_authorization") == []

        schedule = unit_db.query(BookingPaymentSchedule).filter_by(booking_id=booking.id).one()
        assert schedule.status == "scheduled"
        assert schedule.gateway_authorization_id == "pi_checkout"
        due = schedule.scheduled_at.replace(tzinfo=timezone.utc)
        assert due == datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)

    def test_due_schedule_is_captured(self, unit_db, gateway, make_booking, make_service):
        booking = make_booking(hours_until=72)
        gateway.add("pi_checkout", "requires_capture", amount=12000)
        make_service(policy="authorize_until_24h").accept(booking.id)

        later = datetime(2026, 3, 4, 12, 30, tzinfo=timezone.utc)
        results = make_service(policy="authorize_until_24h", now=later).capture_due_schedules()

        assert results["processed"] == 1
        schedule = unit_db.query(BookingPaymentSchedule).filter_by(booking_id=booking.id).one()
        assert schedule.status == "processed"
        stored = unit_db.get(Booking, booking.id)
        assert stored.service_amount_charged is True
        assert stored.payment_status == "paid"
        assert len(_transactions(unit_db, booking.id)) == 1

    def test_schedule_for_cancelled_booking_is_closed(self, unit_db, gateway, make_booking, make_service):
        booking = make_booking(hours_until=72)
        gateway.add("pi_checkout", "requires_capture", amount=12000)
        make_service(policy="authorize_until_24h").accept(booking.id)
        unit_db.get(Booking, booking.id).status = "declined"
        unit_db.commit()

        later = datetime(2026, 3, 4, 12, 30, tzinfo=timezone.utc)
        results = make_service(now=later).capture_due_schedules()

        assert results["cancelled"] == 1
        assert gateway.calls_to("capture_authorization") == []
