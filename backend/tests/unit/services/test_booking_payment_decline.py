from decimal import Decimal

import ulid

from app.integrations.payment_gateway import PaymentGatewayError
from app.models.booking import Booking
from app.models.payment import BookingPaymentSchedule, FinancialTransaction


def _refunds(db, booking_id):
    return db.query(FinancialTransaction).filter_by(booking_id=booking_id, direction="refund").all()


def _dual_booking(make_booking, gateway):
    booking = make_booking(
        authorization_id=None,
        fee_payment_intent_id="pi_fee",
        service_amount_payment_intent_id="pi_service",
    )
    gateway.add("pi_fee", "succeeded", amount=2000)
    gateway.add("pi_service", "requires_confirmation", amount=10000)
    return booking


def test_decline_refunds_captured_and_voids_uncaptured(unit_db, gateway, make_booking, service):
    booking = _dual_booking(make_booking, gateway)
    decliner = str(ulid.ULID())

    result = service.decline(booking.id, declined_by=decliner, reason="Fully booked")

    assert result.success is True
    assert result.sub_step_failures == []
    assert result.booking_status == "declined"
    assert result.payment_status == "pending"
    assert (result.fee_charged, result.service_amount_charged, result.service_amount_authorized) == (
        False,
        False,
        False,
    )
    assert result.event is not None and result.event.name == "booking.declined"

    [(_, refunded_id, key)] = gateway.calls_to("create_refund")
    assert refunded_id == "pi_fee"
    assert key == f"booking:{booking.id}:decline_refund:pi_fee"
    assert [c[1] for c in gateway.calls_to("cancel_authorization")] == ["pi_service"]

    [refund] = _refunds(unit_db, booking.id)
    assert refund.amount == Decimal("20.00")
    assert refund.transaction_type == "booking_decline_refund"

    stored = unit_db.get(Booking, booking.id)
    assert stored.decline_reason == "Fully booked"
    assert stored.declined_by == decliner
    assert stored.declined_at is not None


def test_refund_failure_is_reported_but_decline_completes(unit_db, gateway, make_booking, service):
    booking = _dual_booking(make_booking, gateway)
    gateway.fail("create_refund", PaymentGatewayError("charge_expired_for_refund"))

    result = service.decline(booking.id)

    assert result.success is True
    assert result.booking_status == "declined"
    [failure] = result.sub_step_failures
    assert failure.step == "decline_release"
    assert failure.authorization_id == "pi_fee"
    assert "charge_expired_for_refund" in failure.message
    # The other authorization is still handled
    assert [c[1] for c in gateway.calls_to("cancel_authorization")] == ["pi_service"]
    assert _refunds(unit_db, booking.id) == []


def test_fully_refunded_authorization_is_skipped(gateway, make_booking, service):
    booking = make_booking()
    gateway.add("pi_checkout", "succeeded", amount=12000, amount_refunded=12000)

    result = service.decline(booking.id)

    assert result.success is True
    assert gateway.calls_to("create_refund") == []


def test_decline_cancels_deferred_capture(unit_db, gateway, make_booking, make_service):
    booking = make_booking(hours_until=72)
    gateway.add("pi_checkout", "requires_capture", amount=12000)
    service = make_service(policy="authorize_until_24h")
    service.accept(booking.id)

    result = service.decline(booking.id)

    assert result.success is True
    assert result.service_amount_authorized is False
    [(_, voided, key)] = gateway.calls_to("cancel_authorization")
    assert voided == "pi_checkout"
    assert key == f"booking:{booking.id}:decline_cancel:pi_checkout"
    schedule = unit_db.query(BookingPaymentSchedule).filter_by(booking_id=booking.id).one()
    assert schedule.status == "cancelled"


def test_completed_booking_cannot_be_declined(gateway, make_booking, service):
    booking = make_booking(status="completed")

    result = service.decline(booking.id)

    assert result.success is False
    assert result.error_code == "InvalidBookingState"
    assert gateway.calls == []
