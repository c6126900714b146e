# tests/integration/test_payment_gateway.py

from datetime import timedelta

import httpx
import pytest

from ferry_engine.application.webhook_reconciler import WebhookOutcome
from ferry_engine.domain.clock import utc_now
from ferry_engine.domain.exceptions import AuthError, ConflictError, GatewayError
from ferry_engine.domain.state_machine import BookingStatus, PaymentStatus
from ferry_engine.infrastructure.db.models import Booking, Payment
from ferry_engine.infrastructure.repositories.payment_repository import PaymentRepository

from tests.conftest import signed_notification


def test_first_intent_uses_booking_code_and_exact_amount(
    session_factory, make_departure, create_booking, open_intent, gateway_stub
):
    booking_id = create_booking(make_departure(price=150000), passengers=2)

    intent = open_intent(booking_id)

    with session_factory() as db:
        booking = db.get(Booking, booking_id)
        payment = db.query(Payment).filter_by(booking_id=booking_id).one()
        assert intent.order_id == booking.booking_code
        assert payment.amount == booking.total_amount == 300000
        assert payment.status == PaymentStatus.PENDING
        assert payment.gateway_token == intent.gateway_token

    body = gateway_stub.snap_bodies()[0]
    assert body["transaction_details"]["gross_amount"] == 300000


def test_intent_expiry_never_exceeds_remaining_hold(
    make_departure, create_booking, open_intent, gateway_stub
):
    created = utc_now()
    booking_id = create_booking(make_departure(), passengers=1, now=created)

    open_intent(booking_id, now=created + timedelta(minutes=10))

    body = gateway_stub.snap_bodies()[0]
    assert body["expiry"]["unit"] == "second"
    assert body["expiry"]["duration"] == 300


def test_repeat_intent_reuses_cached_token(make_departure, create_booking, open_intent, gateway_stub):
    booking_id = create_booking(make_departure(), passengers=1)

    first = open_intent(booking_id)
    second = open_intent(booking_id)

    assert second.reused
    assert second.gateway_token == first.gateway_token
    assert len(gateway_stub.snap_bodies()) == 1


def test_forced_intent_gets_new_order_id(make_departure, create_booking, open_intent, gateway_stub):
    booking_id = create_booking(make_departure(), passengers=1)

    first = open_intent(booking_id)
    forced = open_intent(booking_id, force=True)

    assert not forced.reused
    assert forced.order_id != first.order_id
    assert forced.order_id.startswith(f"{first.order_id}-")
    assert forced.attempt == 2
    assert len(gateway_stub.snap_bodies()) == 2


def test_forced_intent_voids_the_previous_order(make_departure, create_booking, open_intent, gateway_stub):
    booking_id = create_booking(make_departure(), passengers=1)

    first = open_intent(booking_id)
    open_intent(booking_id, force=True)

    cancels = [request for request in gateway_stub.requests if request.url.path.endswith("/cancel")]
    assert len(cancels) == 1
    assert cancels[0].url.path.endswith(f"/{first.order_id}/cancel")


def test_failed_cancel_does_not_block_new_attempt(make_departure, create_booking, open_intent, gateway_stub):
    booking_id = create_booking(make_departure(), passengers=1)
    open_intent(booking_id)
    gateway_stub.cancel_status_code = 412

    forced = open_intent(booking_id, force=True)

    assert forced.attempt == 2


def test_late_settlement_for_voided_order_still_confirms_booking(
    session_factory, make_departure, create_booking, open_intent, reconciler
):
    booking_id = create_booking(make_departure(), passengers=1)
    first = open_intent(booking_id)
    forced = open_intent(booking_id, force=True)

    result = reconciler.ingest(signed_notification(first.order_id, f"{first.amount}.00"))

    assert result.outcome == WebhookOutcome.APPLIED
    assert result.order_id == forced.order_id
    with session_factory() as db:
        payment = db.query(Payment).filter_by(booking_id=booking_id).one()
        assert payment.status == PaymentStatus.SUCCESS
        assert db.get(Booking, booking_id).status == BookingStatus.CONFIRMED
        attempt = PaymentRepository(db).get_attempt_by_order_id(first.order_id)
        assert attempt.status == "SUCCESS"


def test_late_expiry_for_voided_order_leaves_new_attempt_open(
    session_factory, make_departure, create_booking, open_intent, reconciler
):
    booking_id = create_booking(make_departure(), passengers=1)
    first = open_intent(booking_id)
    open_intent(booking_id, force=True)

    result = reconciler.ingest(
        signed_notification(first.order_id, f"{first.amount}.00", transaction_status="cancel")
    )

    assert result.outcome == WebhookOutcome.NO_CHANGE
    with session_factory() as db:
        assert db.query(Payment).filter_by(booking_id=booking_id).one().status == PaymentStatus.PENDING


def test_failed_payment_is_superseded_by_new_attempt(
    session_factory, make_departure, create_booking, open_intent, reconciler
):
    booking_id = create_booking(make_departure(), passengers=1)
    first = open_intent(booking_id)
    reconciler.ingest(
        signed_notification(first.order_id, f"{first.amount}.00", transaction_status="expire")
    )

    retry = open_intent(booking_id)

    assert retry.order_id != first.order_id
    assert retry.attempt == 2
    with session_factory() as db:
        payments = db.query(Payment).filter_by(booking_id=booking_id).all()
        assert len(payments) == 1
        assert payments[0].status == PaymentStatus.PENDING
        assert db.get(Booking, booking_id).status == BookingStatus.PENDING


def test_retry_keeps_the_failed_attempt_readable(
    session_factory, make_departure, create_booking, open_intent, reconciler
):
    booking_id = create_booking(make_departure(), passengers=1)
    first = open_intent(booking_id)
    reconciler.ingest(
        signed_notification(
            first.order_id,
            f"{first.amount}.00",
            transaction_status="expire",
            transaction_id="txn-first",
        )
    )

    open_intent(booking_id)

    with session_factory() as db:
        payment = db.query(Payment).filter_by(booking_id=booking_id).one()
        assert payment.transaction_id is None
        attempts = PaymentRepository(db).list_attempts(payment.id)
        assert [attempt.order_id for attempt in attempts] == [first.order_id]
        assert attempts[0].attempt == 1
        assert attempts[0].status == "EXPIRED"
        assert attempts[0].transaction_id == "txn-first"
        assert "txn-first" in attempts[0].raw_payload


def test_refuses_expired_hold(make_departure, create_booking, open_intent):
    created = utc_now()
    booking_id = create_booking(make_departure(), passengers=1, now=created)

    with pytest.raises(ConflictError):
        open_intent(booking_id, now=created + timedelta(minutes=16))


def test_refuses_paid_booking(make_departure, create_booking, open_intent, reconciler):
    booking_id = create_booking(make_departure(), passengers=1)
    intent = open_intent(booking_id)
    reconciler.ingest(signed_notification(intent.order_id, f"{intent.amount}.00"))

    with pytest.raises(ConflictError):
        open_intent(booking_id, force=True)


def test_refuses_other_accounts(make_departure, create_booking, open_intent):
    booking_id = create_booking(make_departure(), passengers=1)

    with pytest.raises(AuthError):
        open_intent(booking_id, account_id="user-2")


def test_gateway_timeout_leaves_booking_pending(
    session_factory, make_departure, create_booking, open_intent, gateway_stub
):
    departure_id = make_departure(total_seats=5)
    booking_id = create_booking(departure_id, passengers=2)
    gateway_stub.error = httpx.ReadTimeout("gateway too slow")

    with pytest.raises(GatewayError) as excinfo:
        open_intent(booking_id)

    assert excinfo.value.retryable
    with session_factory() as db:
        assert db.get(Booking, booking_id).status == BookingStatus.PENDING
        assert db.query(Payment).filter_by(booking_id=booking_id).count() == 0
