# tests/integration/test_webhook_reconciler.py

from datetime import timedelta

import pytest

from ferry_engine.application.webhook_reconciler import WebhookOutcome, WebhookReconciler
from ferry_engine.domain.actors import Actor, ActorRole
from ferry_engine.domain.clock import utc_now
from ferry_engine.domain.exceptions import AuthError, GatewayError
from ferry_engine.domain.state_machine import BookingStatus, PaymentStatus, TicketStatus
from ferry_engine.infrastructure.db.models import (
    Booking,
    Departure,
    OutboxEvent,
    Payment,
    Ticket,
    WebhookAudit,
)
from ferry_engine.infrastructure.repositories.payment_repository import PaymentRepository

from tests.conftest import signed_notification

ADMIN = Actor("admin-1", ActorRole.ADMIN)


@pytest.fixture
def pending_payment(make_departure, create_booking, open_intent):
    departure_id = make_departure(total_seats=5, price=150000)
    booking_id = create_booking(departure_id, passengers=2)
    intent = open_intent(booking_id)
    return departure_id, booking_id, intent


def _state(session_factory, booking_id):
    with session_factory() as db:
        booking = db.get(Booking, booking_id)
        payment = db.query(Payment).filter_by(booking_id=booking_id).one()
        tickets = db.query(Ticket).filter_by(booking_id=booking_id).all()
        audits = db.query(WebhookAudit).all()
        return booking.status, payment.status, tickets, audits


# ---------------------
# HAPPY PATH
# ---------------------

def test_settlement_confirms_booking_and_issues_tickets(session_factory, reconciler, pending_payment):
    departure_id, booking_id, intent = pending_payment

    result = reconciler.ingest(signed_notification(intent.order_id, "300000.00"))

    assert result.outcome == WebhookOutcome.APPLIED
    assert result.tickets_issued == 2
    booking_status, payment_status, tickets, audits = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.CONFIRMED
    assert payment_status == PaymentStatus.SUCCESS
    assert {ticket.status for ticket in tickets} == {TicketStatus.VALID}
    assert len(audits) == 1 and audits[0].outcome == "APPLIED"
    with session_factory() as db:
        assert db.get(Departure, departure_id).available_seats == 3
        booking = db.get(Booking, booking_id)
        assert [p.seat_label for p in booking.passengers] == ["A1", "A2"]
        assert db.query(OutboxEvent).filter_by(event_type="BOOKING_CONFIRMED").count() == 1


def test_replayed_notification_returns_recorded_result(session_factory, reconciler, pending_payment):
    _, booking_id, intent = pending_payment
    notification = signed_notification(intent.order_id, "300000.00")

    first = reconciler.ingest(notification)
    second = reconciler.ingest(dict(notification))

    assert not first.replayed
    assert second.replayed
    assert second.audit_id == first.audit_id
    assert second.outcome == WebhookOutcome.APPLIED
    _, _, tickets, audits = _state(session_factory, booking_id)
    assert len(tickets) == 2
    assert len(audits) == 1
    assert audits[0].replay_count == 1


def test_pending_then_settlement_are_separate_notifications(session_factory, reconciler, pending_payment):
    _, booking_id, intent = pending_payment

    pending = reconciler.ingest(
        signed_notification(intent.order_id, "300000.00", transaction_status="pending", status_code="201")
    )
    settled = reconciler.ingest(signed_notification(intent.order_id, "300000.00"))

    assert pending.outcome == WebhookOutcome.NO_CHANGE
    assert settled.outcome == WebhookOutcome.APPLIED
    assert not settled.replayed


# ---------------------
# REJECTIONS
# ---------------------

@pytest.mark.parametrize(
    "field, value",
    [("order_id", "FRY-OTHER"), ("gross_amount", "1.00"), ("status_code", "201")],
)
def test_tampered_notification_is_rejected_and_audited(
    session_factory, reconciler, pending_payment, field, value
):
    _, booking_id, intent = pending_payment
    notification = signed_notification(intent.order_id, "300000.00")
    notification[field] = value

    result = reconciler.ingest(notification)

    assert result.outcome == WebhookOutcome.INVALID_SIGNATURE
    booking_status, payment_status, tickets, audits = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.PENDING
    assert payment_status == PaymentStatus.PENDING
    assert tickets == []
    assert audits[0].outcome == "INVALID_SIGNATURE"
    assert not audits[0].signature_valid


def test_forged_notification_does_not_block_genuine_one(reconciler, pending_payment):
    _, _, intent = pending_payment
    forged = signed_notification(intent.order_id, "300000.00", server_key="wrong-key")

    assert reconciler.ingest(forged).outcome == WebhookOutcome.INVALID_SIGNATURE
    assert reconciler.ingest(signed_notification(intent.order_id, "300000.00")).outcome == WebhookOutcome.APPLIED


def test_amount_mismatch_changes_nothing(session_factory, reconciler, pending_payment):
    _, booking_id, intent = pending_payment

    result = reconciler.ingest(signed_notification(intent.order_id, "1000.00"))

    assert result.outcome == WebhookOutcome.AMOUNT_MISMATCH
    booking_status, payment_status, tickets, _ = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.PENDING
    assert payment_status == PaymentStatus.PENDING
    assert tickets == []


def test_unknown_order_is_audited(session_factory, reconciler):
    result = reconciler.ingest(signed_notification("FRY-20260101-NOPE00", "100.00"))

    assert result.outcome == WebhookOutcome.PAYMENT_NOT_FOUND
    with session_factory() as db:
        assert db.query(WebhookAudit).one().order_id == "FRY-20260101-NOPE00"


def test_malformed_payload_is_audited(session_factory, reconciler):
    result = reconciler.ingest({"order_id": "FRY-1"})

    assert result.outcome == WebhookOutcome.MALFORMED
    with session_factory() as db:
        assert db.query(WebhookAudit).one().outcome == "MALFORMED"


def test_illegal_transition_is_recorded_not_applied(session_factory, reconciler, pending_payment):
    _, booking_id, intent = pending_payment
    reconciler.ingest(
        signed_notification(intent.order_id, "300000.00", transaction_status="expire", transaction_id="txn-1")
    )

    result = reconciler.ingest(
        signed_notification(intent.order_id, "300000.00", transaction_id="txn-2")
    )

    assert result.outcome == WebhookOutcome.TRANSITION_REJECTED
    booking_status, payment_status, tickets, _ = _state(session_factory, booking_id)
    assert payment_status == PaymentStatus.EXPIRED
    assert booking_status == BookingStatus.PENDING
    assert tickets == []


@pytest.mark.parametrize(
    "transaction_status, expected",
    [
        ("deny", PaymentStatus.DENY),
        ("failure", PaymentStatus.FAILED),
        ("cancel", PaymentStatus.CANCELLED),
    ],
)
def test_failed_payment_leaves_booking_pending_and_seats_held(
    session_factory, reconciler, pending_payment, transaction_status, expected
):
    departure_id, booking_id, intent = pending_payment

    reconciler.ingest(
        signed_notification(intent.order_id, "300000.00", transaction_status=transaction_status)
    )

    booking_status, payment_status, _, _ = _state(session_factory, booking_id)
    assert payment_status == expected
    assert booking_status == BookingStatus.PENDING
    with session_factory() as db:
        assert db.get(Departure, departure_id).available_seats == 3


# ---------------------
# REFUND
# ---------------------

def test_refund_notification_refunds_booking_and_releases_once(
    session_factory, reconciler, pending_payment
):
    departure_id, booking_id, intent = pending_payment
    reconciler.ingest(signed_notification(intent.order_id, "300000.00"))

    result = reconciler.ingest(
        signed_notification(intent.order_id, "300000.00", transaction_status="refund")
    )

    assert result.outcome == WebhookOutcome.APPLIED
    booking_status, payment_status, tickets, _ = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.REFUNDED
    assert payment_status == PaymentStatus.REFUNDED
    assert {ticket.status for ticket in tickets} == {TicketStatus.CANCELLED}
    with session_factory() as db:
        assert db.get(Departure, departure_id).available_seats == 5


# ---------------------
# CASCADE FAILURE
# ---------------------

def test_ticket_failure_rolls_back_and_audits_error(
    session_factory, settings, gateway, pending_payment
):
    _, booking_id, intent = pending_payment
    reconciler = WebhookReconciler(
        session_factory,
        settings,
        gateway,
        ticket_code_generator=lambda: "TKT-FIXED-0000",
    )

    result = reconciler.ingest(signed_notification(intent.order_id, "300000.00"))

    assert result.outcome == WebhookOutcome.ERROR
    booking_status, payment_status, tickets, audits = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.PENDING
    assert payment_status == PaymentStatus.PENDING
    assert tickets == []
    assert [audit.outcome for audit in audits] == ["ERROR"]


# ---------------------
# RESYNC
# ---------------------

def test_resync_applies_authoritative_status(session_factory, reconciler, pending_payment, gateway_stub):
    _, booking_id, intent = pending_payment
    gateway_stub.statuses[intent.order_id] = {
        "status_code": "200",
        "transaction_id": "txn-resync",
        "order_id": intent.order_id,
        "gross_amount": "300000.00",
        "transaction_status": "settlement",
        "payment_type": "qris",
    }
    with session_factory() as db:
        booking_code = db.get(Booking, booking_id).booking_code

    result = reconciler.resync(booking_code, ADMIN)

    assert result.outcome == WebhookOutcome.APPLIED
    booking_status, payment_status, tickets, audits = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.CONFIRMED
    assert payment_status == PaymentStatus.SUCCESS
    assert len(tickets) == 2
    assert audits[0].source == "RESYNC"


def test_resync_requires_admin(reconciler):
    with pytest.raises(AuthError):
        reconciler.resync("FRY-20260101-AAAAAA", Actor("user-1"))


def test_resync_surfaces_gateway_errors(session_factory, reconciler, pending_payment):
    _, booking_id, _ = pending_payment
    with session_factory() as db:
        booking_code = db.get(Booking, booking_id).booking_code

    with pytest.raises(GatewayError):
        reconciler.resync(booking_code, ADMIN)


# ---------------------
# CONCURRENCY
# ---------------------

def test_second_writer_loses_payment_transition(session_factory, pending_payment):
    _, booking_id, intent = pending_payment
    first = session_factory()
    second = session_factory()
    try:
        winner = PaymentRepository(first).get_by_order_id(intent.order_id)
        loser = PaymentRepository(second).get_by_order_id(intent.order_id)
        assert winner.status == loser.status == PaymentStatus.PENDING

        assert PaymentRepository(first).transition(winner, PaymentStatus.SUCCESS, transaction_id="txn-a")
        first.commit()

        assert not PaymentRepository(second).transition(loser, PaymentStatus.FAILED, transaction_id="txn-b")
        second.commit()
    finally:
        first.close()
        second.close()

    with session_factory() as db:
        payment = db.query(Payment).filter_by(booking_id=booking_id).one()
        assert payment.status == PaymentStatus.SUCCESS
        assert payment.transaction_id == "txn-a"


# ---------------------
# STUCK PAYMENT RECOVERY
# ---------------------

@pytest.fixture
def stuck_payment(make_departure, create_booking, open_intent):
    requested = utc_now() - timedelta(minutes=8)
    departure_id = make_departure(total_seats=5, price=150000)
    booking_id = create_booking(departure_id, passengers=1, now=requested)
    intent = open_intent(booking_id, now=requested)
    return departure_id, booking_id, intent


def _gateway_status(order_id, transaction_status="settlement", gross_amount="150000.00"):
    return {
        "status_code": "200",
        "transaction_id": f"txn-{order_id}",
        "order_id": order_id,
        "gross_amount": gross_amount,
        "transaction_status": transaction_status,
        "payment_type": "bank_transfer",
    }


def test_recovery_settles_payment_whose_notification_was_lost(
    session_factory, reconciler, stuck_payment, gateway_stub
):
    _, booking_id, intent = stuck_payment
    gateway_stub.statuses[intent.order_id] = _gateway_status(intent.order_id)

    summary = reconciler.recover_stuck_payments()

    assert summary.checked == 1
    assert summary.recovered == [intent.order_id]
    assert summary.failures == []
    booking_status, payment_status, tickets, audits = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.CONFIRMED
    assert payment_status == PaymentStatus.SUCCESS
    assert len(tickets) == 1
    assert [audit.source for audit in audits] == ["RECOVERY"]


def test_recovery_leaves_recent_payments_to_the_webhook(reconciler, pending_payment, gateway_stub):
    _, _, intent = pending_payment
    gateway_stub.statuses[intent.order_id] = _gateway_status(intent.order_id, gross_amount="300000.00")

    summary = reconciler.recover_stuck_payments()

    assert summary.checked == 0
    assert gateway_stub.requests[-1].url.path.endswith("/snap/v1/transactions")


def test_recovery_skips_orders_the_gateway_never_saw(session_factory, reconciler, stuck_payment):
    _, booking_id, _ = stuck_payment

    summary = reconciler.recover_stuck_payments()

    assert summary.checked == 1
    assert summary.skipped == 1
    assert summary.recovered == []
    booking_status, payment_status, _, audits = _state(session_factory, booking_id)
    assert booking_status == BookingStatus.PENDING
    assert payment_status == PaymentStatus.PENDING
    assert audits == []


def test_recovery_counts_still_pending_orders_as_unchanged(reconciler, stuck_payment, gateway_stub):
    _, _, intent = stuck_payment
    gateway_stub.statuses[intent.order_id] = _gateway_status(intent.order_id, "pending")

    summary = reconciler.recover_stuck_payments()

    assert summary.unchanged == 1
    assert summary.recovered == []


def test_recovery_isolates_gateway_failures(
    session_factory, reconciler, make_departure, create_booking, open_intent, gateway_stub
):
    departure_id = make_departure(total_seats=5, price=150000)
    earlier = utc_now() - timedelta(minutes=9)
    broken_booking = create_booking(departure_id, passengers=1, now=earlier)
    broken = open_intent(broken_booking, now=earlier)
    later = utc_now() - timedelta(minutes=7)
    healthy_booking = create_booking(departure_id, passengers=1, now=later)
    healthy = open_intent(healthy_booking, now=later)
    gateway_stub.statuses[broken.order_id] = {"status_code": "500", "status_message": "Internal error"}
    gateway_stub.statuses[healthy.order_id] = _gateway_status(healthy.order_id)

    summary = reconciler.recover_stuck_payments()

    assert summary.checked == 2
    assert [failure.order_id for failure in summary.failures] == [broken.order_id]
    assert summary.recovered == [healthy.order_id]
    assert _state(session_factory, broken_booking)[0] == BookingStatus.PENDING
    assert _state(session_factory, healthy_booking)[0] == BookingStatus.CONFIRMED
