import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from ferry_engine.config import EngineSettings
from ferry_engine.domain.actors import Actor
from ferry_engine.domain.clock import utc_now
from ferry_engine.domain.codes import generate_ticket_code
from ferry_engine.domain.exceptions import (
    AuthError,
    GatewayError,
    InvalidSignatureError,
    NotFoundError,
    ReplayDetectedError,
)
from ferry_engine.domain.state_machine import (
    BookingStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from ferry_engine.application.ticket_service import TicketService
from ferry_engine.infrastructure.db.models import Booking, Payment, PaymentAttempt, WebhookAudit
from ferry_engine.infrastructure.db.session import session_scope
from ferry_engine.infrastructure.gateway.midtrans_client import (
    MidtransClient,
    map_transaction_status,
)
from ferry_engine.infrastructure.repositories.booking_repository import BookingRepository
from ferry_engine.infrastructure.repositories.inventory_ledger import InventoryLedger
from ferry_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from ferry_engine.infrastructure.repositories.payment_repository import PaymentRepository
from ferry_engine.infrastructure.repositories.ticket_repository import TicketRepository
from ferry_engine.infrastructure.repositories.webhook_audit_repository import (
    WebhookAuditRepository,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("order_id", "status_code", "gross_amount", "transaction_status")
MAX_AUDIT_PAGE = 200


class WebhookOutcome(str, Enum):
    APPLIED = "APPLIED"
    NO_CHANGE = "NO_CHANGE"
    TRANSITION_REJECTED = "TRANSITION_REJECTED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    MALFORMED = "MALFORMED"
    ERROR = "ERROR"


# Outcomes that settle a notification for good. Anything else may be
# delivered again and processed again.
FINAL_OUTCOMES = frozenset(
    {
        WebhookOutcome.APPLIED.value,
        WebhookOutcome.NO_CHANGE.value,
        WebhookOutcome.TRANSITION_REJECTED.value,
        WebhookOutcome.AMOUNT_MISMATCH.value,
    }
)


@dataclass
class ProcessingResult:
    outcome: WebhookOutcome
    message: str
    order_id: str | None = None
    payment_status: str | None = None
    booking_status: str | None = None
    tickets_issued: int = 0
    audit_id: str | None = None
    replayed: bool = False

    @property
    def accepted(self) -> bool:
        return self.outcome in (WebhookOutcome.APPLIED, WebhookOutcome.NO_CHANGE)


@dataclass
class RecoveryFailure:
    order_id: str
    error: str


@dataclass
class RecoverySummary:
    started_at: datetime
    checked: int = 0
    recovered: list[str] = field(default_factory=list)
    unchanged: int = 0
    skipped: int = 0
    failures: list[RecoveryFailure] = field(default_factory=list)


def build_replay_key(notification: dict) -> str:
    """
    One gateway transaction reports several statuses over its life
    (pending, then settlement, then maybe refund), so the key carries
    the reported status next to the transaction id.
    """
    transaction_id = notification.get("transaction_id") or notification.get("order_id")
    return ":".join(
        [
            str(transaction_id),
            str(notification.get("transaction_status") or "-").lower(),
            str(notification.get("fraud_status") or "-").lower(),
        ]
    )


def _serialize_payload(notification: object) -> str:
    return json.dumps(notification, sort_keys=True, default=str)


def _hash_webhook_payload(serialized: str) -> str:
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class WebhookReconciler:
    """
    The only path by which a payment leaves PENDING on the gateway's word.

    Each notification is processed in its own transaction with the
    payment row locked, so concurrent deliveries for one order are
    linearized. The audit row is written in that same transaction; if
    processing fails the transaction is rolled back and an ERROR audit
    is written in a fresh one.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: EngineSettings,
        gateway: MidtransClient,
        ticket_code_generator: Callable[[], str] = generate_ticket_code,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.gateway = gateway
        self.ticket_code_generator = ticket_code_generator

    # -----------------------------
    # Entry points
    # -----------------------------
    def ingest(self, notification: object, now: datetime | None = None) -> ProcessingResult:
        started = time.monotonic()
        current = now or utc_now()

        if not isinstance(notification, dict) or any(
            notification.get(key) in (None, "") for key in REQUIRED_FIELDS
        ):
            logger.warning("Rejected malformed payment notification")
            return self._record_rejection(
                notification,
                WebhookOutcome.MALFORMED,
                "Notification is missing required fields",
                started,
            )

        try:
            self.gateway.verify_signature(notification)
        except InvalidSignatureError as exc:
            logger.warning("Rejected payment notification: %s", exc)
            return self._record_rejection(
                notification,
                WebhookOutcome.INVALID_SIGNATURE,
                "Signature verification failed",
                started,
            )
        except GatewayError as exc:
            logger.error("Cannot verify payment notification: %s", exc)
            return self._record_rejection(
                notification,
                WebhookOutcome.ERROR,
                str(exc),
                started,
            )

        return self._process(
            notification,
            source="WEBHOOK",
            signature_valid=True,
            started=started,
            now=current,
        )

    def resync(
        self,
        booking_code: str,
        actor: Actor,
        now: datetime | None = None,
    ) -> ProcessingResult:
        """Re-query the gateway directly and reconcile against its answer."""
        if not actor.is_admin:
            raise AuthError("Only administrators can resync payments")

        started = time.monotonic()
        current = now or utc_now()

        with session_scope(self.session_factory) as db:
            booking = BookingRepository(db).get_by_code(booking_code.strip().upper())
            if not booking:
                raise NotFoundError("Booking not found")
            payment = PaymentRepository(db).get_by_booking_id(booking.id)
            if not payment:
                raise NotFoundError("Booking has no payment to resync")
            order_id = payment.order_id

        status = dict(self.gateway.get_transaction_status(order_id))
        status.setdefault("order_id", order_id)
        logger.info(
            "Resyncing order %s for booking %s: gateway reports %s",
            order_id,
            booking_code,
            status.get("transaction_status"),
        )

        # The status API is an authenticated direct channel, so it is trusted
        # without the notification signature.
        return self._process(
            status,
            source="RESYNC",
            signature_valid=True,
            started=started,
            now=current,
        )

    def recover_stuck_payments(self, now: datetime | None = None) -> RecoverySummary:
        """
        Re-queries the gateway for PENDING payments whose notification has
        not arrived within the recovery window. Each order is reconciled in
        its own transaction; one failure does not stop the batch.
        """
        current = now or utc_now()
        summary = RecoverySummary(started_at=current)
        cutoff = current - timedelta(minutes=self.settings.payment_recovery_after_minutes)

        with session_scope(self.session_factory) as db:
            order_ids = PaymentRepository(db).list_stuck_order_ids(
                cutoff,
                self.settings.recovery_batch_size,
            )

        for order_id in order_ids:
            summary.checked += 1
            started = time.monotonic()
            try:
                status = dict(self.gateway.get_transaction_status(order_id))
            except GatewayError as exc:
                if _is_unknown_transaction(exc):
                    # The customer never chose a payment method on the gateway page.
                    summary.skipped += 1
                    continue
                logger.warning("Recovery status query failed for order %s: %s", order_id, exc)
                summary.failures.append(RecoveryFailure(order_id=order_id, error=str(exc)))
                continue

            status.setdefault("order_id", order_id)
            result = self._process(
                status,
                source="RECOVERY",
                signature_valid=True,
                started=started,
                now=current,
            )
            if result.outcome == WebhookOutcome.APPLIED:
                summary.recovered.append(order_id)
            elif result.outcome == WebhookOutcome.ERROR:
                summary.failures.append(RecoveryFailure(order_id=order_id, error=result.message))
            else:
                summary.unchanged += 1

        logger.info(
            "Payment recovery finished: checked=%s recovered=%s unchanged=%s skipped=%s failed=%s",
            summary.checked,
            len(summary.recovered),
            summary.unchanged,
            summary.skipped,
            len(summary.failures),
        )
        return summary

    def list_audits(
        self,
        actor: Actor,
        outcome: str | None = None,
        order_id: str | None = None,
        limit: int = 50,
    ) -> list[WebhookAudit]:
        if not actor.is_admin:
            raise AuthError("Only administrators can read the webhook audit trail")
        with session_scope(self.session_factory) as db:
            return WebhookAuditRepository(db).list_recent(
                outcome=outcome,
                order_id=order_id,
                limit=max(1, min(limit, MAX_AUDIT_PAGE)),
            )

    # -----------------------------
    # Processing
    # -----------------------------
    def _process(
        self,
        notification: dict,
        source: str,
        signature_valid: bool,
        started: float,
        now: datetime,
    ) -> ProcessingResult:
        replay_key = build_replay_key(notification)
        try:
            with session_scope(self.session_factory) as db:
                audits = WebhookAuditRepository(db)
                try:
                    self._ensure_not_replayed(audits, replay_key)
                except ReplayDetectedError as exc:
                    audits.mark_replayed(exc.audit_id, now)
                    logger.info("Replayed notification %s answered from audit", replay_key)
                    return self._result_from_audit(db.get(WebhookAudit, exc.audit_id))

                result = self._apply(db, notification, now)
                audit = self._audit(
                    db,
                    notification,
                    source=source,
                    replay_key=replay_key,
                    signature_valid=signature_valid,
                    result=result,
                    started=started,
                )
                result.audit_id = audit.id
                return result
        except Exception as exc:
            logger.exception(
                "Failed processing payment notification for order %s",
                notification.get("order_id"),
            )
            return self._record_rejection(
                notification,
                WebhookOutcome.ERROR,
                f"Processing failed: {type(exc).__name__}",
                started,
                source=source,
                signature_valid=signature_valid,
            )

    def _ensure_not_replayed(self, audits: WebhookAuditRepository, replay_key: str) -> None:
        prior = audits.find_final(replay_key, FINAL_OUTCOMES)
        if prior:
            raise ReplayDetectedError(replay_key=replay_key, audit_id=prior.id)

    def _apply(self, db: Session, notification: dict, now: datetime) -> ProcessingResult:
        order_id = str(notification["order_id"])
        payments = PaymentRepository(db)

        payment = payments.get_by_order_id(order_id, for_update=True)
        superseded = None
        if not payment:
            superseded = payments.get_attempt_by_order_id(order_id)
            if superseded:
                payment = payments.get_by_id(superseded.payment_id, for_update=True)
        if not payment:
            logger.warning("Payment notification for unknown order %s", order_id)
            return ProcessingResult(
                outcome=WebhookOutcome.PAYMENT_NOT_FOUND,
                message="No payment matches this order",
                order_id=order_id,
            )

        booking = BookingRepository(db).get_by_id(payment.booking_id, for_update=True)

        try:
            gross_amount = Decimal(str(notification["gross_amount"]))
        except InvalidOperation:
            return self._snapshot(
                WebhookOutcome.MALFORMED,
                "Gross amount is not a number",
                payment,
                booking,
            )

        if gross_amount != Decimal(payment.amount):
            logger.warning(
                "Amount mismatch for order %s: notified=%s stored=%s",
                order_id,
                gross_amount,
                payment.amount,
            )
            return self._snapshot(
                WebhookOutcome.AMOUNT_MISMATCH,
                f"Notified amount {gross_amount} does not match payment amount {payment.amount}",
                payment,
                booking,
            )

        reported = notification.get("transaction_status")
        target = map_transaction_status(reported, notification.get("fraud_status"))
        if target is None or target == PaymentStatus.PENDING:
            return self._snapshot(
                WebhookOutcome.NO_CHANGE,
                f"Gateway status '{reported}' requires no change",
                payment,
                booking,
            )

        if superseded is not None:
            rejection = self._check_superseded(superseded, target, payment, booking)
            if rejection:
                return rejection

        if target == payment.status:
            return self._snapshot(
                WebhookOutcome.NO_CHANGE,
                f"Payment already {payment.status.value}",
                payment,
                booking,
            )

        previous = payment.status
        if not PaymentStateMachine.can_transition(previous, target):
            logger.warning(
                "Rejected payment transition %s -> %s for order %s",
                previous.value,
                target.value,
                order_id,
            )
            return self._snapshot(
                WebhookOutcome.TRANSITION_REJECTED,
                f"Illegal payment transition {previous.value} -> {target.value}",
                payment,
                booking,
            )

        values = {
            "transaction_id": notification.get("transaction_id") or payment.transaction_id,
            "payment_type": notification.get("payment_type") or payment.payment_type,
            "raw_payload": _serialize_payload(notification),
        }
        if target == PaymentStatus.SUCCESS:
            values["paid_at"] = now
        elif target == PaymentStatus.REFUNDED:
            values["refunded_at"] = now

        if not payments.transition(payment, target, **values):
            return self._snapshot(
                WebhookOutcome.TRANSITION_REJECTED,
                "Payment changed concurrently",
                payment,
                booking,
            )

        logger.info(
            "Payment %s moved %s -> %s",
            order_id,
            previous.value,
            target.value,
        )
        result = ProcessingResult(
            outcome=WebhookOutcome.APPLIED,
            message=f"Payment {previous.value} -> {target.value}",
            order_id=order_id,
        )

        if target == PaymentStatus.SUCCESS:
            self._confirm_booking(db, booking, result, now)
        elif target == PaymentStatus.REFUNDED:
            self._refund_booking(db, booking, now)

        result.payment_status = payment.status.value
        result.booking_status = booking.status.value
        return result

    def _check_superseded(
        self,
        attempt: PaymentAttempt,
        target: PaymentStatus,
        payment: Payment,
        booking: Booking | None,
    ) -> ProcessingResult | None:
        """
        A notification for an archived order only counts when it is the
        money arriving; anything else it says is about an order that no
        longer drives the payment.
        """
        attempt.status = target.value

        if target != PaymentStatus.SUCCESS:
            return self._snapshot(
                WebhookOutcome.NO_CHANGE,
                f"Order {attempt.order_id} was superseded by {payment.order_id}",
                payment,
                booking,
            )

        if payment.status != PaymentStatus.PENDING:
            logger.warning(
                "Superseded order %s settled while payment %s is %s; manual refund required",
                attempt.order_id,
                payment.order_id,
                payment.status.value,
            )
            return self._snapshot(
                WebhookOutcome.TRANSITION_REJECTED,
                f"Superseded order {attempt.order_id} settled while payment is "
                f"{payment.status.value}; manual refund required",
                payment,
                booking,
            )

        logger.warning(
            "Payment %s settled through superseded order %s",
            payment.order_id,
            attempt.order_id,
        )
        return None

    def _confirm_booking(
        self,
        db: Session,
        booking: Booking,
        result: ProcessingResult,
        now: datetime,
    ) -> None:
        if booking.status != BookingStatus.PENDING or not BookingRepository(db).transition(
            booking,
            BookingStatus.CONFIRMED,
            confirmed_at=now,
        ):
            logger.warning(
                "Payment for booking %s succeeded while booking is %s; manual refund required",
                booking.booking_code,
                booking.status.value,
            )
            result.message += f"; booking is {booking.status.value}, manual refund required"
            return

        tickets = TicketService(
            db,
            self.settings,
            code_generator=self.ticket_code_generator,
        ).issue_for_booking(booking)
        result.tickets_issued = len(tickets)

        OutboxRepository(db).add_event(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_CONFIRMED",
            payload={
                "booking_code": booking.booking_code,
                "account_id": booking.account_id,
                "tickets": [ticket.ticket_code for ticket in tickets],
            },
            dedupe_key=f"booking:{booking.id}:confirmed",
        )
        logger.info(
            "Confirmed booking %s with %s ticket(s)",
            booking.booking_code,
            len(tickets),
        )

    def _refund_booking(self, db: Session, booking: Booking, now: datetime) -> None:
        previous = booking.status
        if previous not in (
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
            BookingStatus.COMPLETED,
        ):
            logger.warning(
                "Refund reported for booking %s in status %s; booking left unchanged",
                booking.booking_code,
                previous.value,
            )
            return

        values = {}
        if previous == BookingStatus.CONFIRMED:
            values = {"cancelled_at": now, "cancellation_reason": "Refunded by payment provider"}
        if not BookingRepository(db).transition(booking, BookingStatus.REFUNDED, **values):
            return

        # Seats were already released when a CANCELLED booking was cancelled.
        if previous == BookingStatus.CONFIRMED:
            InventoryLedger(db).release(booking.departure_id, booking.passenger_count)
        TicketRepository(db).cancel_valid_for_booking(booking.id)

        OutboxRepository(db).add_event(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_REFUNDED",
            payload={
                "booking_code": booking.booking_code,
                "account_id": booking.account_id,
                "previous_status": previous.value,
            },
            dedupe_key=f"booking:{booking.id}:refunded",
        )
        logger.info("Refunded booking %s (was %s)", booking.booking_code, previous.value)

    # -----------------------------
    # Audit
    # -----------------------------
    def _snapshot(
        self,
        outcome: WebhookOutcome,
        message: str,
        payment: Payment,
        booking: Booking | None,
    ) -> ProcessingResult:
        return ProcessingResult(
            outcome=outcome,
            message=message,
            order_id=payment.order_id,
            payment_status=payment.status.value,
            booking_status=booking.status.value if booking else None,
        )

    def _audit(
        self,
        db: Session,
        notification: object,
        source: str,
        replay_key: str | None,
        signature_valid: bool,
        result: ProcessingResult,
        started: float,
    ) -> WebhookAudit:
        fields = notification if isinstance(notification, dict) else {}
        serialized = _serialize_payload(notification)
        return WebhookAuditRepository(db).record(
            WebhookAudit(
                source=source,
                transaction_id=_as_text(fields.get("transaction_id")),
                order_id=_as_text(fields.get("order_id")),
                transaction_status=_as_text(fields.get("transaction_status")),
                replay_key=replay_key,
                signature_valid=signature_valid,
                outcome=result.outcome.value,
                message=result.message,
                payment_status=result.payment_status,
                booking_status=result.booking_status,
                tickets_issued=result.tickets_issued,
                payload_hash=_hash_webhook_payload(serialized),
                payload=serialized,
                processing_ms=int((time.monotonic() - started) * 1000),
            )
        )

    def _record_rejection(
        self,
        notification: object,
        outcome: WebhookOutcome,
        message: str,
        started: float,
        source: str = "WEBHOOK",
        signature_valid: bool = False,
    ) -> ProcessingResult:
        fields = notification if isinstance(notification, dict) else {}
        result = ProcessingResult(
            outcome=outcome,
            message=message,
            order_id=_as_text(fields.get("order_id")),
        )
        replay_key = build_replay_key(fields) if signature_valid else None
        with session_scope(self.session_factory) as db:
            audit = self._audit(
                db,
                notification,
                source=source,
                replay_key=replay_key,
                signature_valid=signature_valid,
                result=result,
                started=started,
            )
            result.audit_id = audit.id
        return result

    def _result_from_audit(self, audit: WebhookAudit) -> ProcessingResult:
        return ProcessingResult(
            outcome=WebhookOutcome(audit.outcome),
            message=audit.message or "",
            order_id=audit.order_id,
            payment_status=audit.payment_status,
            booking_status=audit.booking_status,
            tickets_issued=audit.tickets_issued,
            audit_id=audit.id,
            replayed=True,
        )


def _as_text(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _is_unknown_transaction(exc: GatewayError) -> bool:
    # The status API answers 404 either as HTTP status or inside a 200 body.
    if exc.status_code == 404:
        return True
    return isinstance(exc.body, dict) and str(exc.body.get("status_code")) == "404"
