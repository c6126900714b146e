import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from ferry_engine.config import MAX_HOLD_MINUTES, EngineSettings
from ferry_engine.domain.actors import Actor
from ferry_engine.domain.clock import as_utc, utc_now
from ferry_engine.domain.codes import generate_order_id
from ferry_engine.domain.exceptions import AuthError, ConflictError, GatewayError, NotFoundError
from ferry_engine.domain.state_machine import (
    RETRYABLE_PAYMENT_STATUSES,
    BookingStatus,
    PaymentStatus,
)
from ferry_engine.infrastructure.db.models import Booking, Payment
from ferry_engine.infrastructure.gateway.midtrans_client import MidtransClient
from ferry_engine.infrastructure.repositories.booking_repository import BookingRepository
from ferry_engine.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    order_id: str
    gateway_token: str
    redirect_url: str
    amount: int
    expires_at: datetime
    attempt: int
    reused: bool


class PaymentGatewayAdapter:
    """
    Opens gateway transactions for PENDING bookings and keeps one
    payment row per booking. The intent never outlives the seat hold.

    A new attempt reuses the row under a new order id; the previous
    order is archived as a PaymentAttempt so its payload survives and
    a late notification for it still resolves to this payment.
    """

    def __init__(self, db: Session, settings: EngineSettings, gateway: MidtransClient):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.booking_repository = BookingRepository(db)
        self.payment_repository = PaymentRepository(db)

    def create_intent(
        self,
        booking_id: str,
        actor: Actor,
        force: bool = False,
        now: datetime | None = None,
    ) -> PaymentIntent:
        current = now or utc_now()
        booking = self.booking_repository.get_by_id(booking_id, for_update=True)
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.account_id != actor.account_id and not actor.is_admin:
            raise AuthError("You do not have access to this booking")

        if booking.status != BookingStatus.PENDING:
            raise ConflictError(
                f"Booking is not awaiting payment (status: {booking.status.value})"
            )

        remaining = (as_utc(booking.expires_at) - current).total_seconds()
        expiry_seconds = int(min(MAX_HOLD_MINUTES * 60, remaining))
        if expiry_seconds < 1:
            raise ConflictError("Booking expired, please rebook")

        payment = self.payment_repository.get_by_booking_id(booking.id, for_update=True)
        if payment:
            if payment.status == PaymentStatus.SUCCESS:
                raise ConflictError("Booking has already been paid")
            if payment.status == PaymentStatus.CHALLENGE:
                raise ConflictError("Payment is under review by the payment provider")
            if self._is_reusable(payment, force, current):
                logger.info("Reusing payment token for order %s", payment.order_id)
                return self._to_intent(payment, reused=True)

        if payment and payment.status not in RETRYABLE_PAYMENT_STATUSES | {PaymentStatus.PENDING}:
            raise ConflictError(
                f"Payment cannot be retried (status: {payment.status.value})"
            )

        order_id = generate_order_id(booking.booking_code, disambiguate=payment is not None)
        expires_at = current + timedelta(seconds=expiry_seconds)
        transaction = self.gateway.create_transaction(
            order_id=order_id,
            amount=booking.total_amount,
            expiry_seconds=expiry_seconds,
            customer=self._customer_details(booking),
            item_details=[self._item_details(booking)],
            start_time=current,
        )

        values = dict(
            order_id=order_id,
            amount=booking.total_amount,
            gateway_token=transaction.token,
            redirect_url=transaction.redirect_url,
            raw_payload=json.dumps(transaction.raw, sort_keys=True, default=str),
            requested_at=current,
            expired_at=expires_at,
        )

        if payment is None:
            payment = self.payment_repository.add(
                Payment(booking_id=booking.id, status=PaymentStatus.PENDING, attempt=1, **values)
            )
        else:
            self._replace_attempt(payment, booking, values, current)

        logger.info(
            "Created payment intent %s for booking %s (attempt %s, expires in %ss)",
            order_id,
            booking.booking_code,
            payment.attempt,
            expiry_seconds,
        )
        return self._to_intent(payment, reused=False)

    def _replace_attempt(
        self,
        payment: Payment,
        booking: Booking,
        values: dict,
        now: datetime,
    ) -> None:
        previous_status = payment.status
        previous_order_id = payment.order_id
        logger.info(
            "Superseding %s payment %s for booking %s",
            previous_status.value,
            previous_order_id,
            booking.booking_code,
        )

        # A PENDING order can still be paid with its old token.
        if previous_status == PaymentStatus.PENDING:
            self._void_order(previous_order_id)

        self.payment_repository.archive_attempt(payment, now)
        if not self.payment_repository.restart(payment, previous_status, **values):
            raise ConflictError("Payment changed while opening a new attempt, please retry")

    def _void_order(self, order_id: str) -> None:
        try:
            self.gateway.cancel_transaction(order_id)
        except GatewayError as exc:
            logger.warning("Gateway cancel failed for superseded order %s: %s", order_id, exc)

    def _is_reusable(self, payment: Payment, force: bool, now: datetime) -> bool:
        return (
            not force
            and payment.status == PaymentStatus.PENDING
            and bool(payment.gateway_token)
            and as_utc(payment.expired_at) > now
        )

    def _customer_details(self, booking: Booking) -> dict:
        lead = booking.passengers[0]
        details = {"first_name": lead.name[:50]}
        if lead.phone:
            details["phone"] = lead.phone
        return details

    def _item_details(self, booking: Booking) -> dict:
        departure = booking.departure
        return {
            "id": departure.id,
            "price": booking.total_amount,
            "quantity": 1,
            "name": f"Ferry {departure.origin} - {departure.destination}"[:50],
        }

    def _to_intent(self, payment: Payment, reused: bool) -> PaymentIntent:
        return PaymentIntent(
            order_id=payment.order_id,
            gateway_token=payment.gateway_token,
            redirect_url=payment.redirect_url,
            amount=payment.amount,
            expires_at=as_utc(payment.expired_at),
            attempt=payment.attempt,
            reused=reused,
        )
