import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ferry_engine.config import EngineSettings
from ferry_engine.domain.actors import Actor
from ferry_engine.domain.clock import as_utc, utc_now
from ferry_engine.domain.codes import generate_booking_code
from ferry_engine.domain.exceptions import (
    AuthError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from ferry_engine.domain.fares import (
    RESPONSIBLE_CATEGORIES,
    IdentityType,
    PassengerCategory,
    booking_total,
)
from ferry_engine.domain.state_machine import BookingStatus, PaymentStatus
from ferry_engine.infrastructure.db.models import Booking, Passenger
from ferry_engine.infrastructure.gateway.midtrans_client import MidtransClient
from ferry_engine.infrastructure.repositories.booking_repository import BookingRepository
from ferry_engine.infrastructure.repositories.inventory_ledger import InventoryLedger
from ferry_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from ferry_engine.infrastructure.repositories.payment_repository import PaymentRepository
from ferry_engine.infrastructure.repositories.ticket_repository import TicketRepository

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})


@dataclass(frozen=True)
class PassengerInput:
    name: str
    identity_type: IdentityType
    identity_number: str
    category: PassengerCategory = PassengerCategory.ADULT
    phone: str | None = None


class BookingService:
    """Application service coordinating the booking lifecycle."""

    def __init__(
        self,
        db: Session,
        settings: EngineSettings,
        gateway: MidtransClient | None = None,
    ):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.booking_repository = BookingRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.ticket_repository = TicketRepository(db)
        self.outbox_repository = OutboxRepository(db)
        self.ledger = InventoryLedger(db)

    def create_booking(
        self,
        departure_id: str,
        actor: Actor,
        passengers: list[PassengerInput],
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> Booking:
        current = now or utc_now()
        self._validate_passengers(passengers)

        if idempotency_key:
            existing = self.booking_repository.get_by_idempotency_key(idempotency_key)
            if existing:
                return self._replay_idempotent(existing, actor, departure_id, len(passengers))

        departure = self.ledger.get_departure(departure_id)
        self.ledger.reserve(departure_id, len(passengers), now=current)

        booking = Booking(
            booking_code=self._unique_booking_code(current),
            departure_id=departure_id,
            account_id=actor.account_id,
            passenger_count=len(passengers),
            total_amount=booking_total(
                departure.price,
                (passenger.category for passenger in passengers),
            ),
            status=BookingStatus.PENDING,
            idempotency_key=idempotency_key,
            expires_at=current + timedelta(minutes=self.settings.effective_hold_minutes),
            passengers=[
                Passenger(
                    position=position,
                    name=passenger.name.strip(),
                    identity_type=passenger.identity_type,
                    identity_number=passenger.identity_number.strip(),
                    phone=passenger.phone,
                    category=passenger.category,
                )
                for position, passenger in enumerate(passengers)
            ],
        )

        try:
            self.booking_repository.add(booking)
        except IntegrityError as exc:
            raise ConflictError("Duplicate booking request detected, please retry") from exc

        logger.info(
            "Created booking %s: %s passenger(s), amount=%s, hold until %s",
            booking.booking_code,
            booking.passenger_count,
            booking.total_amount,
            booking.expires_at.isoformat(),
        )
        return booking

    def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.account_id != actor.account_id and not actor.is_admin:
            raise AuthError("You do not have access to this booking")
        return booking

    def cancel_booking(
        self,
        booking_id: str,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Booking:
        current = now or utc_now()
        booking = self.booking_repository.get_by_id(booking_id, for_update=True)
        if not booking:
            raise NotFoundError("Booking not found")

        self._authorize_cancel(booking, actor, current)

        if not reason:
            reason = "Cancelled by administrator" if actor.is_admin else "Cancelled by customer"
        if not self.booking_repository.transition(
            booking,
            BookingStatus.CANCELLED,
            cancelled_at=current,
            cancellation_reason=reason,
        ):
            raise ConflictError("Booking changed while cancelling, please retry")

        self.ledger.release(booking.departure_id, booking.passenger_count)
        tickets_cancelled = self.ticket_repository.cancel_valid_for_booking(booking.id)
        refunded = self._settle_payment_on_cancel(booking, current)

        self.outbox_repository.add_event(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_REFUNDED" if refunded else "BOOKING_CANCELLED",
            payload={
                "booking_code": booking.booking_code,
                "account_id": booking.account_id,
                "reason": booking.cancellation_reason,
                "tickets_cancelled": tickets_cancelled,
            },
            dedupe_key=f"booking:{booking.id}:cancelled",
        )

        logger.info(
            "Cancelled booking %s by %s (%s ticket(s) voided, refunded=%s)",
            booking.booking_code,
            actor.role.value,
            tickets_cancelled,
            refunded,
        )
        return booking

    def _authorize_cancel(self, booking: Booking, actor: Actor, now: datetime) -> None:
        is_owner = booking.account_id == actor.account_id
        if not is_owner and not actor.is_admin:
            raise AuthError("You do not have access to this booking")

        if booking.status not in CANCELLABLE_STATUSES:
            raise ConflictError(
                f"Booking cannot be cancelled (status: {booking.status.value})"
            )

        if actor.is_admin or booking.status == BookingStatus.PENDING:
            return

        lead = timedelta(hours=self.settings.cancellation_lead_hours)
        if as_utc(booking.departure.departure_time) - now <= lead:
            raise AuthError(
                f"Confirmed bookings can only be cancelled more than "
                f"{self.settings.cancellation_lead_hours} hours before departure"
            )

    def _settle_payment_on_cancel(self, booking: Booking, now: datetime) -> bool:
        payment = self.payment_repository.get_by_booking_id(booking.id, for_update=True)
        if not payment:
            return False

        if payment.status == PaymentStatus.SUCCESS:
            # REFUNDED is recorded optimistically; the money movement itself
            # happens outside this engine.
            self.payment_repository.transition(payment, PaymentStatus.REFUNDED, refunded_at=now)
            self.booking_repository.transition(booking, BookingStatus.REFUNDED)
            logger.info("Marked payment %s for refund", payment.order_id)
            return True

        if payment.status == PaymentStatus.PENDING:
            order_id = payment.order_id
            self.payment_repository.transition(payment, PaymentStatus.CANCELLED)
            self._void_gateway_transaction(order_id)
        elif payment.status == PaymentStatus.CHALLENGE:
            logger.warning(
                "Booking %s cancelled while payment %s is under fraud review",
                booking.booking_code,
                payment.order_id,
            )
        return False

    def _void_gateway_transaction(self, order_id: str) -> None:
        if self.gateway is None:
            return
        try:
            self.gateway.cancel_transaction(order_id)
        except GatewayError as exc:
            logger.warning("Gateway cancel failed for order %s: %s", order_id, exc)

    def _replay_idempotent(
        self,
        existing: Booking,
        actor: Actor,
        departure_id: str,
        passenger_count: int,
    ) -> Booking:
        if existing.account_id != actor.account_id:
            raise ConflictError("Idempotency key already used by another account")
        if existing.departure_id != departure_id or existing.passenger_count != passenger_count:
            raise ConflictError("Idempotency key reused with a different booking request")
        logger.info("Returning booking %s for repeated idempotency key", existing.booking_code)
        return existing

    def _unique_booking_code(self, now: datetime) -> str:
        attempts = self.settings.booking_code_attempts
        for _ in range(attempts):
            candidate = generate_booking_code(now)
            if not self.booking_repository.code_exists(candidate):
                return candidate
        raise ConflictError("Could not generate a unique booking code, please retry")

    def _validate_passengers(self, passengers: list[PassengerInput]) -> None:
        limit = self.settings.max_passengers_per_booking
        if not passengers:
            raise ValidationError("At least one passenger is required")
        if len(passengers) > limit:
            raise ValidationError(f"A booking can hold at most {limit} passengers")

        for index, passenger in enumerate(passengers, start=1):
            if not passenger.name or not passenger.name.strip():
                raise ValidationError(f"Passenger {index}: name is required")
            if len(passenger.name.strip()) > 100:
                raise ValidationError(f"Passenger {index}: name is too long")
            if not passenger.identity_number or not passenger.identity_number.strip():
                raise ValidationError(f"Passenger {index}: identity number is required")
            if len(passenger.identity_number.strip()) > 30:
                raise ValidationError(f"Passenger {index}: identity number is too long")

        if not any(passenger.category in RESPONSIBLE_CATEGORIES for passenger in passengers):
            raise ValidationError("At least one adult or elderly passenger is required")
