import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from ferry_engine.config import EngineSettings
from ferry_engine.domain.clock import as_utc, utc_now
from ferry_engine.domain.state_machine import BookingStatus, PaymentStatus
from ferry_engine.infrastructure.db.models import Booking
from ferry_engine.infrastructure.db.session import session_scope
from ferry_engine.infrastructure.repositories.booking_repository import BookingRepository
from ferry_engine.infrastructure.repositories.inventory_ledger import InventoryLedger
from ferry_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from ferry_engine.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


@dataclass
class SweepFailure:
    booking_id: str
    error: str


@dataclass
class ExpiredBooking:
    booking_code: str
    seats_released: int
    payment_expired: bool


@dataclass
class SweepSummary:
    started_at: datetime
    processed: int = 0
    expired: list[str] = field(default_factory=list)
    seats_released: int = 0
    payments_expired: int = 0
    skipped: int = 0
    failures: list[SweepFailure] = field(default_factory=list)


class ExpirySweeper:
    """
    Reclaims seats held by PENDING bookings whose hold has passed.

    Every booking is handled in its own transaction and every write is
    conditioned on the booking still being PENDING with a past deadline,
    so overlapping runs and a concurrent reconciler cannot double-release.
    """

    def __init__(self, session_factory: sessionmaker, settings: EngineSettings):
        self.session_factory = session_factory
        self.settings = settings

    def run(self, now: datetime | None = None) -> SweepSummary:
        current = now or utc_now()
        summary = SweepSummary(started_at=current)

        with session_scope(self.session_factory) as db:
            candidates = BookingRepository(db).list_expired_pending_ids(
                current,
                self.settings.sweeper_batch_size,
            )

        for booking_id in candidates:
            summary.processed += 1
            try:
                expired = self._expire_one(booking_id, current)
            except Exception as exc:
                logger.exception("Failed to expire booking %s", booking_id)
                summary.failures.append(SweepFailure(booking_id=booking_id, error=str(exc)))
                continue

            if expired is None:
                summary.skipped += 1
                continue

            summary.expired.append(expired.booking_code)
            summary.seats_released += expired.seats_released
            if expired.payment_expired:
                summary.payments_expired += 1

        logger.info(
            "Expiry sweep finished: processed=%s expired=%s skipped=%s failed=%s",
            summary.processed,
            len(summary.expired),
            summary.skipped,
            len(summary.failures),
        )
        return summary

    def _expire_one(self, booking_id: str, now: datetime) -> ExpiredBooking | None:
        with session_scope(self.session_factory) as db:
            bookings = BookingRepository(db)
            payments = PaymentRepository(db)

            booking = bookings.get_by_id(booking_id, for_update=True)
            if (
                not booking
                or booking.status != BookingStatus.PENDING
                or as_utc(booking.expires_at) >= now
            ):
                return None

            payment = payments.get_by_booking_id(booking.id, for_update=True)
            if payment and payment.status == PaymentStatus.SUCCESS:
                # The reconciler owns this booking now; never overwrite a paid one.
                logger.warning(
                    "Skipping expiry of booking %s: payment %s already succeeded",
                    booking.booking_code,
                    payment.order_id,
                )
                return None

            if not bookings.transition(
                booking,
                BookingStatus.EXPIRED,
                extra_conditions=(Booking.expires_at < now,),
            ):
                return None

            InventoryLedger(db).release(booking.departure_id, booking.passenger_count)

            payment_expired = False
            if payment and payment.status == PaymentStatus.PENDING:
                payment_expired = payments.transition(payment, PaymentStatus.EXPIRED)

            OutboxRepository(db).add_event(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type="BOOKING_EXPIRED",
                payload={
                    "booking_code": booking.booking_code,
                    "account_id": booking.account_id,
                    "seats_released": booking.passenger_count,
                },
                dedupe_key=f"booking:{booking.id}:expired",
            )

            logger.info(
                "Expired booking %s, released %s seat(s)",
                booking.booking_code,
                booking.passenger_count,
            )
            return ExpiredBooking(
                booking_code=booking.booking_code,
                seats_released=booking.passenger_count,
                payment_expired=payment_expired,
            )
