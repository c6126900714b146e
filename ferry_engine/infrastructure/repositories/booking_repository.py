# ferry_engine/infrastructure/repositories/booking_repository.py

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from ferry_engine.infrastructure.db.models import Booking
from ferry_engine.domain.state_machine import BookingStateMachine, BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_idempotency_key(
        self,
        idempotency_key: str,
    ) -> Booking | None:

        stmt = select(Booking).where(
            Booking.idempotency_key == idempotency_key
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_id(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update(of=Booking)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_code(self, booking_code: str) -> Booking | None:
        stmt = select(Booking).where(Booking.booking_code == booking_code)
        return self.db.execute(stmt).scalar_one_or_none()

    def code_exists(self, booking_code: str) -> bool:
        stmt = select(Booking.id).where(Booking.booking_code == booking_code)
        return self.db.execute(stmt).first() is not None

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        self.db.flush()
        return booking

    def transition(
        self,
        booking: Booking,
        to_status: BookingStatus,
        extra_conditions: tuple = (),
        **values: Any,
    ) -> bool:
        """
        Compare-and-swap on the status column. Returns False when another
        writer moved the booking first; the caller then skips every side
        effect tied to this transition.
        """
        from_status = booking.status
        BookingStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(Booking)
            .where(Booking.id == booking.id)
            .where(Booking.status == from_status)
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        for condition in extra_conditions:
            stmt = stmt.where(condition)
        result = self.db.execute(stmt)
        self.db.expire(booking)
        return result.rowcount == 1

    def list_expired_pending_ids(self, now: datetime, limit: int) -> list[str]:
        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.expires_at < now)
            .order_by(Booking.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
