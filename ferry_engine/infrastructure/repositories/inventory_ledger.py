# ferry_engine/infrastructure/repositories/inventory_ledger.py

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ferry_engine.domain.clock import as_utc, utc_now
from ferry_engine.domain.exceptions import (
    ConflictError,
    DepartureNotBookableError,
    InsufficientSeatsError,
    NotFoundError,
    ValidationError,
)
from ferry_engine.domain.state_machine import DepartureStatus
from ferry_engine.infrastructure.db.models import Departure

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    The only writer of Departure.available_seats.

    Both operations are a single conditional UPDATE; the WHERE clause
    carries every precondition so concurrent callers can never oversell
    or over-credit. Nothing here reads a count and writes it back.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_departure(self, departure_id: str) -> Departure:
        departure = self.db.get(Departure, departure_id)
        if not departure:
            raise NotFoundError("Departure not found")
        return departure

    def reserve(
        self,
        departure_id: str,
        seat_count: int,
        now: datetime | None = None,
    ) -> None:
        _ensure_seat_count(seat_count)
        current = now or utc_now()

        stmt = (
            update(Departure)
            .where(Departure.id == departure_id)
            .where(Departure.status == DepartureStatus.SCHEDULED)
            .where(Departure.departure_time > current)
            .where(Departure.available_seats >= seat_count)
            .values(available_seats=Departure.available_seats - seat_count)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 1:
            self._expire(departure_id)
            logger.info(
                "Reserved %s seat(s) on departure %s",
                seat_count,
                departure_id,
            )
            return

        self._raise_reserve_failure(departure_id, seat_count, current)

    def release(self, departure_id: str, seat_count: int) -> None:
        """
        Credits seats back. Callers guarantee this runs at most once per
        booking by releasing only after winning a booking status transition.
        """
        _ensure_seat_count(seat_count)

        stmt = (
            update(Departure)
            .where(Departure.id == departure_id)
            .where(Departure.available_seats + seat_count <= Departure.total_seats)
            .values(available_seats=Departure.available_seats + seat_count)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount != 1:
            exists = self.db.execute(
                select(Departure.id).where(Departure.id == departure_id)
            ).scalar_one_or_none()
            if not exists:
                raise NotFoundError("Departure not found")
            logger.error(
                "Refusing release of %s seat(s) on departure %s: would exceed total seats",
                seat_count,
                departure_id,
            )
            raise ConflictError("Seat release would exceed departure capacity")

        self._expire(departure_id)
        logger.info("Released %s seat(s) on departure %s", seat_count, departure_id)

    def _raise_reserve_failure(
        self,
        departure_id: str,
        seat_count: int,
        now: datetime,
    ) -> None:
        # Diagnosis only; the decision was already made by the UPDATE above.
        row = self.db.execute(
            select(
                Departure.status,
                Departure.departure_time,
                Departure.available_seats,
            ).where(Departure.id == departure_id)
        ).one_or_none()

        if row is None:
            raise NotFoundError("Departure not found")

        status, departure_time, available = row
        if status != DepartureStatus.SCHEDULED:
            raise DepartureNotBookableError(
                f"Departure is not available for booking (status: {status.value})"
            )
        if as_utc(departure_time) <= now:
            raise DepartureNotBookableError("Departure has already left")

        logger.warning(
            "Insufficient seats on departure %s: requested=%s available=%s",
            departure_id,
            seat_count,
            available,
        )
        raise InsufficientSeatsError(requested=seat_count, available=available)

    def _expire(self, departure_id: str) -> None:
        cached = self.db.identity_map.get(self.db.identity_key(Departure, departure_id), None)
        if cached is not None:
            self.db.expire(cached)


def _ensure_seat_count(seat_count: int) -> None:
    if isinstance(seat_count, bool) or not isinstance(seat_count, int) or seat_count <= 0:
        raise ValidationError("Seat count must be a positive integer")
