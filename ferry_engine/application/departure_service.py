import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from ferry_engine.domain.actors import Actor
from ferry_engine.domain.clock import as_utc, utc_now
from ferry_engine.domain.exceptions import AuthError, ValidationError
from ferry_engine.domain.state_machine import DepartureStatus
from ferry_engine.infrastructure.db.models import Departure
from ferry_engine.infrastructure.repositories.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepartureStats:
    departure_id: str
    origin: str
    destination: str
    vessel_name: str
    departure_time: datetime
    status: str
    price: int
    total_seats: int
    available_seats: int

    @property
    def booked_seats(self) -> int:
        return self.total_seats - self.available_seats


class DepartureService:

    def __init__(self, db: Session):
        self.db = db
        self.ledger = InventoryLedger(db)

    def create_departure(
        self,
        actor: Actor,
        origin: str,
        destination: str,
        vessel_name: str,
        departure_time: datetime,
        price: int,
        total_seats: int,
        now: datetime | None = None,
    ) -> Departure:
        if not actor.is_admin:
            raise AuthError("Only administrators can schedule departures")
        if price < 0:
            raise ValidationError("Price must not be negative")
        if total_seats <= 0:
            raise ValidationError("Total seats must be positive")
        if origin.strip().lower() == destination.strip().lower():
            raise ValidationError("Origin and destination must differ")
        if as_utc(departure_time) <= (now or utc_now()):
            raise ValidationError("Departure time must be in the future")

        departure = Departure(
            origin=origin.strip(),
            destination=destination.strip(),
            vessel_name=vessel_name.strip(),
            departure_time=as_utc(departure_time),
            price=price,
            total_seats=total_seats,
            available_seats=total_seats,
            status=DepartureStatus.SCHEDULED,
        )
        self.db.add(departure)
        self.db.flush()

        logger.info(
            "Scheduled departure %s %s -> %s with %s seat(s)",
            departure.id,
            departure.origin,
            departure.destination,
            total_seats,
        )
        return departure

    def get_stats(self, departure_id: str) -> DepartureStats:
        departure = self.ledger.get_departure(departure_id)
        return DepartureStats(
            departure_id=departure.id,
            origin=departure.origin,
            destination=departure.destination,
            vessel_name=departure.vessel_name,
            departure_time=as_utc(departure.departure_time),
            status=departure.status.value,
            price=departure.price,
            total_seats=departure.total_seats,
            available_seats=departure.available_seats,
        )
