# tests/integration/test_inventory_ledger.py

from datetime import timedelta

import pytest

from ferry_engine.domain.clock import utc_now
from ferry_engine.domain.exceptions import (
    ConflictError,
    DepartureNotBookableError,
    InsufficientSeatsError,
    NotFoundError,
    ValidationError,
)
from ferry_engine.domain.state_machine import DepartureStatus
from ferry_engine.infrastructure.db.models import Departure
from ferry_engine.infrastructure.repositories.inventory_ledger import InventoryLedger


def _available(session_factory, departure_id: str) -> int:
    with session_factory() as db:
        return db.get(Departure, departure_id).available_seats


def test_reserve_decrements_available_seats(session_factory, make_departure):
    departure_id = make_departure(total_seats=5)

    with session_factory() as db:
        InventoryLedger(db).reserve(departure_id, 2)
        db.commit()

    assert _available(session_factory, departure_id) == 3


def test_reserve_rejects_more_than_available(session_factory, make_departure):
    departure_id = make_departure(total_seats=5, available_seats=1)

    with session_factory() as db:
        with pytest.raises(InsufficientSeatsError) as excinfo:
            InventoryLedger(db).reserve(departure_id, 2)

    assert excinfo.value.available == 1
    assert _available(session_factory, departure_id) == 1


def test_reserve_rejects_cancelled_and_past_departures(session_factory, make_departure):
    cancelled_id = make_departure(status=DepartureStatus.CANCELLED)
    departed_id = make_departure(departure_time=utc_now() - timedelta(hours=1))

    with session_factory() as db:
        ledger = InventoryLedger(db)
        with pytest.raises(DepartureNotBookableError):
            ledger.reserve(cancelled_id, 1)
        with pytest.raises(DepartureNotBookableError):
            ledger.reserve(departed_id, 1)
        with pytest.raises(NotFoundError):
            ledger.reserve("missing", 1)


@pytest.mark.parametrize("seat_count", [0, -1, True, 1.5])
def test_reserve_rejects_invalid_seat_counts(session_factory, make_departure, seat_count):
    departure_id = make_departure()

    with session_factory() as db:
        with pytest.raises(ValidationError):
            InventoryLedger(db).reserve(departure_id, seat_count)


def test_stale_reader_cannot_oversell_last_seat(session_factory, make_departure):
    departure_id = make_departure(total_seats=5, available_seats=1)

    first = session_factory()
    second = session_factory()
    try:
        # Both requests see one seat left before either writes.
        assert first.get(Departure, departure_id).available_seats == 1
        assert second.get(Departure, departure_id).available_seats == 1

        InventoryLedger(first).reserve(departure_id, 1)
        first.commit()

        with pytest.raises(InsufficientSeatsError):
            InventoryLedger(second).reserve(departure_id, 1)
        second.rollback()
    finally:
        first.close()
        second.close()

    assert _available(session_factory, departure_id) == 0


def test_release_never_exceeds_total(session_factory, make_departure):
    departure_id = make_departure(total_seats=5, available_seats=4)

    with session_factory() as db:
        ledger = InventoryLedger(db)
        ledger.release(departure_id, 1)
        with pytest.raises(ConflictError):
            ledger.release(departure_id, 1)
        db.commit()

    assert _available(session_factory, departure_id) == 5
