from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from ferry_engine.domain.state_machine import DepartureStatus
from ferry_engine.infrastructure.db.models import Base, Departure
from ferry_engine.infrastructure.db.session import SessionLocal, engine


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    wita = timezone(timedelta(hours=8))
    now_local = datetime.now(wita)
    target = now_local + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0).astimezone(timezone.utc)


DEPARTURES = [
    {
        "origin": "Padang Bai",
        "destination": "Lembar",
        "vessel_name": "KMP Nusa Jaya",
        "departure_time": _dt(days_from_now=1, hour=8, minute=0),
        "price": 65000,
        "total_seats": 120,
    },
    {
        "origin": "Padang Bai",
        "destination": "Lembar",
        "vessel_name": "KMP Legundi",
        "departure_time": _dt(days_from_now=1, hour=14, minute=30),
        "price": 65000,
        "total_seats": 150,
    },
    {
        "origin": "Ketapang",
        "destination": "Gilimanuk",
        "vessel_name": "KMP Dharma Rucitra",
        "departure_time": _dt(days_from_now=2, hour=6, minute=0),
        "price": 11000,
        "total_seats": 200,
    },
    {
        "origin": "Sanur",
        "destination": "Nusa Penida",
        "vessel_name": "Bali Express",
        "departure_time": _dt(days_from_now=3, hour=9, minute=15),
        "price": 175000,
        "total_seats": 40,
    },
]


def seed_departures(db) -> int:
    created = 0
    for item in DEPARTURES:
        existing = db.execute(
            select(Departure)
            .where(Departure.vessel_name == item["vessel_name"])
            .where(Departure.departure_time == item["departure_time"])
        ).scalar_one_or_none()
        if existing:
            continue

        db.add(
            Departure(
                status=DepartureStatus.SCHEDULED,
                available_seats=item["total_seats"],
                **item,
            )
        )
        created += 1
    return created


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        created = seed_departures(db)
        db.commit()
        print(f"Seeded {created} departure(s).")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
