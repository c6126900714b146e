from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable


class PassengerCategory(str, Enum):
    ADULT = "ADULT"
    ELDERLY = "ELDERLY"
    CHILD = "CHILD"
    INFANT = "INFANT"


class IdentityType(str, Enum):
    NATIONAL_ID = "NATIONAL_ID"
    PASSPORT = "PASSPORT"
    DRIVERS_LICENSE = "DRIVERS_LICENSE"


CATEGORY_PRICE_MULTIPLIERS = {
    PassengerCategory.ADULT: Decimal("1.0"),
    PassengerCategory.ELDERLY: Decimal("0.8"),
    PassengerCategory.CHILD: Decimal("0.5"),
    PassengerCategory.INFANT: Decimal("0"),
}

# Categories that can travel without another passenger on the booking.
RESPONSIBLE_CATEGORIES = frozenset({PassengerCategory.ADULT, PassengerCategory.ELDERLY})


def passenger_fare(price_per_seat: int, category: PassengerCategory) -> Decimal:
    return Decimal(price_per_seat) * CATEGORY_PRICE_MULTIPLIERS[category]


def booking_total(price_per_seat: int, categories: Iterable[PassengerCategory]) -> int:
    total = sum(
        (passenger_fare(price_per_seat, category) for category in categories),
        Decimal(0),
    )
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
