# ferry_engine/domain/codes.py

import base64
import hashlib
import hmac
import json
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime

from ferry_engine.domain.clock import as_utc, utc_now

_ALPHABET = string.ascii_uppercase + string.digits
_BASE36 = string.digits + string.ascii_uppercase

QR_PREFIX = "FRY1"
QR_VERSION = 1


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_booking_code(now: datetime | None = None) -> str:
    """FRY-YYYYMMDD-XXXXXX, random part drawn from a CSPRNG."""
    current = now or utc_now()
    return f"FRY-{current:%Y%m%d}-{_random_suffix(6)}"


def generate_ticket_code() -> str:
    millis = int(time.time() * 1000)
    return f"TKT-{_base36(millis)}-{_random_suffix(4)}"


def generate_order_id(booking_code: str, disambiguate: bool = False) -> str:
    """
    The first intent for a booking uses the booking code itself.
    Forced or retried intents append a time-based suffix so the
    gateway sees a fresh order.
    """
    if not disambiguate:
        return booking_code
    return f"{booking_code}-{_base36(time.time_ns() // 1000)}{_random_suffix(2)}"


def seat_label(index: int) -> str:
    """Row letter plus seat number, ten seats per row: A1..A10, B1.."""
    return f"{chr(65 + index // 10)}{index % 10 + 1}"


@dataclass(frozen=True)
class TicketQRData:
    ticket_code: str
    booking_code: str
    passenger_name: str
    departure_id: str
    departure_time: datetime


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def encode_qr_payload(data: TicketQRData, secret: str) -> str:
    document = {
        "v": QR_VERSION,
        "t": data.ticket_code,
        "b": data.booking_code,
        "p": data.passenger_name,
        "d": data.departure_id,
        "dt": as_utc(data.departure_time).isoformat(),
    }
    body = _b64encode(json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    return f"{QR_PREFIX}.{body}.{_sign(body, secret)}"


def is_qr_payload(value: str) -> bool:
    return value.startswith(f"{QR_PREFIX}.")


def decode_qr_payload(payload: str, secret: str) -> TicketQRData | None:
    """Returns None for anything that is not an intact, correctly signed payload."""
    parts = payload.split(".")
    if len(parts) != 3 or parts[0] != QR_PREFIX:
        return None

    _, body, signature = parts
    if not hmac.compare_digest(signature, _sign(body, secret)):
        return None

    try:
        document = json.loads(_b64decode(body))
        if document.get("v") != QR_VERSION:
            return None
        return TicketQRData(
            ticket_code=document["t"],
            booking_code=document["b"],
            passenger_name=document["p"],
            departure_id=document["d"],
            departure_time=datetime.fromisoformat(document["dt"]),
        )
    except (ValueError, KeyError, TypeError):
        return None
