# tests/unit/test_codes.py

import re
from datetime import datetime, timezone

from ferry_engine.domain.codes import (
    TicketQRData,
    decode_qr_payload,
    encode_qr_payload,
    generate_booking_code,
    generate_order_id,
    generate_ticket_code,
    is_qr_payload,
    seat_label,
)

SECRET = "unit-test-secret"

QR_DATA = TicketQRData(
    ticket_code="TKT-LZ3K9Q2A-X7P2",
    booking_code="FRY-20261016-AB12CD",
    passenger_name="Made Wirawan",
    departure_id="3f0e1f0c-1b7a-4c1e-9f0a-2f4b0c6a9d11",
    departure_time=datetime(2026, 10, 18, 0, 30, tzinfo=timezone.utc),
)


# ---------------------
# CODE FORMATS
# ---------------------

def test_booking_code_format():
    code = generate_booking_code(datetime(2026, 10, 16, 9, 0, tzinfo=timezone.utc))
    assert re.fullmatch(r"FRY-20261016-[A-Z0-9]{6}", code)


def test_ticket_code_format():
    assert re.fullmatch(r"TKT-[0-9A-Z]+-[A-Z0-9]{4}", generate_ticket_code())


def test_first_order_id_is_booking_code():
    assert generate_order_id("FRY-20261016-AB12CD") == "FRY-20261016-AB12CD"


def test_forced_order_ids_are_distinct():
    first = generate_order_id("FRY-20261016-AB12CD", disambiguate=True)
    second = generate_order_id("FRY-20261016-AB12CD", disambiguate=True)

    assert first.startswith("FRY-20261016-AB12CD-")
    assert first != second


def test_seat_labels_roll_over_rows():
    assert seat_label(0) == "A1"
    assert seat_label(9) == "A10"
    assert seat_label(10) == "B1"
    assert seat_label(25) == "C6"


# ---------------------
# QR PAYLOAD
# ---------------------

def test_qr_payload_roundtrip():
    payload = encode_qr_payload(QR_DATA, SECRET)

    assert is_qr_payload(payload)
    assert decode_qr_payload(payload, SECRET) == QR_DATA


def test_qr_payload_rejects_wrong_secret():
    payload = encode_qr_payload(QR_DATA, SECRET)
    assert decode_qr_payload(payload, "another-secret") is None


def test_qr_payload_rejects_tampered_body():
    prefix, body, signature = encode_qr_payload(QR_DATA, SECRET).split(".")
    tampered_body = body[:-2] + ("AA" if body[-2:] != "AA" else "BB")

    assert decode_qr_payload(f"{prefix}.{tampered_body}.{signature}", SECRET) is None


def test_qr_payload_rejects_garbage():
    assert decode_qr_payload("FRY1.not-base64", SECRET) is None
    assert decode_qr_payload("TKT-LZ3K9Q2A-X7P2", SECRET) is None
    assert not is_qr_payload("TKT-LZ3K9Q2A-X7P2")
