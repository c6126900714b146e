# tests/conftest.py

import json
import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest

from ferry_engine.application.booking_service import BookingService, PassengerInput
from ferry_engine.application.payment_gateway import PaymentGatewayAdapter
from ferry_engine.application.webhook_reconciler import WebhookReconciler
from ferry_engine.config import EngineSettings
from ferry_engine.domain.actors import Actor
from ferry_engine.domain.clock import utc_now
from ferry_engine.domain.fares import IdentityType, PassengerCategory
from ferry_engine.domain.state_machine import DepartureStatus
from ferry_engine.infrastructure.db.models import Base, Departure
from ferry_engine.infrastructure.db.session import (
    build_engine,
    build_session_factory,
    session_scope,
)
from ferry_engine.infrastructure.gateway.midtrans_client import (
    MidtransClient,
    compute_signature,
)

SERVER_KEY = "SB-Mid-server-test-key"


class GatewayStub:
    """httpx.MockTransport handler standing in for the gateway's HTTP API."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.statuses: dict[str, dict] = {}
        self.error: Exception | None = None
        self.snap_status_code = 201
        self.cancel_status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error

        path = request.url.path
        if path.endswith("/snap/v1/transactions"):
            body = json.loads(request.content)
            order_id = body["transaction_details"]["order_id"]
            if self.snap_status_code >= 400:
                return httpx.Response(
                    self.snap_status_code,
                    json={"error_messages": ["transaction_details.order_id has already been taken"]},
                )
            return httpx.Response(
                self.snap_status_code,
                json={
                    "token": f"token-{order_id}",
                    "redirect_url": f"https://app.sandbox.midtrans.com/snap/v4/redirection/token-{order_id}",
                },
            )

        if path.endswith("/status"):
            order_id = path.split("/")[-2]
            if order_id not in self.statuses:
                return httpx.Response(
                    404,
                    json={"status_code": "404", "status_message": "Transaction doesn't exist."},
                )
            return httpx.Response(200, json=self.statuses[order_id])

        if path.endswith("/cancel"):
            order_id = path.split("/")[-2]
            if self.cancel_status_code >= 400:
                return httpx.Response(
                    self.cancel_status_code,
                    json={
                        "status_code": str(self.cancel_status_code),
                        "status_message": "Transaction status cannot be updated.",
                    },
                )
            return httpx.Response(
                200,
                json={"status_code": "200", "order_id": order_id, "transaction_status": "cancel"},
            )

        return httpx.Response(404, json={"status_message": "Unknown endpoint"})

    def snap_bodies(self) -> list[dict]:
        return [
            json.loads(request.content)
            for request in self.requests
            if request.url.path.endswith("/snap/v1/transactions")
        ]


def signed_notification(
    order_id: str,
    gross_amount: str,
    transaction_status: str = "settlement",
    status_code: str = "200",
    transaction_id: str = "txn-0001",
    fraud_status: str | None = "accept",
    server_key: str = SERVER_KEY,
    **extra,
) -> dict:
    notification = {
        "order_id": order_id,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "transaction_status": transaction_status,
        "transaction_id": transaction_id,
        "payment_type": "bank_transfer",
        "signature_key": compute_signature(order_id, status_code, gross_amount, server_key),
    }
    if fraud_status is not None:
        notification["fraud_status"] = fraud_status
    notification.update(extra)
    return notification


def make_passengers(count: int, categories: list[PassengerCategory] | None = None) -> list[PassengerInput]:
    categories = categories or [PassengerCategory.ADULT] * count
    return [
        PassengerInput(
            name=f"Passenger {index + 1}",
            identity_type=IdentityType.NATIONAL_ID,
            identity_number=f"51710{index:011d}",
            category=category,
            phone="+6281234567890" if index == 0 else None,
        )
        for index, category in enumerate(categories)
    ]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ferry.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def settings():
    return EngineSettings(
        midtrans_server_key=SERVER_KEY,
        ticket_signing_secret="test-ticket-secret",
        cron_secret="test-cron-secret",
    )


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    client = MidtransClient(
        server_key=SERVER_KEY,
        timeout_seconds=2.0,
        transport=httpx.MockTransport(gateway_stub),
    )
    yield client
    client.close()


@pytest.fixture
def reconciler(session_factory, settings, gateway):
    return WebhookReconciler(session_factory, settings, gateway)


@pytest.fixture
def make_departure(session_factory):
    def _make(
        total_seats: int = 5,
        available_seats: int | None = None,
        price: int = 150000,
        departure_time: datetime | None = None,
        status: DepartureStatus = DepartureStatus.SCHEDULED,
    ) -> str:
        with session_scope(session_factory) as db:
            departure = Departure(
                origin="Padang Bai",
                destination="Lembar",
                vessel_name="KMP Nusa Jaya",
                departure_time=departure_time or utc_now() + timedelta(days=2),
                price=price,
                total_seats=total_seats,
                available_seats=total_seats if available_seats is None else available_seats,
                status=status,
            )
            db.add(departure)
            db.flush()
            return departure.id

    return _make


@pytest.fixture
def create_booking(session_factory, settings):
    def _create(
        departure_id: str,
        passengers: int = 2,
        account_id: str = "user-1",
        now: datetime | None = None,
        categories: list[PassengerCategory] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        with session_scope(session_factory) as db:
            booking = BookingService(db, settings).create_booking(
                departure_id=departure_id,
                actor=Actor(account_id),
                passengers=make_passengers(passengers, categories),
                idempotency_key=idempotency_key,
                now=now,
            )
            return booking.id

    return _create


@pytest.fixture
def open_intent(session_factory, settings, gateway):
    def _open(booking_id: str, account_id: str = "user-1", force: bool = False, now=None):
        with session_scope(session_factory) as db:
            return PaymentGatewayAdapter(db, settings, gateway).create_intent(
                booking_id,
                Actor(account_id),
                force=force,
                now=now,
            )

    return _open


@pytest.fixture
def client(session_factory, settings, gateway):
    from fastapi.testclient import TestClient

    from ferry_engine.api.routes.routes import get_gateway, get_session_factory
    from ferry_engine.config import get_settings
    from ferry_engine.main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
