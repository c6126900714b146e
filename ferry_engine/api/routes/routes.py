import hmac
import json
import logging
from typing import Any, Iterator

from fastapi import APIRouter, Body, Depends, Header, HTTPException, status
from sqlalchemy.exc import OperationalError, TimeoutError as SQLAlchemyTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from ferry_engine.api.schemas.schemas import (
    BookingRequest,
    BookingResponse,
    CancelBookingRequest,
    CheckInResponse,
    DepartureCreate,
    DepartureResponse,
    OutboxEventResponse,
    PassengerResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    ProcessingResultResponse,
    RecoveryFailureResponse,
    RecoverySummaryResponse,
    SweepFailureResponse,
    SweepSummaryResponse,
    TicketRecoveryResponse,
    TicketResponse,
    TicketValidationResponse,
    WebhookAuditResponse,
)
from ferry_engine.application.booking_service import BookingService, PassengerInput
from ferry_engine.application.departure_service import DepartureService, DepartureStats
from ferry_engine.application.expiry_sweeper import ExpirySweeper
from ferry_engine.application.payment_gateway import PaymentGatewayAdapter
from ferry_engine.application.ticket_service import TicketService, TicketValidationResult
from ferry_engine.application.webhook_reconciler import (
    ProcessingResult,
    WebhookOutcome,
    WebhookReconciler,
)
from ferry_engine.config import EngineSettings, get_settings
from ferry_engine.domain.actors import Actor, ActorRole
from ferry_engine.domain.clock import as_utc, utc_now
from ferry_engine.domain.exceptions import (
    AuthError,
    ConflictError,
    FerryEngineError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from ferry_engine.infrastructure.db.models import Booking, OutboxEvent, Ticket
from ferry_engine.infrastructure.db.session import SessionLocal
from ferry_engine.infrastructure.gateway.midtrans_client import MidtransClient
from ferry_engine.infrastructure.repositories.outbox_repository import OutboxRepository

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200


# -----------------------------
# Dependencies
# -----------------------------
def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(session_factory: sessionmaker = Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_gateway(settings: EngineSettings = Depends(get_settings)) -> Iterator[MidtransClient]:
    client = MidtransClient.from_settings(settings)
    try:
        yield client
    finally:
        client.close()


def get_actor(
    x_account_id: str | None = Header(default=None),
    x_actor_role: str = Header(default=ActorRole.USER.value),
) -> Actor:
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing account identity",
        )
    try:
        role = ActorRole(x_actor_role.strip().upper())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown actor role",
        ) from exc
    return Actor(account_id=x_account_id.strip(), role=role)


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )


def _require_gate_operator(actor: Actor) -> None:
    if not actor.can_operate_gate:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required",
        )


# -----------------------------
# Error translation
# -----------------------------
def _is_db_degraded(exc: Exception) -> bool:
    return isinstance(exc, (OperationalError, SQLAlchemyTimeoutError))


_STATUS_BY_ERROR: list[tuple[type[FerryEngineError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (AuthError, status.HTTP_403_FORBIDDEN),
]


def _http_error(exc: Exception) -> HTTPException:
    if _is_db_degraded(exc):
        logger.warning("Database degraded: %s", exc)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database is currently unavailable, please retry shortly.",
        )

    if isinstance(exc, GatewayError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider is unavailable, please retry. Your seats remain held.",
        )

    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))

    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Unexpected error",
    )


# -----------------------------
# Response builders
# -----------------------------
def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        booking_code=booking.booking_code,
        status=booking.status.value,
        departure_id=booking.departure_id,
        passenger_count=booking.passenger_count,
        total_amount=booking.total_amount,
        expires_at=as_utc(booking.expires_at),
        confirmed_at=as_utc(booking.confirmed_at),
        cancelled_at=as_utc(booking.cancelled_at),
        cancellation_reason=booking.cancellation_reason,
        passengers=[
            PassengerResponse(
                name=passenger.name,
                category=passenger.category.value,
                seat_label=passenger.seat_label,
            )
            for passenger in booking.passengers
        ],
    )


def _departure_response(stats: DepartureStats) -> DepartureResponse:
    return DepartureResponse(
        id=stats.departure_id,
        origin=stats.origin,
        destination=stats.destination,
        vessel_name=stats.vessel_name,
        departure_time=stats.departure_time,
        status=stats.status,
        price=stats.price,
        total_seats=stats.total_seats,
        available_seats=stats.available_seats,
        booked_seats=stats.booked_seats,
    )


def _processing_response(result: ProcessingResult) -> ProcessingResultResponse:
    return ProcessingResultResponse(
        outcome=result.outcome.value,
        accepted=result.accepted,
        message=result.message,
        order_id=result.order_id,
        payment_status=result.payment_status,
        booking_status=result.booking_status,
        tickets_issued=result.tickets_issued,
        audit_id=result.audit_id,
        replayed=result.replayed,
    )


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        ticket_code=ticket.ticket_code,
        status=ticket.status.value,
        passenger_name=ticket.passenger.name,
        seat_label=ticket.passenger.seat_label,
        qr_payload=ticket.qr_payload,
    )


def _validation_response(result: TicketValidationResult) -> TicketValidationResponse:
    return TicketValidationResponse(
        valid=result.valid,
        reason=result.reason,
        ticket_code=result.ticket_code,
        status=result.status,
        booking_code=result.booking_code,
        passenger_name=result.passenger_name,
        seat_label=result.seat_label,
        departure_time=result.departure_time,
        checked_in_at=result.checked_in_at,
        checked_in_by=result.checked_in_by,
        hours_until_open=result.hours_until_open,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        payload=json.loads(item.payload),
        dedupe_key=item.dedupe_key,
        status=item.status,
        attempts=item.attempts,
        created_at=as_utc(item.created_at),
        published_at=as_utc(item.published_at),
    )


# -----------------------------
# Routes
# -----------------------------
@router.get("/health")
def health():
    return {"message": "Ferry Booking Engine is running"}


@router.post("/departures", response_model=DepartureResponse, status_code=status.HTTP_201_CREATED)
def create_departure(
    request: DepartureCreate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    service = DepartureService(db)
    try:
        departure = service.create_departure(
            actor=actor,
            origin=request.origin,
            destination=request.destination,
            vessel_name=request.vessel_name,
            departure_time=request.departure_time,
            price=request.price,
            total_seats=request.total_seats,
        )
        return _departure_response(service.get_stats(departure.id))
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc


@router.get("/departures/{departure_id}", response_model=DepartureResponse)
def get_departure(departure_id: str, db: Session = Depends(get_db)):
    try:
        return _departure_response(DepartureService(db).get_stats(departure_id))
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingRequest,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    service = BookingService(db, settings)
    try:
        booking = service.create_booking(
            departure_id=request.departure_id,
            actor=actor,
            passengers=[
                PassengerInput(
                    name=passenger.name,
                    identity_type=passenger.identity_type,
                    identity_number=passenger.identity_number,
                    category=passenger.category,
                    phone=passenger.phone,
                )
                for passenger in request.passengers
            ],
            idempotency_key=request.idempotency_key,
        )
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    try:
        booking = BookingService(db, settings).get_booking(booking_id, actor)
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest | None = None,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    gateway: MidtransClient = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    service = BookingService(db, settings, gateway=gateway)
    try:
        booking = service.cancel_booking(
            booking_id=booking_id,
            actor=actor,
            reason=request.reason if request else None,
        )
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    booking_id: str,
    request: PaymentIntentRequest | None = None,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    gateway: MidtransClient = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    adapter = PaymentGatewayAdapter(db, settings, gateway)
    try:
        intent = adapter.create_intent(
            booking_id=booking_id,
            actor=actor,
            force=request.force if request else False,
        )
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc

    return PaymentIntentResponse(
        booking_id=booking_id,
        order_id=intent.order_id,
        gateway_token=intent.gateway_token,
        redirect_url=intent.redirect_url,
        amount=intent.amount,
        expires_at=intent.expires_at,
        attempt=intent.attempt,
        reused=intent.reused,
    )


@router.post("/payments/notification", response_model=ProcessingResultResponse)
def payment_notification(
    notification: Any = Body(default=None),
    settings: EngineSettings = Depends(get_settings),
    gateway: MidtransClient = Depends(get_gateway),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    reconciler = WebhookReconciler(session_factory, settings, gateway)
    try:
        result = reconciler.ingest(notification)
    except (OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc

    # Every recorded outcome is answered 200; ERROR audits are repaired by resync.
    if result.outcome == WebhookOutcome.ERROR:
        logger.error("Notification for order %s recorded as ERROR", result.order_id)
    return _processing_response(result)


@router.post(
    "/admin/payments/resync/{booking_code}",
    response_model=ProcessingResultResponse,
)
def resync_payment(
    booking_code: str,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    gateway: MidtransClient = Depends(get_gateway),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    reconciler = WebhookReconciler(session_factory, settings, gateway)
    try:
        result = reconciler.resync(booking_code, actor)
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc
    return _processing_response(result)


@router.get("/admin/webhook-audits", response_model=list[WebhookAuditResponse])
def list_webhook_audits(
    outcome: str | None = None,
    order_id: str | None = None,
    limit: int = 50,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    gateway: MidtransClient = Depends(get_gateway),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    reconciler = WebhookReconciler(session_factory, settings, gateway)
    try:
        audits = reconciler.list_audits(actor, outcome=outcome, order_id=order_id, limit=limit)
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc

    return [
        WebhookAuditResponse(
            id=audit.id,
            source=audit.source,
            transaction_id=audit.transaction_id,
            order_id=audit.order_id,
            transaction_status=audit.transaction_status,
            signature_valid=audit.signature_valid,
            outcome=audit.outcome,
            message=audit.message,
            payment_status=audit.payment_status,
            booking_status=audit.booking_status,
            tickets_issued=audit.tickets_issued,
            processing_ms=audit.processing_ms,
            replay_count=audit.replay_count,
            last_replayed_at=as_utc(audit.last_replayed_at),
            created_at=as_utc(audit.created_at),
        )
        for audit in audits
    ]


@router.post(
    "/admin/bookings/{booking_id}/tickets/recover",
    response_model=TicketRecoveryResponse,
)
def recover_tickets(
    booking_id: str,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    try:
        recovery = TicketService(db, settings).recover(booking_id, actor)
        return TicketRecoveryResponse(
            booking_code=recovery.booking_code,
            issued=len(recovery.issued),
            tickets=[_ticket_response(ticket) for ticket in recovery.tickets],
        )
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc


@router.get("/tickets/{code}/validate", response_model=TicketValidationResponse)
def validate_ticket(
    code: str,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    _require_gate_operator(actor)
    try:
        result = TicketService(db, settings).validate(code)
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc
    return _validation_response(result)


@router.post("/tickets/{code}/check-in", response_model=CheckInResponse)
def check_in_ticket(
    code: str,
    actor: Actor = Depends(get_actor),
    settings: EngineSettings = Depends(get_settings),
    db: Session = Depends(get_db),
):
    _require_gate_operator(actor)
    try:
        result = TicketService(db, settings).check_in(code, operator_id=actor.account_id)
    except (FerryEngineError, OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc

    return CheckInResponse(
        success=result.success,
        reason=result.reason,
        checked_in_at=result.checked_in_at,
        ticket=_validation_response(result.validation),
    )


def _require_cron_secret(provided: str | None, settings: EngineSettings) -> None:
    if not settings.cron_secret or not hmac.compare_digest(
        provided or "",
        settings.cron_secret,
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
        )


@router.post("/cron/expire-bookings", response_model=SweepSummaryResponse)
def expire_bookings(
    x_cron_secret: str | None = Header(default=None),
    settings: EngineSettings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    _require_cron_secret(x_cron_secret, settings)
    try:
        summary = ExpirySweeper(session_factory, settings).run()
    except (OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc

    return SweepSummaryResponse(
        started_at=summary.started_at,
        processed=summary.processed,
        expired=summary.expired,
        seats_released=summary.seats_released,
        payments_expired=summary.payments_expired,
        skipped=summary.skipped,
        failures=[
            SweepFailureResponse(booking_id=failure.booking_id, error=failure.error)
            for failure in summary.failures
        ],
    )


@router.post("/cron/recover-payments", response_model=RecoverySummaryResponse)
def recover_payments(
    x_cron_secret: str | None = Header(default=None),
    settings: EngineSettings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: MidtransClient = Depends(get_gateway),
):
    _require_cron_secret(x_cron_secret, settings)

    try:
        summary = WebhookReconciler(session_factory, settings, gateway).recover_stuck_payments()
    except (OperationalError, SQLAlchemyTimeoutError) as exc:
        raise _http_error(exc) from exc

    return RecoverySummaryResponse(
        started_at=summary.started_at,
        checked=summary.checked,
        recovered=summary.recovered,
        unchanged=summary.unchanged,
        skipped=summary.skipped,
        failures=[
            RecoveryFailureResponse(order_id=failure.order_id, error=failure.error)
            for failure in summary.failures
        ],
    )


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    _require_admin(actor)
    safe_limit = max(1, min(limit, MAX_PAGE_SIZE))
    events = OutboxRepository(db).list_by_status(status_filter, safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    _require_admin(actor)
    repository = OutboxRepository(db)
    item = repository.get_by_id(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    repository.mark_published(item, utc_now())
    return _outbox_response(item)
