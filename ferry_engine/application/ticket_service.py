import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from ferry_engine.config import EngineSettings
from ferry_engine.domain.actors import Actor
from ferry_engine.domain.clock import as_utc, utc_now
from ferry_engine.domain.codes import (
    TicketQRData,
    decode_qr_payload,
    encode_qr_payload,
    generate_ticket_code,
    is_qr_payload,
    seat_label,
)
from ferry_engine.domain.exceptions import (
    AuthError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ferry_engine.domain.state_machine import (
    BookingStatus,
    DepartureStatus,
    TicketStatus,
)
from ferry_engine.infrastructure.db.models import Booking, Ticket
from ferry_engine.infrastructure.repositories.booking_repository import BookingRepository
from ferry_engine.infrastructure.repositories.ticket_repository import TicketRepository

logger = logging.getLogger(__name__)


@dataclass
class TicketValidationResult:
    """Gate-facing outcome. reason is always safe to show an operator."""

    valid: bool
    reason: str
    ticket_code: str | None = None
    status: str | None = None
    booking_code: str | None = None
    passenger_name: str | None = None
    seat_label: str | None = None
    departure_time: datetime | None = None
    checked_in_at: datetime | None = None
    checked_in_by: str | None = None
    hours_until_open: int | None = None


@dataclass
class CheckInResult:
    success: bool
    reason: str
    validation: TicketValidationResult
    checked_in_at: datetime | None = None


@dataclass
class TicketRecovery:
    booking_code: str
    issued: list[Ticket] = field(default_factory=list)
    tickets: list[Ticket] = field(default_factory=list)


class TicketService:
    """
    Ticket issuance and gate redemption.

    Issuance is idempotent per passenger; redemption is a conditional
    VALID -> USED write, so concurrent scans of one ticket yield exactly
    one successful check-in.
    """

    def __init__(
        self,
        db: Session,
        settings: EngineSettings,
        code_generator: Callable[[], str] = generate_ticket_code,
    ):
        self.db = db
        self.settings = settings
        self.code_generator = code_generator
        self.ticket_repository = TicketRepository(db)
        self.booking_repository = BookingRepository(db)

    # -----------------------------
    # Issuance
    # -----------------------------
    def issue_for_booking(self, booking: Booking) -> list[Ticket]:
        """Returns only the tickets created by this call."""
        if booking.status != BookingStatus.CONFIRMED:
            raise ConflictError(
                f"Tickets can only be issued for confirmed bookings (status: {booking.status.value})"
            )

        existing = {
            ticket.passenger_id for ticket in self.ticket_repository.list_for_booking(booking.id)
        }
        departure = booking.departure
        issued: list[Ticket] = []

        for passenger in booking.passengers:
            if passenger.id in existing:
                continue

            ticket_code = self._unique_ticket_code()
            if not passenger.seat_label:
                passenger.seat_label = seat_label(passenger.position)

            qr_payload = encode_qr_payload(
                TicketQRData(
                    ticket_code=ticket_code,
                    booking_code=booking.booking_code,
                    passenger_name=passenger.name,
                    departure_id=departure.id,
                    departure_time=as_utc(departure.departure_time),
                ),
                self.settings.ticket_signing_secret,
            )

            issued.append(
                self.ticket_repository.add(
                    Ticket(
                        booking_id=booking.id,
                        passenger_id=passenger.id,
                        ticket_code=ticket_code,
                        qr_payload=qr_payload,
                        status=TicketStatus.VALID,
                    )
                )
            )

        if issued:
            logger.info(
                "Issued %s ticket(s) for booking %s",
                len(issued),
                booking.booking_code,
            )
        return issued

    def recover(self, booking_id: str, actor: Actor) -> TicketRecovery:
        if not actor.is_admin:
            raise AuthError("Only administrators can recover tickets")

        booking = self.booking_repository.get_by_id(booking_id, for_update=True)
        if not booking:
            raise NotFoundError("Booking not found")

        issued = self.issue_for_booking(booking)
        if issued:
            logger.warning(
                "Recovered %s missing ticket(s) for booking %s",
                len(issued),
                booking.booking_code,
            )
        return TicketRecovery(
            booking_code=booking.booking_code,
            issued=issued,
            tickets=self.ticket_repository.list_for_booking(booking.id),
        )

    def _unique_ticket_code(self) -> str:
        attempts = self.settings.ticket_code_attempts
        for _ in range(attempts):
            candidate = self.code_generator()
            if not self.ticket_repository.code_exists(candidate):
                return candidate

        logger.error("Ticket code generation exhausted %s attempts", attempts)
        raise ConflictError("Could not generate a unique ticket code, please retry")

    # -----------------------------
    # Redemption
    # -----------------------------
    def resolve_code(self, raw: str) -> str | None:
        """
        Accepts a ticket code or a scanned QR payload.
        Returns None when a QR payload is unreadable or its signature fails.
        """
        value = (raw or "").strip()
        if not value:
            raise ValidationError("Ticket code is required")

        if not is_qr_payload(value):
            return value.upper()

        data = decode_qr_payload(value, self.settings.ticket_signing_secret)
        if data is None:
            logger.warning("Rejected unreadable or tampered QR payload")
            return None
        return data.ticket_code

    def validate(self, raw: str, now: datetime | None = None) -> TicketValidationResult:
        current = now or utc_now()
        ticket_code = self.resolve_code(raw)
        if ticket_code is None:
            return TicketValidationResult(valid=False, reason="QR code is unreadable or invalid")

        ticket = self.ticket_repository.get_by_code(ticket_code)
        if not ticket:
            return TicketValidationResult(
                valid=False,
                reason="Ticket not found",
                ticket_code=ticket_code,
            )

        result = self._describe(ticket)

        if ticket.status == TicketStatus.USED:
            checked_in_at = as_utc(ticket.checked_in_at)
            result.reason = (
                f"Ticket already used at {checked_in_at:%Y-%m-%d %H:%M} UTC"
                if checked_in_at
                else "Ticket already used"
            )
            return result

        if ticket.status == TicketStatus.CANCELLED:
            result.reason = "Ticket has been cancelled"
            return result

        booking = ticket.booking
        if booking.status != BookingStatus.CONFIRMED:
            result.reason = f"Booking is not confirmed (status: {booking.status.value})"
            return result

        departure = booking.departure
        if departure.status == DepartureStatus.CANCELLED:
            result.reason = "Departure has been cancelled"
            return result

        departure_time = as_utc(departure.departure_time)
        opens_at = departure_time - timedelta(hours=self.settings.checkin_opens_hours_before)
        closes_at = departure_time + timedelta(hours=self.settings.checkin_closes_hours_after)

        if current < opens_at:
            hours = math.ceil((opens_at - current).total_seconds() / 3600)
            result.hours_until_open = hours
            result.reason = f"Check-in opens in {hours} hour(s)"
            return result

        if current > closes_at:
            result.reason = "Check-in window has closed"
            return result

        result.valid = True
        result.reason = "Ticket is valid for check-in"
        return result

    def check_in(
        self,
        raw: str,
        operator_id: str,
        now: datetime | None = None,
    ) -> CheckInResult:
        if not operator_id or not operator_id.strip():
            raise ValidationError("Operator identity is required for check-in")

        current = now or utc_now()
        validation = self.validate(raw, now=current)
        if not validation.valid:
            return CheckInResult(success=False, reason=validation.reason, validation=validation)

        ticket = self.ticket_repository.get_by_code(validation.ticket_code)
        if not self.ticket_repository.mark_used(ticket, operator_id, current):
            # Another gate won the conditional update between our read and write.
            self.db.refresh(ticket)
            validation = self._describe(ticket)
            validation.reason = (
                "Ticket already used"
                if ticket.status == TicketStatus.USED
                else "Ticket is no longer valid"
            )
            logger.warning("Concurrent check-in lost for ticket %s", ticket.ticket_code)
            return CheckInResult(success=False, reason=validation.reason, validation=validation)

        self.db.refresh(ticket)
        logger.info(
            "Checked in ticket %s by operator %s",
            ticket.ticket_code,
            operator_id,
        )
        validation = self._describe(ticket)
        validation.reason = "Check-in successful"
        return CheckInResult(
            success=True,
            reason=validation.reason,
            validation=validation,
            checked_in_at=as_utc(ticket.checked_in_at),
        )

    def _describe(self, ticket: Ticket) -> TicketValidationResult:
        booking = ticket.booking
        return TicketValidationResult(
            valid=False,
            reason="",
            ticket_code=ticket.ticket_code,
            status=ticket.status.value,
            booking_code=booking.booking_code,
            passenger_name=ticket.passenger.name,
            seat_label=ticket.passenger.seat_label,
            departure_time=as_utc(booking.departure.departure_time),
            checked_in_at=as_utc(ticket.checked_in_at),
            checked_in_by=ticket.checked_in_by,
        )
