# ferry_engine/infrastructure/repositories/ticket_repository.py

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ferry_engine.domain.state_machine import TicketStateMachine, TicketStatus
from ferry_engine.infrastructure.db.models import Passenger, Ticket


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, ticket_code: str) -> Ticket | None:
        stmt = select(Ticket).where(Ticket.ticket_code == ticket_code)
        return self.db.execute(stmt).scalar_one_or_none()

    def code_exists(self, ticket_code: str) -> bool:
        stmt = select(Ticket.id).where(Ticket.ticket_code == ticket_code)
        return self.db.execute(stmt).first() is not None

    def list_for_booking(self, booking_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .join(Passenger, Passenger.id == Ticket.passenger_id)
            .where(Ticket.booking_id == booking_id)
            .order_by(Passenger.position)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(self, ticket: Ticket) -> Ticket:
        self.db.add(ticket)
        self.db.flush()
        return ticket

    def mark_used(self, ticket: Ticket, operator_id: str, now: datetime) -> bool:
        """VALID -> USED as one conditional write; only one scanner can win."""
        if not TicketStateMachine.can_transition(ticket.status, TicketStatus.USED):
            return False
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket.id)
            .where(Ticket.status == TicketStatus.VALID)
            .values(
                status=TicketStatus.USED,
                checked_in_at=now,
                checked_in_by=operator_id,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.expire(ticket)
        return result.rowcount == 1

    def cancel_valid_for_booking(self, booking_id: str) -> int:
        stmt = (
            update(Ticket)
            .where(Ticket.booking_id == booking_id)
            .where(Ticket.status == TicketStatus.VALID)
            .values(status=TicketStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        for ticket in list(self.db.identity_map.values()):
            if isinstance(ticket, Ticket) and ticket.booking_id == booking_id:
                self.db.expire(ticket)
        return result.rowcount
