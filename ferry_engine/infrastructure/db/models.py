# ferry_engine/infrastructure/db/models.py

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    DateTime,
    Enum,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from uuid import uuid4

from ferry_engine.infrastructure.db.session import Base
from ferry_engine.domain.fares import IdentityType, PassengerCategory
from ferry_engine.domain.state_machine import (
    BookingStatus,
    DepartureStatus,
    PaymentStatus,
    TicketStatus,
)


def _uuid() -> str:
    return str(uuid4())


class Departure(Base):
    """
    A scheduled voyage. available_seats is the contested counter and is
    only ever changed through the InventoryLedger's conditional updates.
    """

    __tablename__ = "departures"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    origin: Mapped[str] = mapped_column(String(128), nullable=False)
    destination: Mapped[str] = mapped_column(String(128), nullable=False)
    vessel_name: Mapped[str] = mapped_column(String(128), nullable=False)
    departure_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    total_seats: Mapped[int] = mapped_column(Integer, nullable=False)
    available_seats: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[DepartureStatus] = mapped_column(
        Enum(DepartureStatus, name="departure_status"),
        nullable=False,
        default=DepartureStatus.SCHEDULED,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_departure_price_nonnegative"),
        CheckConstraint("total_seats >= 0", name="ck_total_seats_nonnegative"),
        CheckConstraint("available_seats >= 0", name="ck_available_seats_nonnegative"),
        CheckConstraint("available_seats <= total_seats", name="ck_available_lte_total"),
        Index("ix_departures_status_time", "status", "departure_time"),
    )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_code: Mapped[str] = mapped_column(String(32), nullable=False)
    departure_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("departures.id"),
        nullable=False,
    )
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    passenger_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    departure: Mapped[Departure] = relationship()
    passengers: Mapped[list["Passenger"]] = relationship(
        back_populates="booking",
        order_by="Passenger.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("booking_code", name="uq_booking_code"),
        UniqueConstraint("idempotency_key", name="uq_booking_idempotency_key"),
        CheckConstraint("passenger_count > 0", name="ck_passenger_count_positive"),
        CheckConstraint("total_amount >= 0", name="ck_booking_amount_nonnegative"),
        Index("ix_bookings_status_expires_at", "status", "expires_at"),
        Index("ix_bookings_account_status", "account_id", "status"),
    )


class Passenger(Base):
    __tablename__ = "passengers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    identity_type: Mapped[IdentityType] = mapped_column(
        Enum(IdentityType, name="identity_type"),
        nullable=False,
    )
    identity_number: Mapped[str] = mapped_column(String(30), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category: Mapped[PassengerCategory] = mapped_column(
        Enum(PassengerCategory, name="passenger_category"),
        nullable=False,
        default=PassengerCategory.ADULT,
    )
    seat_label: Mapped[str | None] = mapped_column(String(8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    booking: Mapped[Booking] = relationship(back_populates="passengers")

    __table_args__ = (
        UniqueConstraint("booking_id", "position", name="uq_passenger_position"),
    )


class Payment(Base):
    """
    One payment attempt per booking. amount is copied from the booking
    at creation and never written again.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    gateway_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("booking_id", name="uq_payment_booking_id"),
        UniqueConstraint("order_id", name="uq_payment_order_id"),
        CheckConstraint("amount >= 0", name="ck_payment_amount_nonnegative"),
        Index("ix_payments_status", "status"),
    )


class PaymentAttempt(Base):
    """
    A gateway order a payment has moved past. Kept so its payload stays
    readable and a late notification for it can still be matched.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    payment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    gateway_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_payment_attempt_order_id"),
        Index("ix_payment_attempts_payment_id", "payment_id"),
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
    )
    passenger_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("passengers.id", ondelete="CASCADE"),
        nullable=False,
    )
    ticket_code: Mapped[str] = mapped_column(String(40), nullable=False)
    qr_payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus, name="ticket_status"),
        nullable=False,
        default=TicketStatus.VALID,
    )
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_in_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    passenger: Mapped[Passenger] = relationship()
    booking: Mapped[Booking] = relationship()

    __table_args__ = (
        UniqueConstraint("ticket_code", name="uq_ticket_code"),
        UniqueConstraint("passenger_id", name="uq_ticket_passenger_id"),
    )


class WebhookAudit(Base):
    """
    Append-only record of every inbound gateway notification and the
    outcome of processing it. Only replay metadata is updated later.
    """

    __tablename__ = "webhook_audits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="WEBHOOK")
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    replay_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    booking_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tickets_issued: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    processing_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    replay_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_replayed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_webhook_audits_replay_key", "replay_key"),
        Index("ix_webhook_audits_order_id", "order_id"),
        Index("ix_webhook_audits_outcome", "outcome"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
