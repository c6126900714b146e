from datetime import datetime

from pydantic import BaseModel, Field

from ferry_engine.domain.fares import IdentityType, PassengerCategory


class DepartureCreate(BaseModel):
    origin: str = Field(min_length=1, max_length=128)
    destination: str = Field(min_length=1, max_length=128)
    vessel_name: str = Field(min_length=1, max_length=128)
    departure_time: datetime
    price: int = Field(ge=0)
    total_seats: int = Field(gt=0)


class DepartureResponse(BaseModel):
    id: str
    origin: str
    destination: str
    vessel_name: str
    departure_time: datetime
    status: str
    price: int
    total_seats: int
    available_seats: int
    booked_seats: int


class PassengerRequest(BaseModel):
    name: str
    identity_type: IdentityType
    identity_number: str
    category: PassengerCategory = PassengerCategory.ADULT
    phone: str | None = Field(default=None, max_length=32)


class BookingRequest(BaseModel):
    departure_id: str
    passengers: list[PassengerRequest]
    idempotency_key: str | None = Field(default=None, max_length=128)


class PassengerResponse(BaseModel):
    name: str
    category: str
    seat_label: str | None = None


class BookingResponse(BaseModel):
    booking_id: str
    booking_code: str
    status: str
    departure_id: str
    passenger_count: int
    total_amount: int
    expires_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    passengers: list[PassengerResponse]


class CancelBookingRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class PaymentIntentRequest(BaseModel):
    force: bool = False


class PaymentIntentResponse(BaseModel):
    booking_id: str
    order_id: str
    gateway_token: str
    redirect_url: str
    amount: int
    expires_at: datetime
    attempt: int
    reused: bool


class ProcessingResultResponse(BaseModel):
    outcome: str
    accepted: bool
    message: str
    order_id: str | None = None
    payment_status: str | None = None
    booking_status: str | None = None
    tickets_issued: int = 0
    audit_id: str | None = None
    replayed: bool = False


class WebhookAuditResponse(BaseModel):
    id: str
    source: str
    transaction_id: str | None = None
    order_id: str | None = None
    transaction_status: str | None = None
    signature_valid: bool
    outcome: str
    message: str | None = None
    payment_status: str | None = None
    booking_status: str | None = None
    tickets_issued: int
    processing_ms: int
    replay_count: int
    last_replayed_at: datetime | None = None
    created_at: datetime


class TicketResponse(BaseModel):
    ticket_code: str
    status: str
    passenger_name: str
    seat_label: str | None = None
    qr_payload: str


class TicketRecoveryResponse(BaseModel):
    booking_code: str
    issued: int
    tickets: list[TicketResponse]


class TicketValidationResponse(BaseModel):
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


class CheckInResponse(BaseModel):
    success: bool
    reason: str
    checked_in_at: datetime | None = None
    ticket: TicketValidationResponse


class SweepFailureResponse(BaseModel):
    booking_id: str
    error: str


class SweepSummaryResponse(BaseModel):
    started_at: datetime
    processed: int
    expired: list[str]
    seats_released: int
    payments_expired: int
    skipped: int
    failures: list[SweepFailureResponse]


class RecoveryFailureResponse(BaseModel):
    order_id: str
    error: str


class RecoverySummaryResponse(BaseModel):
    started_at: datetime
    checked: int
    recovered: list[str]
    unchanged: int
    skipped: int
    failures: list[RecoveryFailureResponse]


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict
    dedupe_key: str
    status: str
    attempts: int
    created_at: datetime
    published_at: datetime | None = None
