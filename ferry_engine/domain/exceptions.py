class FerryEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the ferry booking engine.
    """


class ValidationError(FerryEngineError):
    """Raised for malformed input that must be fixed before retrying."""


class NotFoundError(FerryEngineError):
    """Raised when a departure, booking, payment or ticket does not exist."""


class ConflictError(FerryEngineError):
    """Raised when a request conflicts with the current persisted state."""


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an illegal state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str, entity: str = "booking"):
        self.from_state = from_state
        self.to_state = to_state
        self.entity = entity

        message = (
            f"Illegal {entity} state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class InsufficientSeatsError(ConflictError):
    """Raised when a departure has fewer available seats than requested."""

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough seats available. Requested: {requested}, Available: {available}"
        )


class DepartureNotBookableError(ConflictError):
    """Raised when a departure is not SCHEDULED or has already left."""


class AuthError(FerryEngineError):
    """Raised when the actor lacks permission for the requested mutation."""


class GatewayError(FerryEngineError):
    """
    Raised when the payment gateway is unreachable or answers
    with an unexpected shape. Timeouts are retryable, never a "no".
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: object | None = None,
        retryable: bool = False,
    ):
        self.status_code = status_code
        self.body = body
        self.retryable = retryable
        super().__init__(message)


class InvalidSignatureError(FerryEngineError):
    """Raised when a gateway notification signature does not match."""


class ReplayDetectedError(FerryEngineError):
    """Raised when a notification was already processed to a final outcome."""

    def __init__(self, replay_key: str, audit_id: str):
        self.replay_key = replay_key
        self.audit_id = audit_id
        super().__init__(f"Notification {replay_key} already processed (audit {audit_id})")
