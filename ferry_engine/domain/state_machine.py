# ferry_engine/domain/state_machine.py

from enum import Enum
from typing import ClassVar, Dict, Set, Type

from ferry_engine.domain.exceptions import InvalidStateTransitionError


class DepartureStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    BOARDING = "BOARDING"
    DEPARTED = "DEPARTED"
    ARRIVED = "ARRIVED"
    CANCELLED = "CANCELLED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CHALLENGE = "CHALLENGE"
    DENY = "DENY"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class TicketStatus(str, Enum):
    VALID = "VALID"
    USED = "USED"
    CANCELLED = "CANCELLED"


class _TransitionTable:
    """
    Shared lifecycle checks. Subclasses declare the status enum
    and the legal transition table; nothing else decides legality.
    """

    _STATUS_TYPE: ClassVar[Type[Enum]]
    _ENTITY: ClassVar[str]
    _ALLOWED_TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]]

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
                entity=cls._ENTITY,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return set(cls._ALLOWED_TRANSITIONS.get(status, set()))

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(_TransitionTable):
    """
    Central lifecycle controller for booking transitions.
    """

    _STATUS_TYPE = BookingStatus
    _ENTITY = "booking"
    _ALLOWED_TRANSITIONS = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
            BookingStatus.EXPIRED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CANCELLED,
            BookingStatus.COMPLETED,
            BookingStatus.REFUNDED,
        },
        BookingStatus.CANCELLED: {
            BookingStatus.REFUNDED,
        },
        BookingStatus.COMPLETED: {
            BookingStatus.REFUNDED,
        },
        BookingStatus.EXPIRED: set(),
        BookingStatus.REFUNDED: set(),
    }


class PaymentStateMachine(_TransitionTable):
    """
    Payment lifecycle. Only the webhook reconciler, the sweeper and
    booking cancellation move a payment, and always through this table.
    """

    _STATUS_TYPE = PaymentStatus
    _ENTITY = "payment"
    _ALLOWED_TRANSITIONS = {
        PaymentStatus.PENDING: {
            PaymentStatus.SUCCESS,
            PaymentStatus.FAILED,
            PaymentStatus.EXPIRED,
            PaymentStatus.CHALLENGE,
            PaymentStatus.DENY,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.CHALLENGE: {
            PaymentStatus.SUCCESS,
            PaymentStatus.DENY,
            PaymentStatus.FAILED,
        },
        PaymentStatus.SUCCESS: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: set(),
        PaymentStatus.EXPIRED: set(),
        PaymentStatus.DENY: set(),
        PaymentStatus.CANCELLED: set(),
        PaymentStatus.REFUNDED: set(),
    }


class TicketStateMachine(_TransitionTable):
    _STATUS_TYPE = TicketStatus
    _ENTITY = "ticket"
    _ALLOWED_TRANSITIONS = {
        TicketStatus.VALID: {
            TicketStatus.USED,
            TicketStatus.CANCELLED,
        },
        TicketStatus.USED: set(),
        TicketStatus.CANCELLED: set(),
    }


# Payment outcomes after which a PENDING booking may open a fresh attempt.
RETRYABLE_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
        PaymentStatus.CANCELLED,
        PaymentStatus.DENY,
    }
)
