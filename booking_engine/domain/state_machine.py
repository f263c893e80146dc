# booking_engine/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from booking_engine.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    DRAFT = "DRAFT"
    SEATS_RESERVED = "SEATS_RESERVED"
    PERSISTED = "PERSISTED"
    # Remote capacity taken, waiting for payment.
    CAPACITY_ADJUSTED = "CAPACITY_ADJUSTED"
    # Capacity call timed out; reconciliation decides.
    CAPACITY_UNKNOWN = "CAPACITY_UNKNOWN"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions of the booking saga.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.DRAFT: {
            BookingStatus.SEATS_RESERVED,
            BookingStatus.FAILED,
        },
        BookingStatus.SEATS_RESERVED: {
            BookingStatus.PERSISTED,
            BookingStatus.FAILED,
        },
        BookingStatus.PERSISTED: {
            BookingStatus.CAPACITY_ADJUSTED,
            BookingStatus.CAPACITY_UNKNOWN,
            BookingStatus.FAILED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CAPACITY_UNKNOWN: {
            BookingStatus.CAPACITY_ADJUSTED,
            BookingStatus.FAILED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CAPACITY_ADJUSTED: {
            BookingStatus.PAYMENT_CONFIRMED,
            BookingStatus.FAILED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.PAYMENT_CONFIRMED: {
            BookingStatus.CANCELLED,
        },
        BookingStatus.CANCELLED: set(),
        BookingStatus.FAILED: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(
        cls, status: BookingStatus
    ) -> Set[BookingStatus]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
