class BookingEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the Booking Integrity Engine.
    """


class ValidationError(BookingEngineError):
    """Bad input or an event that cannot be booked. No side effects."""


class EventNotFoundError(ValidationError):
    """Raised when the inventory service does not know the event."""


class EventNotBookableError(ValidationError):
    """Raised when the event exists but is not open for booking."""


class SeatNotFoundError(ValidationError):
    """Raised when a requested seat does not exist."""


class ConflictError(BookingEngineError):
    """Raised when the request collides with state owned by someone else."""


class SeatUnavailableError(ConflictError):
    """Raised when a seat is already reserved by another booking."""

    def __init__(self, seat_id: str):
        self.seat_id = seat_id
        super().__init__(f"Seat {seat_id} is already taken")


class InsufficientCapacityError(ConflictError):
    """Raised when the event has fewer remaining places than requested."""


class IdempotencyConflictError(ConflictError):
    """Raised when a booking reference is reused with a different payload."""


class BookingNotFoundError(BookingEngineError):
    """Raised when no booking matches the given id or reference."""


class InvalidStateTransitionError(BookingEngineError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class DuplicateBookingReferenceError(BookingEngineError):
    """Raised by the repository when the reference unique constraint fires."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Booking reference {reference} already exists")


class TransientInfrastructureError(BookingEngineError):
    """
    DB or network blip. Retried inside the component that saw it,
    surfaced only once its retry budget is exhausted.
    """


class UnknownOutcomeError(TransientInfrastructureError):
    """Raised when a remote mutation may or may not have been applied."""


class PermanentInfrastructureError(BookingEngineError):
    """Non-retryable infrastructure failure."""


class InventoryRejectedError(PermanentInfrastructureError):
    """Raised when the inventory service answers with a non-retryable status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


class BookingPersistenceError(PermanentInfrastructureError):
    """Raised when the local booking transaction cannot be committed."""


class CapacityAdjustmentRejectedError(PermanentInfrastructureError):
    """Raised after the inventory service rejected a capacity adjustment."""

    def __init__(self, booking_id: str, message: str):
        self.booking_id = booking_id
        super().__init__(message)
