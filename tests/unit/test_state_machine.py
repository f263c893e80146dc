# tests/unit/test_state_machine.py

import pytest

from booking_engine.domain.state_machine import BookingStateMachine, BookingStatus
from booking_engine.domain.exceptions import InvalidStateTransitionError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_valid_happy_path():
    path = [
        BookingStatus.DRAFT,
        BookingStatus.SEATS_RESERVED,
        BookingStatus.PERSISTED,
        BookingStatus.CAPACITY_ADJUSTED,
        BookingStatus.PAYMENT_CONFIRMED,
    ]
    for current, following in zip(path, path[1:]):
        assert BookingStateMachine.can_transition(current, following)


def test_unknown_outcome_resolves_either_way():
    assert BookingStateMachine.can_transition(
        BookingStatus.PERSISTED,
        BookingStatus.CAPACITY_UNKNOWN,
    )
    assert BookingStateMachine.can_transition(
        BookingStatus.CAPACITY_UNKNOWN,
        BookingStatus.CAPACITY_ADJUSTED,
    )
    assert BookingStateMachine.can_transition(
        BookingStatus.CAPACITY_UNKNOWN,
        BookingStatus.FAILED,
    )


@pytest.mark.parametrize(
    "status",
    [
        BookingStatus.PERSISTED,
        BookingStatus.CAPACITY_UNKNOWN,
        BookingStatus.CAPACITY_ADJUSTED,
        BookingStatus.PAYMENT_CONFIRMED,
    ],
)
def test_cancellable_statuses(status):
    assert BookingStateMachine.can_transition(status, BookingStatus.CANCELLED)


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_cannot_confirm_payment_before_capacity_adjusted():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.PERSISTED,
            BookingStatus.PAYMENT_CONFIRMED,
        )

    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.CAPACITY_UNKNOWN,
            BookingStatus.PAYMENT_CONFIRMED,
        )


def test_unknown_outcome_never_jumps_to_confirmed():
    assert not BookingStateMachine.can_transition(
        BookingStatus.CAPACITY_UNKNOWN,
        BookingStatus.PAYMENT_CONFIRMED,
    )


def test_confirmed_booking_cannot_fail():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.PAYMENT_CONFIRMED,
            BookingStatus.FAILED,
        )


def test_terminal_state_failed():
    assert BookingStateMachine.is_terminal(BookingStatus.FAILED)

    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.FAILED,
            BookingStatus.CANCELLED,
        )


def test_terminal_state_cancelled():
    assert BookingStateMachine.is_terminal(BookingStatus.CANCELLED)
    assert BookingStateMachine.get_allowed_transitions(BookingStatus.CANCELLED) == set()


def test_error_names_both_states():
    with pytest.raises(InvalidStateTransitionError) as excinfo:
        BookingStateMachine.validate_transition(
            BookingStatus.CANCELLED,
            BookingStatus.PAYMENT_CONFIRMED,
        )

    assert excinfo.value.from_state == "CANCELLED"
    assert excinfo.value.to_state == "PAYMENT_CONFIRMED"


def test_invalid_type_guard():
    with pytest.raises(TypeError):
        BookingStateMachine.validate_transition(
            "PERSISTED",  # invalid type
            BookingStatus.CAPACITY_ADJUSTED,
        )
