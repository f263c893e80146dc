import threading
from concurrent.futures import ThreadPoolExecutor

from booking_engine.infrastructure.db.session import session_scope
from booking_engine.infrastructure.repositories.seat_ledger import (
    SeatRelease,
    SeatReservation,
    SeatReservationLedger,
)


def _reserve(session_factory, seat_id, holder):
    with session_scope(session_factory) as db:
        return SeatReservationLedger(db).try_reserve(seat_id, holder=holder)


def _seat(session_factory, seat_id):
    with session_scope(session_factory) as db:
        return SeatReservationLedger(db).get(seat_id)


def test_first_writer_wins(session_factory, seat_ids):
    seat_id = seat_ids[0]

    assert _reserve(session_factory, seat_id, "BK-A") is SeatReservation.RESERVED
    assert _reserve(session_factory, seat_id, "BK-B") is SeatReservation.ALREADY_TAKEN

    seat = _seat(session_factory, seat_id)
    assert seat.is_available is False
    assert seat.reserved_by == "BK-A"


def test_same_holder_reacquires_its_own_seat(session_factory, seat_ids):
    seat_id = seat_ids[0]

    assert _reserve(session_factory, seat_id, "BK-A") is SeatReservation.RESERVED
    assert _reserve(session_factory, seat_id, "BK-A") is SeatReservation.RESERVED


def test_unknown_seat(session_factory):
    assert _reserve(session_factory, "no-such-seat", "BK-A") is SeatReservation.NOT_FOUND


def test_release_is_idempotent(session_factory, seat_ids):
    seat_id = seat_ids[0]
    _reserve(session_factory, seat_id, "BK-A")

    with session_scope(session_factory) as db:
        ledger = SeatReservationLedger(db)
        assert ledger.release(seat_id) is SeatRelease.RELEASED
        assert ledger.release(seat_id) is SeatRelease.NOT_RESERVED

    seat = _seat(session_factory, seat_id)
    assert seat.is_available is True
    assert seat.reserved_by is None


def test_release_with_holder_leaves_other_holders_alone(session_factory, seat_ids):
    seat_id = seat_ids[0]
    _reserve(session_factory, seat_id, "BK-A")

    with session_scope(session_factory) as db:
        assert SeatReservationLedger(db).release(seat_id, holder="BK-B") is SeatRelease.NOT_RESERVED

    assert _seat(session_factory, seat_id).reserved_by == "BK-A"


def test_no_double_booking_under_concurrency(session_factory, seat_ids):
    seat_id = seat_ids[0]
    workers = 12
    barrier = threading.Barrier(workers)

    def attempt(index):
        barrier.wait()
        return _reserve(session_factory, seat_id, f"BK-{index}")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(attempt, range(workers)))

    assert outcomes.count(SeatReservation.RESERVED) == 1
    assert outcomes.count(SeatReservation.ALREADY_TAKEN) == workers - 1

    winner = outcomes.index(SeatReservation.RESERVED)
    assert _seat(session_factory, seat_id).reserved_by == f"BK-{winner}"
