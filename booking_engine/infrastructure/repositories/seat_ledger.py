# booking_engine/infrastructure/repositories/seat_ledger.py

import logging
from enum import Enum

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from booking_engine.infrastructure.db.models import Seat


logger = logging.getLogger(__name__)


class SeatReservation(str, Enum):
    RESERVED = "RESERVED"
    ALREADY_TAKEN = "ALREADY_TAKEN"
    NOT_FOUND = "NOT_FOUND"


class SeatRelease(str, Enum):
    RELEASED = "RELEASED"
    NOT_RESERVED = "NOT_RESERVED"


class SeatReservationLedger:
    """
    Per-seat availability with optimistic concurrency.

    Every state change is one conditional UPDATE that must hit exactly one
    row. The first writer wins; everybody else sees ALREADY_TAKEN. There is
    no SELECT ... FOR UPDATE and no in-process lock, so the guarantee holds
    across any number of service instances sharing the database.
    """

    def __init__(self, db: Session):
        self.db = db

    def try_reserve(self, seat_id: str, holder: str) -> SeatReservation:
        """
        UPDATE seats SET is_available = false, reserved_by = :holder
        WHERE id = :seat_id AND (is_available OR reserved_by = :holder)
        """
        stmt = (
            update(Seat)
            .where(Seat.id == seat_id)
            .where(
                or_(
                    Seat.is_available.is_(True),
                    Seat.reserved_by == holder,
                )
            )
            .values(is_available=False, reserved_by=holder)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 1:
            return SeatReservation.RESERVED

        if self.get(seat_id) is None:
            return SeatReservation.NOT_FOUND

        logger.info("Seat %s already taken, holder=%s lost the race", seat_id, holder)
        return SeatReservation.ALREADY_TAKEN

    def release(self, seat_id: str, holder: str | None = None) -> SeatRelease:
        conditions = [Seat.id == seat_id, Seat.is_available.is_(False)]
        if holder is not None:
            conditions.append(Seat.reserved_by == holder)

        stmt = (
            update(Seat)
            .where(and_(*conditions))
            .values(is_available=True, reserved_by=None)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 1:
            return SeatRelease.RELEASED
        return SeatRelease.NOT_RESERVED

    def get(self, seat_id: str) -> Seat | None:
        stmt = select(Seat).where(Seat.id == seat_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def create_seats(
        self,
        venue_id: str,
        section: str,
        rows: list[str],
        seats_per_row: int,
        seat_type: str = "STANDARD",
    ) -> list[Seat]:
        seats = [
            Seat(
                venue_id=venue_id,
                section=section,
                row_number=row,
                seat_number=str(number),
                seat_type=seat_type,
                is_available=True,
            )
            for row in rows
            for number in range(1, seats_per_row + 1)
        ]
        self.db.add_all(seats)
        self.db.flush()
        return seats
