from sqlalchemy import select

from booking_engine.infrastructure.db.models import Base, Seat
from booking_engine.infrastructure.db.session import SessionLocal, engine
from booking_engine.infrastructure.repositories.seat_ledger import SeatReservationLedger


VENUE_LAYOUT = [
    {
        "venue_id": "grand-arena",
        "section": "FLOOR",
        "rows": ["A", "B", "C"],
        "seats_per_row": 12,
        "seat_type": "VIP",
    },
    {
        "venue_id": "grand-arena",
        "section": "BALCONY",
        "rows": ["D", "E", "F", "G"],
        "seats_per_row": 20,
        "seat_type": "STANDARD",
    },
]


def seed_seats(db) -> int:
    ledger = SeatReservationLedger(db)
    created = 0

    for block in VENUE_LAYOUT:
        existing = db.execute(
            select(Seat)
            .where(Seat.venue_id == block["venue_id"])
            .where(Seat.section == block["section"])
        ).scalars().first()
        if existing:
            continue

        seats = ledger.create_seats(
            venue_id=block["venue_id"],
            section=block["section"],
            rows=block["rows"],
            seats_per_row=block["seats_per_row"],
            seat_type=block["seat_type"],
        )
        created += len(seats)

    return created


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        created = seed_seats(db)
        db.commit()
        print(f"Seed complete: {created} seats added to grand-arena.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
