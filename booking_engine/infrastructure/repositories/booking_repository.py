# booking_engine/infrastructure/repositories/booking_repository.py

import json
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking_engine.infrastructure.db.models import (
    Booking,
    BookingItem,
    OutboxEvent,
    Payment,
)
from booking_engine.domain.exceptions import DuplicateBookingReferenceError
from booking_engine.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStatus,
)


class StatusUpdate(str, Enum):
    APPLIED = "APPLIED"
    STALE = "STALE"


class BookingRepository:
    """
    Local persistence of bookings, their items and their payment row.

    The repository never commits. Callers wrap each unit of work in
    ``session_scope`` so the rows it writes become visible together or
    not at all.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_reference(
        self,
        booking_reference: str,
    ) -> Booking | None:

        stmt = select(Booking).where(
            Booking.booking_reference == booking_reference
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_by_status(
        self,
        status: BookingStatus,
        limit: int = 50,
    ) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == status)
            .order_by(Booking.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_recent(
        self,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[Booking]:
        """Newest first, optionally only one user's bookings."""
        stmt = select(Booking)
        if user_id is not None:
            stmt = stmt.where(Booking.user_id == user_id)
        stmt = stmt.order_by(Booking.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def list_by_user(
        self,
        user_id: str,
        limit: int = 50,
    ) -> list[Booking]:
        return self.list_recent(user_id=user_id, limit=limit)

    def list_pending_capacity_releases(self, limit: int = 50) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.capacity_release_pending.is_(True))
            .order_by(Booking.updated_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def set_capacity_release_pending(self, booking_id: str, pending: bool) -> None:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .values(capacity_release_pending=pending)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def create_booking(
        self,
        user_id: str,
        event_id: str,
        booking_reference: str,
        request_fingerprint: str,
        items: list[dict[str, Any]],
        currency: str = "USD",
        payment_method: str | None = None,
    ) -> Booking:
        """
        Inserts the booking row, its items and the pending payment row,
        then flushes so constraint violations surface here.
        """
        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            booking_reference=booking_reference,
            request_fingerprint=request_fingerprint,
            currency=currency,
            status=BookingStatus.PERSISTED,
        )
        booking.items = [
            BookingItem(
                ticket_type_id=item.get("ticket_type_id"),
                seat_id=item.get("seat_id"),
                quantity=item["quantity"],
                unit_price=item["unit_price"],
            )
            for item in items
        ]
        booking.total_amount = sum(
            (item.total_price for item in booking.items),
            Decimal("0"),
        )
        booking.payment = Payment(
            amount=booking.total_amount,
            currency=currency,
            method=payment_method,
            status=PaymentStatus.PENDING,
        )

        self.db.add(booking)
        try:
            self.db.flush()
        except IntegrityError as exc:
            if "booking_reference" in str(exc.orig):
                raise DuplicateBookingReferenceError(booking_reference) from exc
            raise

        return booking

    def update_status(
        self,
        booking_id: str,
        expected: BookingStatus,
        new_status: BookingStatus,
        **fields: Any,
    ) -> StatusUpdate:
        """
        Compare-and-swap on status. Only one of two racing updates that
        expect the same current status can win; the other gets STALE.
        """
        BookingStateMachine.validate_transition(expected, new_status)

        values = dict(fields)
        values["status"] = new_status
        if new_status == BookingStatus.PAYMENT_CONFIRMED:
            values.setdefault("confirmed_at", func.now())
        if new_status == BookingStatus.CANCELLED:
            values.setdefault("cancelled_at", func.now())

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 1:
            return StatusUpdate.APPLIED
        return StatusUpdate.STALE

    def update_payment(
        self,
        booking_id: str,
        status: PaymentStatus,
        transaction_id: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status}
        if transaction_id is not None:
            values["transaction_id"] = transaction_id
        if status == PaymentStatus.COMPLETED:
            values["paid_at"] = func.now()

        stmt = (
            update(Payment)
            .where(Payment.booking_id == booking_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def add_outbox_event(
        self,
        booking: Booking,
        event_type: str,
        payload: dict[str, Any],
        dedupe_key: str,
    ) -> None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return

        self.db.add(
            OutboxEvent(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type=event_type,
                payload=json.dumps(payload, sort_keys=True, default=str),
                dedupe_key=dedupe_key,
                status="PENDING",
                attempts=0,
            )
        )
