import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.exc import OperationalError, SQLAlchemyError, TimeoutError as SQLAlchemyTimeoutError
from sqlalchemy.orm import Session

from booking_engine.application.commands import CreateBookingCommand
from booking_engine.domain.exceptions import (
    BookingEngineError,
    BookingNotFoundError,
    BookingPersistenceError,
    CapacityAdjustmentRejectedError,
    DuplicateBookingReferenceError,
    EventNotBookableError,
    IdempotencyConflictError,
    InsufficientCapacityError,
    InvalidStateTransitionError,
    PermanentInfrastructureError,
    SeatNotFoundError,
    SeatUnavailableError,
    TransientInfrastructureError,
    UnknownOutcomeError,
    ValidationError,
)
from booking_engine.domain.reference import ReferenceGenerator, request_fingerprint
from booking_engine.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStatus,
)
from booking_engine.infrastructure.db.models import Booking
from booking_engine.infrastructure.db.session import SessionLocal, session_scope
from booking_engine.infrastructure.gateways.inventory_gateway import (
    AdjustmentOutcome,
    EventSnapshot,
    InventoryGateway,
    release_key,
    reserve_key,
)
from booking_engine.infrastructure.repositories.booking_repository import (
    BookingRepository,
    StatusUpdate,
)
from booking_engine.infrastructure.repositories.seat_ledger import (
    SeatReservation,
    SeatReservationLedger,
)


logger = logging.getLogger(__name__)

MAX_CANCEL_ATTEMPTS = 3
PAYMENT_FAILED_REASON = "Payment failed"
CAPACITY_NOT_APPLIED_REASON = "Capacity adjustment was not applied by the inventory service"


@dataclass
class BookingResult:
    booking: Booking
    created: bool


@dataclass
class ReconciliationReport:
    confirmed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    released: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


def _is_db_degraded(exc: Exception) -> bool:
    return isinstance(exc, (OperationalError, SQLAlchemyTimeoutError))


def _infrastructure_error(exc: SQLAlchemyError, message: str) -> BookingEngineError:
    if _is_db_degraded(exc):
        return TransientInfrastructureError(f"{message}: {exc}")
    return BookingPersistenceError(f"{message}: {exc}")


class BookingOrchestrator:
    """
    Runs the booking saga across the local store and the remote inventory.

    Forward steps: reserve seats, persist the booking, adjust remote
    capacity. When a step fails the steps already done are compensated in
    reverse order. Only this class compensates; the ledger, repository and
    gateway report local success or failure and nothing more.
    """

    def __init__(
        self,
        gateway: InventoryGateway,
        session_factory: Callable[[], Session] = SessionLocal,
        reference_generator: ReferenceGenerator | None = None,
    ):
        self._gateway = gateway
        self._session_factory = session_factory
        self._references = reference_generator or ReferenceGenerator()

    # -----------------------------
    # Queries
    # -----------------------------
    def get_booking(self, booking_id: str) -> Booking:
        with session_scope(self._session_factory) as db:
            booking = BookingRepository(db).get_by_id(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return booking

    def get_booking_by_reference(self, booking_reference: str) -> Booking:
        booking = self._find_by_reference(booking_reference)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_reference} not found")
        return booking

    def list_bookings(self, user_id: str | None = None, limit: int = 50) -> list[Booking]:
        with session_scope(self._session_factory) as db:
            repo = BookingRepository(db)
            if user_id is None:
                return repo.list_recent(limit=limit)
            return repo.list_by_user(user_id, limit=limit)

    def _find_by_reference(self, booking_reference: str) -> Booking | None:
        with session_scope(self._session_factory) as db:
            return BookingRepository(db).get_by_reference(booking_reference)

    # -----------------------------
    # Create
    # -----------------------------
    def create_booking(self, command: CreateBookingCommand) -> BookingResult:
        reference = self._references.generate(command.booking_reference)
        fingerprint = request_fingerprint(command.fingerprint_payload())

        existing = self._find_by_reference(reference)
        if existing is not None:
            return self._replay(existing, fingerprint)

        state = BookingStatus.DRAFT
        snapshot = self._validate_event(command)
        items = self._price_items(command, snapshot)

        reserved = self._reserve_seats(reference, command.seat_ids)
        state = self._advance(reference, state, BookingStatus.SEATS_RESERVED)

        try:
            with session_scope(self._session_factory) as db:
                booking = BookingRepository(db).create_booking(
                    user_id=command.user_id,
                    event_id=command.event_id,
                    booking_reference=reference,
                    request_fingerprint=fingerprint,
                    items=items,
                    currency=command.currency,
                    payment_method=command.payment_method,
                )
        except DuplicateBookingReferenceError:
            # A concurrent retry of the same reference committed first.
            winner = self._find_by_reference(reference)
            if winner is None:
                self._release_seats(reference, reserved)
                raise TransientInfrastructureError(
                    f"Booking {reference} is being created concurrently; retry"
                )
            if BookingStateMachine.is_terminal(winner.status):
                # The winner already gave its seats back; our retake must not keep them.
                stray = reserved
            else:
                stray = [seat_id for seat_id in reserved if seat_id not in winner.seat_ids]
            self._release_seats(reference, stray)
            return self._replay(winner, fingerprint)
        except SQLAlchemyError as exc:
            self._release_seats(reference, reserved)
            raise _infrastructure_error(exc, f"Could not persist booking {reference}") from exc

        self._advance(reference, state, BookingStatus.PERSISTED)
        return BookingResult(booking=self._adjust_capacity(booking), created=True)

    def _replay(self, existing: Booking, fingerprint: str) -> BookingResult:
        if existing.request_fingerprint != fingerprint:
            raise IdempotencyConflictError(
                f"Booking reference {existing.booking_reference} was already used "
                f"for a different request"
            )
        logger.info(
            "Replaying booking %s for repeated reference (status=%s)",
            existing.id,
            existing.status.value,
        )
        return BookingResult(booking=existing, created=False)

    def _validate_event(self, command: CreateBookingCommand) -> EventSnapshot:
        snapshot = self._gateway.validate(command.event_id)

        if not snapshot.is_bookable:
            raise EventNotBookableError(
                f"Event {command.event_id} is not available for booking (status={snapshot.status})"
            )
        if (
            snapshot.remaining_capacity is not None
            and command.total_quantity > snapshot.remaining_capacity
        ):
            raise InsufficientCapacityError(
                f"Event {command.event_id} has {snapshot.remaining_capacity} places left, "
                f"{command.total_quantity} requested"
            )
        return snapshot

    @staticmethod
    def _price_items(
        command: CreateBookingCommand,
        snapshot: EventSnapshot,
    ) -> list[dict[str, Any]]:
        items = []
        for item in command.items:
            unit_price = item.unit_price if item.unit_price is not None else snapshot.base_price
            if unit_price is None:
                raise ValidationError(
                    f"No unit price given and event {command.event_id} has no base price"
                )
            items.append(
                {
                    "ticket_type_id": item.ticket_type_id,
                    "seat_id": item.seat_id,
                    "quantity": item.quantity,
                    "unit_price": Decimal(unit_price),
                }
            )
        return items

    def _reserve_seats(self, reference: str, seat_ids: list[str]) -> list[str]:
        reserved: list[str] = []
        for seat_id in seat_ids:
            try:
                with session_scope(self._session_factory) as db:
                    outcome = SeatReservationLedger(db).try_reserve(seat_id, holder=reference)
            except SQLAlchemyError as exc:
                self._release_seats(reference, reserved)
                raise _infrastructure_error(exc, f"Could not reserve seat {seat_id}") from exc

            if outcome is SeatReservation.RESERVED:
                reserved.append(seat_id)
                continue

            self._release_seats(reference, reserved)
            if outcome is SeatReservation.NOT_FOUND:
                raise SeatNotFoundError(f"Seat {seat_id} does not exist")
            raise SeatUnavailableError(seat_id)

        return reserved

    def _release_seats(self, reference: str, seat_ids: list[str]) -> None:
        if not seat_ids:
            return

        with session_scope(self._session_factory) as db:
            ledger = SeatReservationLedger(db)
            for seat_id in seat_ids:
                ledger.release(seat_id, holder=reference)

        logger.warning(
            "Compensation: released %s seat(s) held by booking %s",
            len(seat_ids),
            reference,
        )

    def _adjust_capacity(self, booking: Booking) -> Booking:
        reference = booking.booking_reference
        try:
            self._gateway.adjust_capacity(
                booking.event_id,
                booking.total_quantity,
                reserve_key(reference),
            )
        except TransientInfrastructureError:
            logger.warning(
                "Capacity outcome unknown for booking %s; left for reconciliation",
                reference,
            )
            result = self._transition(
                booking,
                BookingStatus.PERSISTED,
                BookingStatus.CAPACITY_UNKNOWN,
            )
            if result is StatusUpdate.STALE:
                # Ended while the reserve was in flight; it may still have landed.
                self._settle_abandoned_reserve(booking, reserve_applied=False)
            return self.get_booking(booking.id)
        except PermanentInfrastructureError as exc:
            logger.error(
                "Inventory service rejected capacity for booking %s: %s",
                reference,
                exc,
            )
            self._fail_booking(booking, BookingStatus.PERSISTED, reason=str(exc))
            raise CapacityAdjustmentRejectedError(
                booking.id,
                f"Booking {reference} failed: inventory service rejected the capacity update",
            ) from exc

        result = self._transition(
            booking,
            BookingStatus.PERSISTED,
            BookingStatus.CAPACITY_ADJUSTED,
        )
        if result is StatusUpdate.STALE:
            # Cancelled while the remote call was in flight.
            logger.warning(
                "Booking %s changed during capacity adjustment; reversing it",
                reference,
            )
            self._settle_abandoned_reserve(booking, reserve_applied=True)
        return self.get_booking(booking.id)

    def _settle_abandoned_reserve(self, booking: Booking, reserve_applied: bool) -> None:
        """
        Gives back capacity reserved for a booking that was cancelled or
        failed while the reserve call was running. A release that cannot go
        through now stays marked for the reconciliation pass.
        """
        current = self.get_booking(booking.id)
        if not BookingStateMachine.is_terminal(current.status):
            return

        try:
            self._release_terminal_capacity(current, reserve_applied)
        except (TransientInfrastructureError, PermanentInfrastructureError) as exc:
            logger.warning(
                "Capacity release for booking %s deferred to reconciliation: %s",
                current.booking_reference,
                exc,
            )

    # -----------------------------
    # Payment confirmation
    # -----------------------------
    def confirm_payment(
        self,
        booking_id: str,
        payment_status: PaymentStatus | str,
        transaction_id: str | None = None,
    ) -> Booking:
        try:
            status = PaymentStatus(payment_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown payment status {payment_status!r}") from exc
        if status not in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            raise ValidationError(f"Payment status {status.value} is not a confirmation result")

        booking = self.get_booking(booking_id)
        if status is PaymentStatus.FAILED:
            return self._fail_payment(booking, transaction_id)

        if booking.status != BookingStatus.CAPACITY_ADJUSTED:
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=BookingStatus.PAYMENT_CONFIRMED.value,
            )

        with session_scope(self._session_factory) as db:
            repo = BookingRepository(db)
            result = repo.update_status(
                booking.id,
                BookingStatus.CAPACITY_ADJUSTED,
                BookingStatus.PAYMENT_CONFIRMED,
            )
            if result is StatusUpdate.STALE:
                raise InvalidStateTransitionError(
                    from_state=booking.status.value,
                    to_state=BookingStatus.PAYMENT_CONFIRMED.value,
                )
            repo.update_payment(booking.id, PaymentStatus.COMPLETED, transaction_id)
            repo.add_outbox_event(
                booking,
                event_type="BOOKING_CONFIRMED",
                payload=self._event_payload(booking, transaction_id=transaction_id),
                dedupe_key=f"booking:{booking.id}:confirmed",
            )

        logger.info("Booking %s payment confirmed", booking.booking_reference)
        return self.get_booking(booking.id)

    def _fail_payment(self, booking: Booking, transaction_id: str | None) -> Booking:
        if booking.status == BookingStatus.FAILED and booking.failure_reason == PAYMENT_FAILED_REASON:
            # Repeated delivery: the capacity reversal may not have gone through.
            self._release_terminal_capacity(booking, reserve_applied=True)
            return self.get_booking(booking.id)

        if booking.status != BookingStatus.CAPACITY_ADJUSTED:
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=BookingStatus.FAILED.value,
            )

        result = self._fail_booking(
            booking,
            BookingStatus.CAPACITY_ADJUSTED,
            reason=PAYMENT_FAILED_REASON,
            transaction_id=transaction_id,
        )
        if result is StatusUpdate.STALE:
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=BookingStatus.FAILED.value,
            )

        self._release_terminal_capacity(booking, reserve_applied=True)
        logger.warning("Booking %s failed: payment failed", booking.booking_reference)
        return self.get_booking(booking.id)

    # -----------------------------
    # Cancellation
    # -----------------------------
    def cancel_booking(self, booking_id: str, reason: str | None = None) -> Booking:
        for attempt in range(1, MAX_CANCEL_ATTEMPTS + 1):
            booking = self.get_booking(booking_id)
            if booking.status in (BookingStatus.CANCELLED, BookingStatus.FAILED):
                logger.info(
                    "Booking %s already %s; nothing to cancel",
                    booking.booking_reference,
                    booking.status.value,
                )
                return booking

            BookingStateMachine.validate_transition(booking.status, BookingStatus.CANCELLED)
            self._reverse_capacity(booking)

            with session_scope(self._session_factory) as db:
                repo = BookingRepository(db)
                result = repo.update_status(
                    booking.id,
                    booking.status,
                    BookingStatus.CANCELLED,
                    cancellation_reason=reason,
                )
                if result is StatusUpdate.APPLIED:
                    ledger = SeatReservationLedger(db)
                    for seat_id in booking.seat_ids:
                        ledger.release(seat_id, holder=booking.booking_reference)
                    repo.add_outbox_event(
                        booking,
                        event_type="BOOKING_CANCELLED",
                        payload=self._event_payload(booking, reason=reason),
                        dedupe_key=f"booking:{booking.id}:cancelled",
                    )
                    if booking.status == BookingStatus.PAYMENT_CONFIRMED:
                        repo.add_outbox_event(
                            booking,
                            event_type="BOOKING_REFUND_REQUESTED",
                            payload=self._event_payload(booking, reason=reason),
                            dedupe_key=f"booking:{booking.id}:refund",
                        )

            if result is StatusUpdate.APPLIED:
                logger.info(
                    "Booking %s cancelled from %s",
                    booking.booking_reference,
                    booking.status.value,
                )
                return self.get_booking(booking.id)

            logger.warning(
                "Booking %s changed during cancellation (attempt %s/%s)",
                booking.booking_reference,
                attempt,
                MAX_CANCEL_ATTEMPTS,
            )

        raise TransientInfrastructureError(
            f"Booking {booking_id} kept changing during cancellation; retry"
        )

    def _reverse_capacity(self, booking: Booking) -> None:
        # PERSISTED and CAPACITY_UNKNOWN bookings are looked up first.
        self._release_capacity(
            booking,
            reserve_applied=booking.status in (
                BookingStatus.CAPACITY_ADJUSTED,
                BookingStatus.PAYMENT_CONFIRMED,
            ),
        )

    def _release_capacity(self, booking: Booking, reserve_applied: bool) -> None:
        if not reserve_applied:
            outcome = self._gateway.lookup_adjustment(
                booking.event_id,
                reserve_key(booking.booking_reference),
            )
            if outcome is AdjustmentOutcome.NOT_APPLIED:
                return

        self._gateway.adjust_capacity(
            booking.event_id,
            -booking.total_quantity,
            release_key(booking.booking_reference),
        )

    def _release_terminal_capacity(self, booking: Booking, reserve_applied: bool) -> None:
        """Release for an already terminal booking, marked until it goes through."""
        self._set_release_pending(booking, True)
        self._release_capacity(booking, reserve_applied)
        self._set_release_pending(booking, False)

    def _set_release_pending(self, booking: Booking, pending: bool) -> None:
        with session_scope(self._session_factory) as db:
            BookingRepository(db).set_capacity_release_pending(booking.id, pending)

    # -----------------------------
    # Reconciliation
    # -----------------------------
    def reconcile_booking(self, booking_id: str) -> Booking:
        booking = self.get_booking(booking_id)
        if booking.status != BookingStatus.CAPACITY_UNKNOWN:
            return booking

        try:
            outcome = self._gateway.lookup_adjustment(
                booking.event_id,
                reserve_key(booking.booking_reference),
            )
        except TransientInfrastructureError as exc:
            raise UnknownOutcomeError(
                f"Capacity outcome for booking {booking.booking_reference} is still unknown"
            ) from exc

        if outcome is AdjustmentOutcome.APPLIED:
            self._transition(
                booking,
                BookingStatus.CAPACITY_UNKNOWN,
                BookingStatus.CAPACITY_ADJUSTED,
            )
        else:
            self._fail_booking(
                booking,
                BookingStatus.CAPACITY_UNKNOWN,
                reason=CAPACITY_NOT_APPLIED_REASON,
            )
        return self.get_booking(booking.id)

    def reconcile_capacity_release(self, booking_id: str) -> Booking:
        booking = self.get_booking(booking_id)
        if not booking.capacity_release_pending:
            return booking

        try:
            self._release_terminal_capacity(booking, reserve_applied=False)
        except TransientInfrastructureError as exc:
            raise UnknownOutcomeError(
                f"Capacity release for booking {booking.booking_reference} is still pending"
            ) from exc

        logger.info("Booking %s: pending capacity release done", booking.booking_reference)
        return self.get_booking(booking.id)

    def reconcile_unknown_outcomes(self, limit: int = 50) -> ReconciliationReport:
        with session_scope(self._session_factory) as db:
            repo = BookingRepository(db)
            pending = repo.list_by_status(BookingStatus.CAPACITY_UNKNOWN, limit=limit)
            orphaned = repo.list_pending_capacity_releases(limit=limit)

        report = ReconciliationReport()
        for candidate in pending:
            try:
                booking = self.reconcile_booking(candidate.id)
            except (UnknownOutcomeError, PermanentInfrastructureError) as exc:
                logger.warning(
                    "Reconciliation of booking %s deferred: %s",
                    candidate.booking_reference,
                    exc,
                )
                report.unresolved.append(candidate.id)
                continue

            if booking.status == BookingStatus.FAILED:
                report.failed.append(booking.id)
            elif booking.status == BookingStatus.CAPACITY_UNKNOWN:
                report.unresolved.append(booking.id)
            else:
                report.confirmed.append(booking.id)

        for candidate in orphaned:
            try:
                self.reconcile_capacity_release(candidate.id)
            except (UnknownOutcomeError, PermanentInfrastructureError) as exc:
                logger.warning(
                    "Capacity release for booking %s deferred: %s",
                    candidate.booking_reference,
                    exc,
                )
                report.unresolved.append(candidate.id)
                continue
            report.released.append(candidate.id)

        logger.info(
            "Reconciliation pass: confirmed=%s failed=%s released=%s unresolved=%s",
            len(report.confirmed),
            len(report.failed),
            len(report.released),
            len(report.unresolved),
        )
        return report

    # -----------------------------
    # Helpers
    # -----------------------------
    @staticmethod
    def _advance(
        reference: str,
        current: BookingStatus,
        next_status: BookingStatus,
    ) -> BookingStatus:
        BookingStateMachine.validate_transition(current, next_status)
        logger.info("Booking %s: %s -> %s", reference, current.value, next_status.value)
        return next_status

    def _transition(
        self,
        booking: Booking,
        expected: BookingStatus,
        next_status: BookingStatus,
        **fields: Any,
    ) -> StatusUpdate:
        with session_scope(self._session_factory) as db:
            result = BookingRepository(db).update_status(
                booking.id,
                expected,
                next_status,
                **fields,
            )
        if result is StatusUpdate.APPLIED:
            logger.info(
                "Booking %s: %s -> %s",
                booking.booking_reference,
                expected.value,
                next_status.value,
            )
        return result

    def _fail_booking(
        self,
        booking: Booking,
        expected: BookingStatus,
        reason: str,
        transaction_id: str | None = None,
    ) -> StatusUpdate:
        """Compensating transaction: FAILED status, seats back, payment failed."""
        with session_scope(self._session_factory) as db:
            repo = BookingRepository(db)
            result = repo.update_status(
                booking.id,
                expected,
                BookingStatus.FAILED,
                failure_reason=reason,
            )
            if result is StatusUpdate.APPLIED:
                ledger = SeatReservationLedger(db)
                for seat_id in booking.seat_ids:
                    ledger.release(seat_id, holder=booking.booking_reference)
                repo.update_payment(booking.id, PaymentStatus.FAILED, transaction_id)

        if result is StatusUpdate.APPLIED:
            logger.warning(
                "Compensation: booking %s marked FAILED (%s)",
                booking.booking_reference,
                reason,
            )
        return result

    @staticmethod
    def _event_payload(booking: Booking, **extra: Any) -> dict[str, Any]:
        payload = {
            "booking_id": booking.id,
            "booking_reference": booking.booking_reference,
            "event_id": booking.event_id,
            "user_id": booking.user_id,
            "amount": str(booking.total_amount),
            "currency": booking.currency,
            "quantity": booking.total_quantity,
        }
        payload.update({key: value for key, value in extra.items() if value is not None})
        return payload
