from datetime import datetime, timezone
from functools import lru_cache
import logging
import os

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session
from sqlalchemy import select

from booking_engine.infrastructure.db.session import SessionLocal
from booking_engine.application.booking_orchestrator import BookingOrchestrator
from booking_engine.application.commands import CreateBookingCommand
from booking_engine.api.schemas.schemas import (
    BookingItemResponse,
    BookingResponse,
    CancelBookingRequest,
    OutboxEventResponse,
    PaymentConfirmationRequest,
    PaymentResponse,
    ReconciliationResponse,
    SeatResponse,
    SeedSeatsRequest,
)
from booking_engine.domain.exceptions import (
    BookingEngineError,
    BookingNotFoundError,
    ConflictError,
    InvalidStateTransitionError,
    TransientInfrastructureError,
    ValidationError,
)
from booking_engine.infrastructure.db.models import Booking, OutboxEvent, Seat
from booking_engine.infrastructure.gateways.inventory_gateway import InventoryGateway
from booking_engine.infrastructure.repositories.seat_ledger import SeatReservationLedger


router = APIRouter()
logger = logging.getLogger(__name__)

RECONCILIATION_BATCH_SIZE = int(os.getenv("RECONCILIATION_BATCH_SIZE", "50"))
MAX_LIST_LIMIT = 200


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_inventory_gateway() -> InventoryGateway:
    return InventoryGateway.from_env()


def get_orchestrator(
    gateway: InventoryGateway = Depends(get_inventory_gateway),
) -> BookingOrchestrator:
    return BookingOrchestrator(gateway=gateway, session_factory=SessionLocal)


def _http_error(exc: BookingEngineError) -> HTTPException:
    if isinstance(exc, BookingNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, (ConflictError, InvalidStateTransitionError)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, TransientInfrastructureError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        logger.error("Booking operation failed: %s", exc)
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=str(exc))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _booking_response(booking: Booking) -> BookingResponse:
    payment = booking.payment
    return BookingResponse(
        booking_id=booking.id,
        booking_reference=booking.booking_reference,
        user_id=booking.user_id,
        event_id=booking.event_id,
        status=booking.status.value,
        total_amount=booking.total_amount,
        currency=booking.currency,
        failure_reason=booking.failure_reason,
        cancellation_reason=booking.cancellation_reason,
        created_at=booking.created_at.isoformat(),
        confirmed_at=_iso(booking.confirmed_at),
        cancelled_at=_iso(booking.cancelled_at),
        items=[
            BookingItemResponse(
                id=item.id,
                ticket_type_id=item.ticket_type_id,
                seat_id=item.seat_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.total_price,
            )
            for item in booking.items
        ],
        payment=PaymentResponse(
            status=payment.status.value,
            method=payment.method,
            amount=payment.amount,
            currency=payment.currency,
            transaction_id=payment.transaction_id,
        )
        if payment
        else None,
    )


def _seat_response(seat: Seat) -> SeatResponse:
    return SeatResponse(
        id=seat.id,
        venue_id=seat.venue_id,
        section=seat.section,
        row_number=seat.row_number,
        seat_number=seat.seat_number,
        seat_type=seat.seat_type,
        is_available=seat.is_available,
        reserved_by=seat.reserved_by,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        payload=item.payload,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "Booking Integrity Engine is running"}


@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    request: CreateBookingCommand,
    response: Response,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    try:
        result = orchestrator.create_booking(request)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc

    if not result.created:
        response.status_code = status.HTTP_200_OK
    return _booking_response(result.booking)


@router.get("/bookings", response_model=list[BookingResponse])
def list_bookings(
    limit: int = 50,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    safe_limit = max(1, min(limit, MAX_LIST_LIMIT))
    return [_booking_response(booking) for booking in orchestrator.list_bookings(limit=safe_limit)]


@router.get("/bookings/user/{user_id}", response_model=list[BookingResponse])
def list_user_bookings(
    user_id: str,
    limit: int = 50,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    safe_limit = max(1, min(limit, MAX_LIST_LIMIT))
    bookings = orchestrator.list_bookings(user_id=user_id, limit=safe_limit)
    return [_booking_response(booking) for booking in bookings]


@router.get("/bookings/by-reference/{booking_reference}", response_model=BookingResponse)
def get_booking_by_reference(
    booking_reference: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    try:
        booking = orchestrator.get_booking_by_reference(booking_reference)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    try:
        booking = orchestrator.get_booking(booking_id)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/payment", response_model=BookingResponse)
def confirm_payment(
    booking_id: str,
    request: PaymentConfirmationRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    try:
        booking = orchestrator.confirm_payment(
            booking_id=booking_id,
            payment_status=request.status,
            transaction_id=request.transaction_id,
        )
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: CancelBookingRequest | None = None,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    reason = request.reason if request else None
    try:
        booking = orchestrator.cancel_booking(booking_id, reason=reason)
    except BookingEngineError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/reconciliation/run", response_model=ReconciliationResponse)
def run_reconciliation(
    limit: int = RECONCILIATION_BATCH_SIZE,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    safe_limit = max(1, min(limit, 500))
    report = orchestrator.reconcile_unknown_outcomes(limit=safe_limit)
    return ReconciliationResponse(
        confirmed=report.confirmed,
        failed=report.failed,
        released=report.released,
        unresolved=report.unresolved,
    )


@router.post("/seats/seed", response_model=list[SeatResponse])
def seed_seats(
    request: SeedSeatsRequest,
    db: Session = Depends(get_db),
):
    seats = SeatReservationLedger(db).create_seats(
        venue_id=request.venue_id,
        section=request.section,
        rows=request.rows,
        seats_per_row=request.seats_per_row,
        seat_type=request.seat_type,
    )
    return [_seat_response(seat) for seat in seats]


@router.get("/seats/{seat_id}", response_model=SeatResponse)
def get_seat(seat_id: str, db: Session = Depends(get_db)):
    seat = SeatReservationLedger(db).get(seat_id)
    if not seat:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Seat not found",
        )
    return _seat_response(seat)


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    stmt = (
        select(OutboxEvent)
        .where(OutboxEvent.status == status_filter)
        .order_by(OutboxEvent.created_at)
        .limit(safe_limit)
    )
    events = list(db.execute(stmt).scalars().all())
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    item = db.execute(select(OutboxEvent).where(OutboxEvent.id == event_id)).scalar_one_or_none()
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    item.status = "PUBLISHED"
    item.published_at = datetime.now(timezone.utc)
    item.attempts += 1
    db.flush()
    return _outbox_response(item)
