from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class BookingItemResponse(BaseModel):
    id: str
    ticket_type_id: str | None = None
    seat_id: str | None = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class PaymentResponse(BaseModel):
    status: str
    method: str | None = None
    amount: Decimal
    currency: str
    transaction_id: str | None = None


class BookingResponse(BaseModel):
    booking_id: str
    booking_reference: str
    user_id: str
    event_id: str
    status: str
    total_amount: Decimal
    currency: str
    failure_reason: str | None = None
    cancellation_reason: str | None = None
    created_at: str
    confirmed_at: str | None = None
    cancelled_at: str | None = None
    items: list[BookingItemResponse]
    payment: PaymentResponse | None = None


class PaymentConfirmationRequest(BaseModel):
    status: Literal["completed", "failed"]
    transaction_id: str | None = None


class CancelBookingRequest(BaseModel):
    reason: str | None = None


class SeedSeatsRequest(BaseModel):
    venue_id: str
    section: str
    rows: list[str] = Field(min_length=1)
    seats_per_row: int = Field(gt=0)
    seat_type: str = "STANDARD"


class SeatResponse(BaseModel):
    id: str
    venue_id: str
    section: str
    row_number: str
    seat_number: str
    seat_type: str
    is_available: bool
    reserved_by: str | None = None


class ReconciliationResponse(BaseModel):
    confirmed: list[str]
    failed: list[str]
    released: list[str]
    unresolved: list[str]


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: str
    status: str
    attempts: int
    created_at: str
