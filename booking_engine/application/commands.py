from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class BookingItemCommand(BaseModel):
    ticket_type_id: str | None = None
    seat_id: str | None = None
    quantity: int = Field(default=1, gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_seat_per_seated_item(self) -> "BookingItemCommand":
        if self.seat_id is not None and self.quantity != 1:
            raise ValueError("A seated item books exactly one seat")
        return self


class CreateBookingCommand(BaseModel):
    user_id: str
    event_id: str
    booking_reference: str | None = None
    currency: str = Field(default="USD", min_length=3, max_length=8)
    payment_method: str | None = None
    items: list[BookingItemCommand] = Field(min_length=1)

    @model_validator(mode="after")
    def _distinct_seats(self) -> "CreateBookingCommand":
        seat_ids = [item.seat_id for item in self.items if item.seat_id]
        if len(seat_ids) != len(set(seat_ids)):
            raise ValueError("The same seat appears twice in one booking")
        return self

    @property
    def seat_ids(self) -> list[str]:
        return [item.seat_id for item in self.items if item.seat_id]

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def fingerprint_payload(self) -> dict:
        return self.model_dump(mode="json", exclude={"booking_reference"})
