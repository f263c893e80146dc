# booking_engine/infrastructure/gateways/inventory_gateway.py

import logging
import os
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

import httpx

from booking_engine.domain.exceptions import (
    EventNotFoundError,
    InventoryRejectedError,
    PermanentInfrastructureError,
    TransientInfrastructureError,
    ValidationError,
)


logger = logging.getLogger(__name__)

INVENTORY_SERVICE_URL = os.getenv("INVENTORY_SERVICE_URL", "http://localhost:8080/api")
INVENTORY_TIMEOUT_SECONDS = float(os.getenv("INVENTORY_TIMEOUT_SECONDS", "10"))
INVENTORY_MAX_ATTEMPTS = int(os.getenv("INVENTORY_MAX_ATTEMPTS", "3"))
INVENTORY_BACKOFF_SECONDS = float(os.getenv("INVENTORY_BACKOFF_SECONDS", "0.2"))

BOOKABLE_EVENT_STATUS = "ACTIVE"


@dataclass(frozen=True)
class EventSnapshot:
    event_id: str
    title: str | None
    status: str
    remaining_capacity: int | None
    base_price: Decimal | None

    @property
    def is_bookable(self) -> bool:
        return self.status == BOOKABLE_EVENT_STATUS


class AdjustmentOutcome(str, Enum):
    APPLIED = "APPLIED"
    NOT_APPLIED = "NOT_APPLIED"


def reserve_key(booking_reference: str) -> str:
    return f"{booking_reference}:reserve"


def release_key(booking_reference: str) -> str:
    return f"{booking_reference}:release"


class _RetryableResponse(Exception):
    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


class InventoryGateway:
    """
    Client of the remote inventory/event service.

    Transient failures (timeouts, connection errors, 5xx, 429) are retried
    with exponential backoff up to ``max_attempts``; exhausting the budget
    raises TransientInfrastructureError. Any other non-200 answer raises
    PermanentInfrastructureError straight away. The gateway never
    compensates anything itself.
    """

    def __init__(
        self,
        client: httpx.Client,
        max_attempts: int = INVENTORY_MAX_ATTEMPTS,
        backoff_seconds: float = INVENTORY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_env(cls) -> "InventoryGateway":
        client = httpx.Client(
            base_url=INVENTORY_SERVICE_URL,
            timeout=INVENTORY_TIMEOUT_SECONDS,
            headers={"Content-Type": "application/json"},
        )
        return cls(client)

    def close(self) -> None:
        self.client.close()

    def validate(self, event_id: str) -> EventSnapshot:
        try:
            response = self._send("GET", f"/events/{event_id}", allow_not_found=True)
        except InventoryRejectedError as exc:
            if 400 <= exc.status_code < 500:
                raise ValidationError(
                    f"Inventory service refused event {event_id}: HTTP {exc.status_code}"
                ) from exc
            raise
        if response.status_code == 404:
            raise EventNotFoundError(f"Event {event_id} not found")

        try:
            data = response.json()
            if not isinstance(data, dict):
                raise TypeError(f"expected an object, got {type(data).__name__}")
            return EventSnapshot(
                event_id=str(event_id),
                title=data.get("title"),
                status=str(data.get("status", "")),
                remaining_capacity=_first_int(data, "remainingCapacity", "maxAttendees", "capacity"),
                base_price=_first_decimal(data, "basePrice", "ticketPrice"),
            )
        except (ValueError, TypeError, ArithmeticError) as exc:
            raise PermanentInfrastructureError(
                f"Inventory service sent an unreadable event {event_id}: {exc}"
            ) from exc

    def adjust_capacity(
        self,
        event_id: str,
        delta: int,
        idempotency_key: str,
    ) -> None:
        """Positive delta books places, negative delta gives them back."""
        self._send(
            "PATCH",
            f"/events/{event_id}/capacity",
            json={"bookedSeats": delta},
            headers={"Idempotency-Key": idempotency_key},
        )
        logger.info(
            "Capacity adjusted. event_id=%s delta=%s key=%s",
            event_id,
            delta,
            idempotency_key,
        )

    def lookup_adjustment(
        self,
        event_id: str,
        idempotency_key: str,
    ) -> AdjustmentOutcome:
        response = self._send(
            "GET",
            f"/events/{event_id}/capacity/adjustments/{idempotency_key}",
            allow_not_found=True,
        )
        if response.status_code == 404:
            return AdjustmentOutcome.NOT_APPLIED
        return AdjustmentOutcome.APPLIED

    def _send(
        self,
        method: str,
        url: str,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.client.request(method, url, **kwargs)
                if _is_transient_status(response.status_code):
                    raise _RetryableResponse(response)
            except (httpx.TransportError, _RetryableResponse) as exc:
                if attempt == self.max_attempts:
                    logger.error(
                        "Inventory call %s %s failed after %s attempts: %s",
                        method,
                        url,
                        self.max_attempts,
                        exc,
                    )
                    raise TransientInfrastructureError(
                        f"Inventory service unavailable for {method} {url}: {exc}"
                    ) from exc

                delay = self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "Inventory call %s %s failed (attempt %s/%s): %s. Retrying in %.2f seconds...",
                    method,
                    url,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
                continue

            if response.status_code == 200:
                return response
            if response.status_code == 404 and allow_not_found:
                return response

            raise InventoryRejectedError(
                response.status_code,
                f"Inventory service rejected {method} {url}: "
                f"HTTP {response.status_code} {response.text}",
            )

        # range() above always returns or raises.
        raise AssertionError("unreachable")


def _is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def _first_int(data: dict, *keys: str) -> int | None:
    for key in keys:
        if data.get(key) is not None:
            return int(data[key])
    return None


def _first_decimal(data: dict, *keys: str) -> Decimal | None:
    for key in keys:
        if data.get(key) is not None:
            return Decimal(str(data[key]))
    return None
