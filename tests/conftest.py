import json
import os
import threading
from decimal import Decimal

# Keep the module-level engine away from Postgres while tests import the app.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
from fastapi.testclient import TestClient

from booking_engine.api.routes.routes import get_db, get_orchestrator
from booking_engine.application.booking_orchestrator import BookingOrchestrator
from booking_engine.domain.reference import ReferenceGenerator
from booking_engine.infrastructure.db.models import Base
from booking_engine.infrastructure.db.session import (
    build_engine,
    build_session_factory,
    session_scope,
)
from booking_engine.infrastructure.gateways.inventory_gateway import InventoryGateway
from booking_engine.infrastructure.repositories.seat_ledger import SeatReservationLedger
from booking_engine.main import app


INVENTORY_BASE_URL = "http://inventory.test"


class FakeInventoryService:
    """
    In-process stand-in for the remote inventory service, served through
    httpx.MockTransport. Faults are queued per HTTP method and consumed in
    order: an int answers with that status, "timeout" raises before the
    request is applied, "lost_response" applies a PATCH and then times out.
    before_next_patch runs once, inside the handler, right before the next
    capacity PATCH is applied.
    """

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.applied: dict[str, int] = {}
        self.requests: list[tuple[str, str]] = []
        self.faults: list[tuple[str, object]] = []
        self.before_next_patch = None
        self._lock = threading.RLock()

    def add_event(self, event_id, capacity=100, base_price="50.00", status="ACTIVE"):
        self.events[event_id] = {
            "id": event_id,
            "title": f"Event {event_id}",
            "status": status,
            "maxAttendees": capacity,
            "basePrice": float(Decimal(base_price)),
            "bookedSeats": 0,
        }

    def fail_next(self, method, fault, times=1):
        self.faults.extend([(method, fault)] * times)

    def booked(self, event_id) -> int:
        return self.events[event_id]["bookedSeats"]

    def patch_calls(self) -> list[tuple[str, str]]:
        return [call for call in self.requests if call[0] == "PATCH"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append((request.method, request.url.path))
            fault = self._take_fault(request.method)
            if fault == "timeout":
                raise httpx.ReadTimeout("injected timeout", request=request)
            if isinstance(fault, int):
                return httpx.Response(fault, json={"error": "injected"})

            parts = request.url.path.strip("/").split("/")
            event = self.events.get(parts[1]) if len(parts) > 1 else None
            if event is None:
                return httpx.Response(404, json={"error": "Event not found"})

            if request.method == "GET" and len(parts) == 2:
                body = dict(event)
                body["remainingCapacity"] = event["maxAttendees"] - event["bookedSeats"]
                return httpx.Response(200, json=body)

            if request.method == "PATCH" and parts[2:] == ["capacity"]:
                hook, self.before_next_patch = self.before_next_patch, None
                if hook is not None:
                    hook()
                response = self._apply(request, event)
                if fault == "lost_response":
                    raise httpx.ReadTimeout("response lost", request=request)
                return response

            if request.method == "GET" and parts[2:4] == ["capacity", "adjustments"]:
                if parts[4] in self.applied:
                    return httpx.Response(200, json={"applied": True})
                return httpx.Response(404, json={"applied": False})

            return httpx.Response(405)

    def _apply(self, request: httpx.Request, event: dict) -> httpx.Response:
        key = request.headers["Idempotency-Key"]
        if key in self.applied:
            return httpx.Response(200, json={"message": "already applied"})

        delta = json.loads(request.content)["bookedSeats"]
        if event["bookedSeats"] + delta > event["maxAttendees"]:
            return httpx.Response(409, json={"error": "Sold out"})

        event["bookedSeats"] += delta
        self.applied[key] = delta
        return httpx.Response(200, json={"message": "Event capacity updated successfully"})

    def _take_fault(self, method):
        for index, (fault_method, fault) in enumerate(self.faults):
            if fault_method == method:
                del self.faults[index]
                return fault
        return None


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'bookings.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def inventory():
    service = FakeInventoryService()
    service.add_event("E1", capacity=100, base_price="50.00")
    return service


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def gateway(inventory, sleeps):
    client = httpx.Client(
        base_url=INVENTORY_BASE_URL,
        transport=httpx.MockTransport(inventory.handler),
    )
    gateway = InventoryGateway(client, max_attempts=3, backoff_seconds=0.2, sleep=sleeps.append)
    yield gateway
    gateway.close()


@pytest.fixture
def orchestrator(gateway, session_factory):
    return BookingOrchestrator(
        gateway=gateway,
        session_factory=session_factory,
        reference_generator=ReferenceGenerator(),
    )


@pytest.fixture
def seat_ids(session_factory):
    with session_scope(session_factory) as db:
        seats = SeatReservationLedger(db).create_seats(
            venue_id="venue-1",
            section="FLOOR",
            rows=["A"],
            seats_per_row=5,
        )
        return [seat.id for seat in seats]


@pytest.fixture
def client(orchestrator, session_factory):
    def _get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
