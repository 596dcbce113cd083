import datetime as dt
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from frontdesk.domain.models import ReservationsData, ReservationView
from frontdesk.reservations.adapters.memory import InMemoryReservationStore
from frontdesk.reservations.adapters.sqlalchemy_store import SqlAlchemyReservationStore
from frontdesk.reservations.ports import ReservationStoreProtocol
from frontdesk.reservations.service import ReservationService

START = dt.datetime(2025, 6, 1, 8, 0, tzinfo=dt.timezone.utc)


class TickingClock:
    """Returns a later instant on every call so creation order is never tied."""

    def __init__(self, start: dt.datetime = START, step: dt.timedelta = dt.timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self) -> dt.datetime:
        self.now += self.step
        return self.now


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def memory_store() -> InMemoryReservationStore:
    return InMemoryReservationStore()


@pytest.fixture
def sql_store() -> Iterator[SqlAlchemyReservationStore]:
    store = SqlAlchemyReservationStore("sqlite:///:memory:")
    store.create_schema()
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlalchemy"])
def store(request: pytest.FixtureRequest) -> ReservationStoreProtocol:
    """Every service test runs once per store adapter."""
    if request.param == "memory":
        return request.getfixturevalue("memory_store")
    return request.getfixturevalue("sql_store")


@pytest.fixture
def service(store: ReservationStoreProtocol, clock: TickingClock) -> ReservationService:
    return ReservationService(store, clock=clock)


@pytest.fixture
def patient_payload() -> Callable[..., dict[str, Any]]:
    """Build a valid new-patient payload in wire (camelCase) form."""

    def build(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": "Lina Haddad",
            "phone": "0993198176",
            "age": 34,
            "bloodType": "O+",
        }
        payload.update(overrides)
        return payload

    return build


def all_views(data: ReservationsData) -> list[ReservationView]:
    current = [data.current_patient] if data.current_patient else []
    return current + data.waiting_patients + data.upcoming_patients + data.treatment_history


@pytest.fixture
def book(
    service: ReservationService, patient_payload: Callable[..., dict[str, Any]]
) -> Callable[..., ReservationView]:
    """Book a reservation for a fresh patient and return it as listed in the queues."""
    counter = iter(range(1, 10_000))

    def _book(
        booking_type: str = "walk-in",
        *,
        name: str | None = None,
        appointment_date: str = "2025-06-01",
    ) -> ReservationView:
        n = next(counter)
        phone = f"09{n:08d}"
        data = service.add_reservation(
            {
                "patient": patient_payload(name=name or f"Patient {n:03d}", phone=phone),
                "bookingType": booking_type,
                "appointmentDate": appointment_date,
            }
        )
        return next(v for v in all_views(data) if v.phone == phone)

    return _book
