"""Integration tests for the SQLAlchemy reservation store.

These run against a file-backed SQLite database by default. Point
``FRONTDESK_TEST_DATABASE_URL`` (in .env or the environment) at another
database to run them there instead; its tables are dropped after each test.

Run explicitly with::

    pytest -m integration
"""

import datetime as dt
import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from dotenv import load_dotenv
from sqlalchemy import text

from frontdesk.domain.exceptions import ConflictError, DuplicatePhoneError
from frontdesk.domain.models import BookingType, PatientInput, ReservationStatus
from frontdesk.reservations.adapters.sqlalchemy_store import Base, SqlAlchemyReservationStore
from frontdesk.reservations.service import ReservationService

load_dotenv(override=True)

_T0 = dt.datetime(2025, 6, 1, 8, 0, tzinfo=dt.timezone.utc)

pytestmark = pytest.mark.integration


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SqlAlchemyReservationStore]:
    url = os.environ.get("FRONTDESK_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'frontdesk.db'}"
    store = SqlAlchemyReservationStore(url)
    store.create_schema()
    yield store
    Base.metadata.drop_all(store.engine)
    store.close()


@pytest.fixture
def patient_id(store: SqlAlchemyReservationStore) -> str:
    with store.transaction() as session:
        profile = session.add_profile(
            PatientInput(name="Lina Haddad", phone="0993198176", age=34, blood_type="AB-"),
            created_at=_T0,
        )
    return profile.id


def _add(
    store: SqlAlchemyReservationStore,
    patient_id: str,
    status: ReservationStatus,
    booking_type: BookingType = BookingType.WALK_IN,
    minute: int = 0,
) -> str:
    with store.transaction() as session:
        return session.add_reservation(
            patient_id=patient_id,
            booking_type=booking_type,
            appointment_date=_T0.date(),
            status=status,
            has_arrived=status is not ReservationStatus.UPCOMING,
            created_at=_T0 + dt.timedelta(minutes=minute),
        ).id


class TestSchemaConstraints:
    def test_duplicate_phone_is_rejected_by_the_database(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        with pytest.raises(DuplicatePhoneError):
            with store.transaction() as session:
                session.add_profile(
                    PatientInput(name="Someone Else", phone="0993198176", age=20, blood_type="O+"),
                    created_at=_T0,
                )

        with store.transaction() as session:
            assert [p.id for p in session.list_profiles()] == [patient_id]

    def test_second_current_reservation_is_rejected(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        _add(store, patient_id, ReservationStatus.CURRENT)
        waiting_id = _add(store, patient_id, ReservationStatus.WAITING, minute=1)

        with pytest.raises(ConflictError, match="already in progress"):
            with store.transaction() as session:
                session.update_reservation(waiting_id, status=ReservationStatus.CURRENT)

        with store.transaction() as session:
            reservation = session.get_reservation(waiting_id)
        assert reservation is not None
        assert reservation.status is ReservationStatus.WAITING

    def test_profile_with_reservations_cannot_be_deleted(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        _add(store, patient_id, ReservationStatus.UPCOMING, BookingType.ADVANCE)

        with pytest.raises(ConflictError):
            with store.transaction() as session:
                session.delete_profile(patient_id)

        with store.transaction() as session:
            assert session.get_profile(patient_id) is not None

    def test_enum_columns_store_storage_codes(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        _add(store, patient_id, ReservationStatus.UPCOMING, BookingType.WALK_IN)

        with store.engine.connect() as conn:
            blood_type = conn.execute(text("SELECT blood_type FROM patient_profiles")).scalar_one()
            row = conn.execute(text("SELECT booking_type, status FROM reservations")).one()

        assert blood_type == "AB_NEG"
        assert tuple(row) == ("WALK_IN", "UPCOMING")


class TestSession:
    def test_waiting_queue_order_comes_from_the_query(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        advance = _add(store, patient_id, ReservationStatus.WAITING, BookingType.ADVANCE, minute=0)
        walk_in = _add(store, patient_id, ReservationStatus.WAITING, BookingType.WALK_IN, minute=1)
        emergency = _add(store, patient_id, ReservationStatus.WAITING, BookingType.EMERGENCY, minute=2)

        with store.transaction() as session:
            waiting = session.list_reservations(ReservationStatus.WAITING)

        assert [r.id for r in waiting] == [emergency, walk_in, advance]
        assert all(r.name == "Lina Haddad" for r in waiting)

    def test_timestamps_come_back_as_utc(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        reservation_id = _add(store, patient_id, ReservationStatus.WAITING)

        with store.transaction() as session:
            reservation = session.get_reservation(reservation_id)

        assert reservation is not None
        assert reservation.created_at == _T0
        assert reservation.created_at.utcoffset() == dt.timedelta(0)

    def test_search_escapes_like_wildcards(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        with store.transaction() as session:
            assert session.list_profiles("%") == []
            assert [p.id for p in session.list_profiles("haddad")] == [patient_id]

    def test_cascade_removes_reservations(
        self, store: SqlAlchemyReservationStore, patient_id: str
    ) -> None:
        _add(store, patient_id, ReservationStatus.WAITING)
        _add(store, patient_id, ReservationStatus.UPCOMING, BookingType.ADVANCE, minute=1)

        with store.transaction() as session:
            assert session.delete_reservations_for(patient_id) == 2
            session.delete_profile(patient_id)

        with store.transaction() as session:
            assert session.list_profiles() == []


class TestStoreLifecycle:
    def test_health_check(self, store: SqlAlchemyReservationStore) -> None:
        assert store.health_check() is True

    def test_health_check_reports_unreachable_database(self, tmp_path: Path) -> None:
        store = SqlAlchemyReservationStore(f"sqlite:///{tmp_path / 'missing' / 'db.sqlite'}")

        assert store.health_check() is False
        store.close()

    def test_data_survives_a_new_store_on_the_same_file(self, tmp_path: Path) -> None:
        url = f"sqlite:///{tmp_path / 'persist.db'}"
        first = SqlAlchemyReservationStore(url)
        first.create_schema()
        service = ReservationService(first)
        service.create_patient(
            {"name": "Lina Haddad", "phone": "0993198176", "age": 34, "bloodType": "O+"}
        )
        first.close()

        second = SqlAlchemyReservationStore(url)
        try:
            assert [p.phone for p in ReservationService(second).list_patients()] == ["0993198176"]
        finally:
            second.close()
