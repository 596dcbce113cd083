import datetime as dt
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from frontdesk.domain.exceptions import ConflictError, DuplicatePhoneError
from frontdesk.domain.models import (
    BookingType,
    PatientInput,
    PatientProfile,
    Reservation,
    ReservationStatus,
    ReservationView,
)
from frontdesk.reservations.adapters.queue_ordering import sort_queue


class InMemoryReservationStore:
    """In-memory implementation of ``ReservationStoreProtocol``.

    Enforces the same constraints as the relational schema (unique phone,
    one current reservation, no orphaned reservations) and rolls back every
    change made inside a transaction that raises.

    Call ``inject_failure`` to make a session method raise on its n-th call,
    which is how tests observe that a half-done transaction leaves no trace.
    """

    def __init__(self) -> None:
        self.profiles: dict[str, PatientProfile] = {}
        self.reservations: dict[str, Reservation] = {}
        self.closed: bool = False
        self.healthy: bool = True

        self._failures: dict[str, tuple[int, Exception]] = {}
        self._calls: dict[str, int] = {}

    def inject_failure(self, method: str, *, on_call: int = 1, error: Exception | None = None) -> None:
        self._failures[method] = (on_call, error or RuntimeError(f"{method} failed"))
        self._calls[method] = 0

    def _maybe_fail(self, method: str) -> None:
        if method not in self._failures:
            return
        self._calls[method] += 1
        on_call, error = self._failures[method]
        if self._calls[method] == on_call:
            del self._failures[method]
            raise error

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStoreSession"]:
        profiles = dict(self.profiles)
        reservations = dict(self.reservations)
        try:
            yield InMemoryStoreSession(self)
        except BaseException:
            self.profiles = profiles
            self.reservations = reservations
            raise

    def health_check(self) -> bool:
        return self.healthy

    def close(self) -> None:
        self.closed = True


class InMemoryStoreSession:
    def __init__(self, store: InMemoryReservationStore) -> None:
        self._store = store

    def _linked(self, profile: PatientProfile) -> PatientProfile:
        linked = [r for r in self._store.reservations.values() if r.patient_id == profile.id]
        linked.sort(key=lambda r: r.created_at, reverse=True)
        return profile.model_copy(update={"linked_reservations": linked})

    def get_profile(self, profile_id: str) -> PatientProfile | None:
        self._store._maybe_fail("get_profile")
        profile = self._store.profiles.get(profile_id)
        return self._linked(profile) if profile else None

    def find_profile_by_phone(
        self, phone: str, exclude_id: str | None = None
    ) -> PatientProfile | None:
        for profile in self._store.profiles.values():
            if profile.phone == phone and profile.id != exclude_id:
                return self._linked(profile)
        return None

    def add_profile(self, data: PatientInput, created_at: dt.datetime) -> PatientProfile:
        self._store._maybe_fail("add_profile")
        if any(p.phone == data.phone for p in self._store.profiles.values()):
            raise DuplicatePhoneError(data.phone)
        profile = PatientProfile(
            id=str(uuid.uuid4()),
            name=data.name,
            phone=data.phone,
            age=data.age,
            blood_type=data.blood_type,
            xray_image_base64=data.xray_image_base64,
            created_at=created_at,
        )
        self._store.profiles[profile.id] = profile
        return profile

    def update_profile(self, profile_id: str, data: PatientInput) -> PatientProfile:
        self._store._maybe_fail("update_profile")
        if any(
            p.phone == data.phone and p.id != profile_id for p in self._store.profiles.values()
        ):
            raise DuplicatePhoneError(data.phone)
        profile = self._store.profiles[profile_id].model_copy(
            update={
                "name": data.name,
                "phone": data.phone,
                "age": data.age,
                "blood_type": data.blood_type,
                "xray_image_base64": data.xray_image_base64,
            }
        )
        self._store.profiles[profile_id] = profile
        return self._linked(profile)

    def delete_profile(self, profile_id: str) -> None:
        self._store._maybe_fail("delete_profile")
        if self.count_reservations(profile_id):
            raise ConflictError("Patient still has linked reservations")
        del self._store.profiles[profile_id]

    def count_reservations(self, profile_id: str) -> int:
        return sum(1 for r in self._store.reservations.values() if r.patient_id == profile_id)

    def delete_reservations_for(self, profile_id: str) -> int:
        doomed = [r.id for r in self._store.reservations.values() if r.patient_id == profile_id]
        for reservation_id in doomed:
            del self._store.reservations[reservation_id]
        return len(doomed)

    def list_profiles(self, search: str | None = None) -> list[PatientProfile]:
        term = (search or "").lower()
        profiles = [
            p
            for p in self._store.profiles.values()
            if not term or term in p.name.lower() or term in p.phone.lower()
        ]
        profiles.sort(key=lambda p: p.name)
        return [self._linked(p) for p in profiles]

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        self._store._maybe_fail("get_reservation")
        return self._store.reservations.get(reservation_id)

    def find_current(self) -> Reservation | None:
        current = sort_queue(
            ReservationStatus.CURRENT,
            (r for r in self._store.reservations.values() if r.status is ReservationStatus.CURRENT),
        )
        return current[0] if current else None

    def add_reservation(
        self,
        *,
        patient_id: str,
        booking_type: BookingType,
        appointment_date: dt.date,
        status: ReservationStatus,
        has_arrived: bool,
        created_at: dt.datetime,
    ) -> Reservation:
        self._store._maybe_fail("add_reservation")
        if patient_id not in self._store.profiles:
            raise ConflictError("Reservation must belong to an existing patient")
        reservation = Reservation(
            id=str(uuid.uuid4()),
            patient_id=patient_id,
            booking_type=booking_type,
            status=status,
            appointment_date=appointment_date,
            has_arrived=has_arrived,
            created_at=created_at,
        )
        self._check_single_current(reservation)
        self._store.reservations[reservation.id] = reservation
        return reservation

    def update_reservation(self, reservation_id: str, **changes: Any) -> Reservation:
        self._store._maybe_fail("update_reservation")
        reservation = self._store.reservations[reservation_id].model_copy(update=changes)
        self._check_single_current(reservation)
        self._store.reservations[reservation_id] = reservation
        return reservation

    def delete_reservation(self, reservation_id: str) -> None:
        self._store._maybe_fail("delete_reservation")
        del self._store.reservations[reservation_id]

    def list_reservations(self, status: ReservationStatus) -> list[ReservationView]:
        self._store._maybe_fail("list_reservations")
        views: list[ReservationView] = []
        for r in self._store.reservations.values():
            if r.status is not status:
                continue
            patient = self._store.profiles[r.patient_id]
            views.append(
                ReservationView(
                    **r.model_dump(),
                    name=patient.name,
                    phone=patient.phone,
                    age=patient.age,
                    blood_type=patient.blood_type,
                )
            )
        return sort_queue(status, views)

    def _check_single_current(self, reservation: Reservation) -> None:
        if reservation.status is not ReservationStatus.CURRENT:
            return
        for other in self._store.reservations.values():
            if other.status is ReservationStatus.CURRENT and other.id != reservation.id:
                raise ConflictError("Another treatment is already in progress")
