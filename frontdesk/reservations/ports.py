import datetime as dt
from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import AbstractContextManager
from typing import Any, Protocol

from frontdesk.domain.models import (
    BookingType,
    HistoryPage,
    HistoryQuery,
    PatientInput,
    PatientProfile,
    QueueFilter,
    QueueStats,
    Reservation,
    ReservationInput,
    ReservationsData,
    ReservationStatus,
    ReservationView,
)


class AbstractReservationService(ABC):
    """Front-desk operations over patient profiles and the reservation lifecycle."""

    @abstractmethod
    def list_patients(self, search: str | None = None) -> list[PatientProfile]:
        """List patient profiles ordered by name.

        Args:
            search: Case-insensitive substring matched against name or phone.

        Returns:
            Profiles with their linked reservations, newest first.
        """

    @abstractmethod
    def create_patient(self, payload: PatientInput | Mapping[str, Any]) -> PatientProfile:
        """Create a patient profile.

        Raises:
            ValidationError: If the payload is malformed.
            DuplicatePhoneError: If another profile already uses the phone number.
        """

    @abstractmethod
    def update_patient(
        self, patient_id: str, payload: PatientInput | Mapping[str, Any]
    ) -> PatientProfile:
        """Replace a profile's details.

        Raises:
            ValidationError: If the payload is malformed.
            DuplicatePhoneError: If another profile already uses the phone number.
            NotFoundError: If the profile does not exist.
        """

    @abstractmethod
    def delete_patient(self, patient_id: str, *, cascade: bool | None = None) -> None:
        """Delete a profile.

        Args:
            patient_id: The profile to delete.
            cascade: Also delete linked reservations. ``None`` uses the
                configured deletion policy.

        Raises:
            NotFoundError: If the profile does not exist.
            ConflictError: If reservations are linked and cascading is off.
        """

    @abstractmethod
    def get_reservations(self, queue_filter: QueueFilter | None = None) -> ReservationsData:
        """Return the current, waiting, upcoming and history queues in display order."""

    @abstractmethod
    def add_reservation(self, payload: ReservationInput | Mapping[str, Any]) -> ReservationsData:
        """Book a reservation, creating the patient profile first if one is supplied.

        Raises:
            ValidationError: If the payload is malformed.
            DuplicatePhoneError: If the new patient's phone is already in use.
            NotFoundError: If the selected patient does not exist.
        """

    @abstractmethod
    def mark_arrived(self, reservation_id: str) -> ReservationsData:
        """Move an upcoming reservation to the waiting queue.

        Raises:
            NotFoundError: If no upcoming reservation has this id.
        """

    @abstractmethod
    def start_treatment(self, reservation_id: str, replace_current: bool = False) -> ReservationsData:
        """Promote a waiting reservation to current.

        Args:
            reservation_id: The waiting reservation to treat.
            replace_current: Send the reservation being treated back to the
                waiting queue instead of failing.

        Raises:
            NotFoundError: If no waiting reservation has this id.
            ConflictError: If a treatment is in progress and ``replace_current`` is false.
        """

    @abstractmethod
    def finish_treatment(
        self, treatment_note: str, xray_image_base64: str | None = None
    ) -> ReservationsData:
        """Complete the current treatment.

        Raises:
            ValidationError: If the note is shorter than 5 characters.
            ConflictError: If no treatment is in progress.
        """

    @abstractmethod
    def cancel_reservation(self, reservation_id: str) -> ReservationsData:
        """Remove an upcoming or waiting reservation.

        Raises:
            NotFoundError: If the reservation does not exist.
            ConflictError: If it is current or completed.
        """

    @abstractmethod
    def delete_reservation(self, reservation_id: str) -> ReservationsData:
        """Remove any reservation that is not being treated, history included.

        Raises:
            NotFoundError: If the reservation does not exist.
            ConflictError: If it is current.
        """

    @abstractmethod
    def queue_stats(self) -> QueueStats:
        """Count the reservations in each queue."""

    @abstractmethod
    def search_history(self, query: HistoryQuery | Mapping[str, Any] | None = None) -> HistoryPage:
        """Filter and paginate completed treatments."""

    @abstractmethod
    def health_check(self) -> bool:
        """Check if the store is reachable.

        Returns:
            True if the store answers, False otherwise.
        """

    @abstractmethod
    def close(self) -> None:
        """Release resources held by this service."""


class StoreSessionProtocol(Protocol):
    """Reads and writes performed inside one store transaction."""

    def get_profile(self, profile_id: str) -> PatientProfile | None:
        """Fetch a profile with its linked reservations."""
        ...

    def find_profile_by_phone(
        self, phone: str, exclude_id: str | None = None
    ) -> PatientProfile | None:
        """Find the profile using ``phone``, ignoring ``exclude_id``."""
        ...

    def add_profile(self, data: PatientInput, created_at: dt.datetime) -> PatientProfile:
        """Insert a profile."""
        ...

    def update_profile(self, profile_id: str, data: PatientInput) -> PatientProfile:
        """Overwrite a profile's details."""
        ...

    def delete_profile(self, profile_id: str) -> None:
        """Delete a profile that has no linked reservations."""
        ...

    def count_reservations(self, profile_id: str) -> int:
        """Count the reservations linked to a profile."""
        ...

    def delete_reservations_for(self, profile_id: str) -> int:
        """Delete every reservation linked to a profile, returning how many went."""
        ...

    def list_profiles(self, search: str | None = None) -> list[PatientProfile]:
        """List profiles by name, optionally matching name or phone."""
        ...

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        """Fetch a reservation."""
        ...

    def find_current(self) -> Reservation | None:
        """Return the most recently created current reservation."""
        ...

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
        """Insert a reservation."""
        ...

    def update_reservation(self, reservation_id: str, **changes: Any) -> Reservation:
        """Apply field changes to a reservation."""
        ...

    def delete_reservation(self, reservation_id: str) -> None:
        """Delete a reservation."""
        ...

    def list_reservations(self, status: ReservationStatus) -> list[ReservationView]:
        """List the reservations in one queue, in that queue's display order."""
        ...


class ReservationStoreProtocol(Protocol):
    """Relational store holding patient profiles and reservations."""

    def transaction(self) -> AbstractContextManager[StoreSessionProtocol]:
        """Open a transaction; everything in the block commits together or not at all."""
        ...

    def health_check(self) -> bool:
        """Check if the store is reachable."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...
