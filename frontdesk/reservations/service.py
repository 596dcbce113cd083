import datetime as dt
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from loguru import logger

from frontdesk.config import PatientDeletePolicy
from frontdesk.domain.exceptions import (
    ConflictError,
    DuplicatePhoneError,
    FrontDeskError,
    NotFoundError,
    StoreUnavailableError,
)
from frontdesk.domain.models import (
    BookingType,
    FinishTreatmentInput,
    HistoryPage,
    HistoryQuery,
    PatientInput,
    PatientProfile,
    QueueFilter,
    QueueStats,
    ReservationInput,
    ReservationsData,
    ReservationStatus,
    parse_payload,
)
from frontdesk.reservations.adapters.queue_ordering import (
    filter_history,
    filter_queue,
    paginate,
    sort_queue,
)
from frontdesk.reservations.ports import (
    AbstractReservationService,
    ReservationStoreProtocol,
    StoreSessionProtocol,
)

DEFAULT_HISTORY_PAGE_SIZE = 6


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ReservationService(AbstractReservationService):
    """Reservation lifecycle and queue projections over a ReservationStoreProtocol.

    Every operation runs inside a single store transaction, so a failure at
    any step leaves the store as it was.
    """

    def __init__(
        self,
        store: ReservationStoreProtocol,
        *,
        delete_policy: PatientDeletePolicy = PatientDeletePolicy.BLOCK,
        history_page_size: int = DEFAULT_HISTORY_PAGE_SIZE,
        clock: Callable[[], dt.datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._delete_policy = delete_policy
        self._history_page_size = history_page_size
        self._clock = clock

    @contextmanager
    def _session(self, action: str) -> Iterator[StoreSessionProtocol]:
        try:
            with self._store.transaction() as session:
                yield session
        except FrontDeskError:
            raise
        except Exception as exc:
            raise StoreUnavailableError(f"{action} failed: {exc}") from exc

    # Patient profiles

    def list_patients(self, search: str | None = None) -> list[PatientProfile]:
        term = (search or "").strip() or None
        with self._session("List patients") as session:
            profiles = session.list_profiles(term)
        logger.debug("Listed {} patient profile(s)", len(profiles))
        return profiles

    def create_patient(self, payload: PatientInput | Mapping[str, Any]) -> PatientProfile:
        data = parse_payload(PatientInput, payload)
        logger.info("Creating patient profile")

        with self._session("Create patient") as session:
            self._ensure_unique_phone(session, data.phone)
            profile = session.add_profile(data, created_at=self._clock())

        logger.info("Patient profile created: id={}", profile.id)
        return profile

    def update_patient(
        self, patient_id: str, payload: PatientInput | Mapping[str, Any]
    ) -> PatientProfile:
        data = parse_payload(PatientInput, payload)
        logger.info("Updating patient profile: id={}", patient_id)

        with self._session("Update patient") as session:
            if session.get_profile(patient_id) is None:
                raise NotFoundError("Patient not found", entity="patient", entity_id=patient_id)
            self._ensure_unique_phone(session, data.phone, exclude_id=patient_id)
            return session.update_profile(patient_id, data)

    def delete_patient(self, patient_id: str, *, cascade: bool | None = None) -> None:
        if cascade is None:
            cascade = self._delete_policy is PatientDeletePolicy.CASCADE

        with self._session("Delete patient") as session:
            if session.get_profile(patient_id) is None:
                raise NotFoundError("Patient not found", entity="patient", entity_id=patient_id)

            linked = session.count_reservations(patient_id)
            if linked and not cascade:
                logger.warning(
                    "Refusing to delete patient {} with {} linked reservation(s)", patient_id, linked
                )
                raise ConflictError(
                    f"Patient has {linked} linked reservation(s) and cannot be deleted"
                )
            if linked:
                removed = session.delete_reservations_for(patient_id)
                logger.warning(
                    "Cascade delete of patient {} discarded {} reservation(s) including history",
                    patient_id,
                    removed,
                )
            session.delete_profile(patient_id)

        logger.info("Patient profile deleted: id={}", patient_id)

    def _ensure_unique_phone(
        self, session: StoreSessionProtocol, phone: str, exclude_id: str | None = None
    ) -> None:
        if session.find_profile_by_phone(phone, exclude_id=exclude_id) is not None:
            raise DuplicatePhoneError(phone)

    # Queues

    def get_reservations(self, queue_filter: QueueFilter | None = None) -> ReservationsData:
        with self._session("Load reservations") as session:
            data = self._load_queues(session)

        if queue_filter is None:
            return data
        return data.model_copy(
            update={
                "waiting_patients": filter_queue(data.waiting_patients, queue_filter),
                "upcoming_patients": filter_queue(data.upcoming_patients, queue_filter),
            }
        )

    def _load_queues(self, session: StoreSessionProtocol) -> ReservationsData:
        current = session.list_reservations(ReservationStatus.CURRENT)
        upcoming = session.list_reservations(ReservationStatus.UPCOMING)
        return ReservationsData(
            current_patient=current[0] if current else None,
            waiting_patients=session.list_reservations(ReservationStatus.WAITING),
            upcoming_patients=sort_queue(ReservationStatus.UPCOMING, upcoming),
            treatment_history=session.list_reservations(ReservationStatus.COMPLETED),
        )

    def queue_stats(self) -> QueueStats:
        data = self.get_reservations()
        return QueueStats(
            waiting=len(data.waiting_patients),
            upcoming=len(data.upcoming_patients),
            emergency=sum(
                1 for r in data.waiting_patients if r.booking_type is BookingType.EMERGENCY
            ),
            completed=len(data.treatment_history),
            has_current=data.current_patient is not None,
        )

    def search_history(self, query: HistoryQuery | Mapping[str, Any] | None = None) -> HistoryPage:
        parsed = parse_payload(HistoryQuery, query or {})
        with self._session("Search history") as session:
            history = session.list_reservations(ReservationStatus.COMPLETED)
        return paginate(filter_history(history, parsed), parsed.page, self._history_page_size)

    # Lifecycle

    def add_reservation(self, payload: ReservationInput | Mapping[str, Any]) -> ReservationsData:
        data = parse_payload(ReservationInput, payload)
        logger.info(
            "Booking reservation: type={}, date={}",
            data.booking_type.value,
            data.appointment_date,
        )

        with self._session("Book reservation") as session:
            patient_id = data.patient_id
            if not patient_id and data.patient is not None:
                self._ensure_unique_phone(session, data.patient.phone)
                patient_id = session.add_profile(data.patient, created_at=self._clock()).id
                logger.info("Patient profile created for booking: id={}", patient_id)

            if not patient_id or session.get_profile(patient_id) is None:
                raise NotFoundError(
                    "Selected patient was not found", entity="patient", entity_id=patient_id
                )

            arrived = data.booking_type.arrives_on_booking
            reservation = session.add_reservation(
                patient_id=patient_id,
                booking_type=data.booking_type,
                appointment_date=data.appointment_date,
                status=ReservationStatus.WAITING if arrived else ReservationStatus.UPCOMING,
                has_arrived=arrived,
                created_at=self._clock(),
            )
            logger.info(
                "Reservation booked: id={}, status={}", reservation.id, reservation.status.value
            )
            return self._load_queues(session)

    def mark_arrived(self, reservation_id: str) -> ReservationsData:
        with self._session("Mark arrived") as session:
            reservation = session.get_reservation(reservation_id)
            if reservation is None or reservation.status is not ReservationStatus.UPCOMING:
                raise NotFoundError(
                    "Upcoming patient not found", entity="reservation", entity_id=reservation_id
                )

            session.update_reservation(
                reservation_id, status=ReservationStatus.WAITING, has_arrived=True
            )
            logger.info("Reservation arrived: id={}", reservation_id)
            return self._load_queues(session)

    def start_treatment(self, reservation_id: str, replace_current: bool = False) -> ReservationsData:
        with self._session("Start treatment") as session:
            reservation = session.get_reservation(reservation_id)
            if reservation is None or reservation.status is not ReservationStatus.WAITING:
                raise NotFoundError(
                    "Waiting patient not found", entity="reservation", entity_id=reservation_id
                )

            current = session.find_current()
            if current is not None and not replace_current:
                logger.warning(
                    "Treatment {} already in progress; not replacing with {}",
                    current.id,
                    reservation_id,
                )
                raise ConflictError("Current patient exists and replacement is not allowed")

            if current is not None:
                # Demote first: the store admits at most one current row at a time.
                session.update_reservation(
                    current.id, status=ReservationStatus.WAITING, has_arrived=True
                )
                logger.info("Reservation {} returned to the waiting queue", current.id)

            session.update_reservation(
                reservation_id, status=ReservationStatus.CURRENT, has_arrived=True
            )
            logger.info("Treatment started: id={}", reservation_id)
            return self._load_queues(session)

    def finish_treatment(
        self, treatment_note: str, xray_image_base64: str | None = None
    ) -> ReservationsData:
        data = parse_payload(
            FinishTreatmentInput,
            {"treatment_note": treatment_note, "xray_image_base64": xray_image_base64},
        )

        with self._session("Finish treatment") as session:
            current = session.find_current()
            if current is None:
                raise ConflictError("No current treatment found")

            session.update_reservation(
                current.id,
                status=ReservationStatus.COMPLETED,
                completed_at=self._clock(),
                treatment_note=data.treatment_note,
                xray_image_base64=data.xray_image_base64,
            )
            logger.info(
                "Treatment finished: id={}, xray={}",
                current.id,
                "yes" if data.xray_image_base64 else "no",
            )
            return self._load_queues(session)

    def cancel_reservation(self, reservation_id: str) -> ReservationsData:
        with self._session("Cancel reservation") as session:
            reservation = session.get_reservation(reservation_id)
            if reservation is None:
                raise NotFoundError(
                    "Reservation not found", entity="reservation", entity_id=reservation_id
                )
            if reservation.status in (ReservationStatus.CURRENT, ReservationStatus.COMPLETED):
                raise ConflictError("Current or completed treatments cannot be canceled")

            session.delete_reservation(reservation_id)
            logger.info("Reservation canceled: id={}", reservation_id)
            return self._load_queues(session)

    def delete_reservation(self, reservation_id: str) -> ReservationsData:
        with self._session("Delete reservation") as session:
            reservation = session.get_reservation(reservation_id)
            if reservation is None:
                raise NotFoundError(
                    "Reservation not found", entity="reservation", entity_id=reservation_id
                )
            if reservation.status is ReservationStatus.CURRENT:
                raise ConflictError("Cannot delete current treatment. Please finish it first.")

            session.delete_reservation(reservation_id)
            logger.info(
                "Reservation deleted: id={}, status={}", reservation_id, reservation.status.value
            )
            return self._load_queues(session)

    def health_check(self) -> bool:
        return self._store.health_check()

    def close(self) -> None:
        self._store.close()
