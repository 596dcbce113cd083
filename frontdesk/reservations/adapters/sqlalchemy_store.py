import datetime as dt
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from loguru import logger
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    delete,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, relationship, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from frontdesk.domain.exceptions import ConflictError, DuplicatePhoneError, FrontDeskError
from frontdesk.domain.models import (
    BloodType,
    BookingType,
    PatientInput,
    PatientProfile,
    Reservation,
    ReservationStatus,
    ReservationView,
)

_PHONE_CONSTRAINT = "uq_patient_profiles_phone"
_SINGLE_CURRENT_INDEX = "uq_reservations_single_current"
_CURRENT_ONLY = text(f"status = '{ReservationStatus.CURRENT.storage_code}'")


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


class PatientProfileRow(Base):
    __tablename__ = "patient_profiles"
    __table_args__ = (UniqueConstraint("phone", name=_PHONE_CONSTRAINT),)

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(80), nullable=False, index=True)
    phone = Column(String(10), nullable=False)
    age = Column(Integer, nullable=False)
    # Enum columns persist the member name (A_POS, WALK_IN, CURRENT, ...)
    blood_type = Column(Enum(BloodType, name="blood_type"), nullable=False)
    xray_image_base64 = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)

    reservations = relationship(
        "ReservationRow",
        back_populates="patient",
        order_by="ReservationRow.created_at.desc()",
        passive_deletes="all",
    )


class ReservationRow(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            _SINGLE_CURRENT_INDEX,
            "status",
            unique=True,
            sqlite_where=_CURRENT_ONLY,
            postgresql_where=_CURRENT_ONLY,
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    patient_id = Column(
        String(36),
        ForeignKey("patient_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    booking_type = Column(Enum(BookingType, name="booking_type"), nullable=False)
    status = Column(Enum(ReservationStatus, name="reservation_status"), nullable=False, index=True)
    appointment_date = Column(Date, nullable=False)
    has_arrived = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    treatment_note = Column(Text)
    xray_image_base64 = Column(Text)

    patient = relationship("PatientProfileRow", back_populates="reservations")


_WAITING_PRIORITY = case(
    *((ReservationRow.booking_type == b, b.priority) for b in BookingType),
    else_=0,
)

_QUEUE_ORDER: dict[ReservationStatus, tuple[Any, ...]] = {
    ReservationStatus.CURRENT: (ReservationRow.created_at.desc(),),
    ReservationStatus.WAITING: (_WAITING_PRIORITY.desc(), ReservationRow.created_at.asc()),
    ReservationStatus.UPCOMING: (
        ReservationRow.appointment_date.asc(),
        ReservationRow.created_at.asc(),
    ),
    ReservationStatus.COMPLETED: (
        ReservationRow.completed_at.desc(),
        ReservationRow.created_at.desc(),
    ),
}


def _to_utc(value: dt.datetime | None) -> dt.datetime | None:
    """SQLite drops tzinfo, so timestamps are stored as UTC and re-tagged on read."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _to_reservation(row: ReservationRow) -> Reservation:
    return Reservation(
        id=row.id,
        patient_id=row.patient_id,
        booking_type=row.booking_type,
        status=row.status,
        appointment_date=row.appointment_date,
        has_arrived=row.has_arrived,
        created_at=_to_utc(row.created_at),
        completed_at=_to_utc(row.completed_at),
        treatment_note=row.treatment_note,
        xray_image_base64=row.xray_image_base64,
    )


def _to_view(row: ReservationRow) -> ReservationView:
    return ReservationView(
        **_to_reservation(row).model_dump(),
        name=row.patient.name,
        phone=row.patient.phone,
        age=row.patient.age,
        blood_type=row.patient.blood_type,
    )


def _to_profile(row: PatientProfileRow) -> PatientProfile:
    return PatientProfile(
        id=row.id,
        name=row.name,
        phone=row.phone,
        age=row.age,
        blood_type=row.blood_type,
        xray_image_base64=row.xray_image_base64,
        created_at=_to_utc(row.created_at),
        linked_reservations=[_to_reservation(r) for r in row.reservations],
    )


def _translate_integrity_error(exc: IntegrityError) -> FrontDeskError:
    message = str(exc.orig).lower()
    if _PHONE_CONSTRAINT in message or "patient_profiles.phone" in message:
        return DuplicatePhoneError()
    if _SINGLE_CURRENT_INDEX in message or "reservations.status" in message:
        return ConflictError("Another treatment is already in progress")
    if "foreign key" in message:
        return ConflictError("Patient still has linked reservations")
    return ConflictError(f"Store constraint violated: {exc.orig}")


def _is_memory_url(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (
        database_url.rstrip("/").endswith(":memory:") or database_url in {"sqlite://", "sqlite:"}
    )


def _enable_sqlite_transactions(engine: Engine) -> None:
    """Turn on foreign keys and take the write lock when each transaction begins.

    pysqlite defers ``BEGIN`` until the first write, which would let two
    check-then-act sequences interleave. ``BEGIN IMMEDIATE`` serializes them.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


class SqlAlchemyReservationStore:
    """Relational store backed by SQLAlchemy.

    The engine lives as long as this object; the hosting process creates it at
    startup and calls ``close()`` at shutdown.
    """

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        kwargs: dict[str, Any] = {"echo": echo, "future": True}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_url(database_url):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
            kwargs["isolation_level"] = "SERIALIZABLE"

        self._engine = create_engine(database_url, **kwargs)
        if database_url.startswith("sqlite"):
            _enable_sqlite_transactions(self._engine)

        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)
        logger.info("Reservation schema ready on {}", self._engine.url.render_as_string())

    @contextmanager
    def transaction(self) -> Iterator["SqlAlchemyStoreSession"]:
        session = self._session_factory()
        try:
            with session.begin():
                yield SqlAlchemyStoreSession(session)
        except IntegrityError as exc:
            raise _translate_integrity_error(exc) from exc
        finally:
            session.close()

    def health_check(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Reservation store health check failed: {}", exc)
            return False

    def close(self) -> None:
        self._engine.dispose()
        logger.info("Reservation store closed")


class SqlAlchemyStoreSession:
    def __init__(self, session: Session) -> None:
        self._session = session

    def _profile_row(self, profile_id: str) -> PatientProfileRow | None:
        return self._session.execute(
            select(PatientProfileRow)
            .options(selectinload(PatientProfileRow.reservations))
            .where(PatientProfileRow.id == profile_id)
        ).scalar_one_or_none()

    def get_profile(self, profile_id: str) -> PatientProfile | None:
        row = self._profile_row(profile_id)
        return _to_profile(row) if row else None

    def find_profile_by_phone(
        self, phone: str, exclude_id: str | None = None
    ) -> PatientProfile | None:
        stmt = (
            select(PatientProfileRow)
            .options(selectinload(PatientProfileRow.reservations))
            .where(PatientProfileRow.phone == phone)
        )
        if exclude_id:
            stmt = stmt.where(PatientProfileRow.id != exclude_id)
        row = self._session.execute(stmt.limit(1)).scalar_one_or_none()
        return _to_profile(row) if row else None

    def add_profile(self, data: PatientInput, created_at: dt.datetime) -> PatientProfile:
        row = PatientProfileRow(
            id=_new_id(),
            name=data.name,
            phone=data.phone,
            age=data.age,
            blood_type=data.blood_type,
            xray_image_base64=data.xray_image_base64,
            created_at=_to_utc(created_at),
        )
        self._session.add(row)
        self._session.flush()
        return PatientProfile(
            id=row.id,
            name=row.name,
            phone=row.phone,
            age=row.age,
            blood_type=row.blood_type,
            xray_image_base64=row.xray_image_base64,
            created_at=_to_utc(row.created_at),
        )

    def update_profile(self, profile_id: str, data: PatientInput) -> PatientProfile:
        row = self._profile_row(profile_id)
        if row is None:
            raise KeyError(profile_id)
        row.name = data.name
        row.phone = data.phone
        row.age = data.age
        row.blood_type = data.blood_type
        row.xray_image_base64 = data.xray_image_base64
        self._session.flush()
        return _to_profile(row)

    def delete_profile(self, profile_id: str) -> None:
        row = self._session.get(PatientProfileRow, profile_id)
        if row is None:
            raise KeyError(profile_id)
        self._session.delete(row)
        self._session.flush()

    def count_reservations(self, profile_id: str) -> int:
        return self._session.execute(
            select(func.count())
            .select_from(ReservationRow)
            .where(ReservationRow.patient_id == profile_id)
        ).scalar_one()

    def delete_reservations_for(self, profile_id: str) -> int:
        result = self._session.execute(
            delete(ReservationRow).where(ReservationRow.patient_id == profile_id)
        )
        return result.rowcount or 0

    def list_profiles(self, search: str | None = None) -> list[PatientProfile]:
        stmt = select(PatientProfileRow).options(selectinload(PatientProfileRow.reservations))
        if search:
            stmt = stmt.where(
                PatientProfileRow.name.icontains(search, autoescape=True)
                | PatientProfileRow.phone.icontains(search, autoescape=True)
            )
        rows = self._session.execute(stmt.order_by(PatientProfileRow.name.asc())).scalars()
        return [_to_profile(row) for row in rows]

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        row = self._session.get(ReservationRow, reservation_id)
        return _to_reservation(row) if row else None

    def find_current(self) -> Reservation | None:
        row = self._session.execute(
            select(ReservationRow)
            .where(ReservationRow.status == ReservationStatus.CURRENT)
            .order_by(*_QUEUE_ORDER[ReservationStatus.CURRENT])
            .limit(1)
        ).scalar_one_or_none()
        return _to_reservation(row) if row else None

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
        row = ReservationRow(
            id=_new_id(),
            patient_id=patient_id,
            booking_type=booking_type,
            status=status,
            appointment_date=appointment_date,
            has_arrived=has_arrived,
            created_at=_to_utc(created_at),
        )
        self._session.add(row)
        self._session.flush()
        return _to_reservation(row)

    def update_reservation(self, reservation_id: str, **changes: Any) -> Reservation:
        row = self._session.get(ReservationRow, reservation_id)
        if row is None:
            raise KeyError(reservation_id)
        for key, value in changes.items():
            if isinstance(value, dt.datetime):
                value = _to_utc(value)
            setattr(row, key, value)
        self._session.flush()
        return _to_reservation(row)

    def delete_reservation(self, reservation_id: str) -> None:
        self._session.execute(delete(ReservationRow).where(ReservationRow.id == reservation_id))

    def list_reservations(self, status: ReservationStatus) -> list[ReservationView]:
        rows = self._session.execute(
            select(ReservationRow)
            .options(selectinload(ReservationRow.patient))
            .where(ReservationRow.status == status)
            .order_by(*_QUEUE_ORDER[status])
        ).scalars()
        return [_to_view(row) for row in rows]
