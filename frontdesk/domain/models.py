import datetime as dt
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from frontdesk.domain.exceptions import ValidationError

_PHONE_RE = re.compile(r"^0\d{9}$")
_IMAGE_DATA_URL_RE = re.compile(r"^data:image/[a-zA-Z+.-]+;base64,")

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 80
TREATMENT_NOTE_MIN_LENGTH = 5


class _StorageCodeMixin:
    """Maps wire labels (``"A+"``, ``"walk-in"``) to storage codes (``A_POS``, ``WALK_IN``).

    The storage code is the member name, so the mapping is a bijection by
    construction and SQLAlchemy's ``Enum`` column type persists it as-is.
    """

    name: str

    @property
    def storage_code(self) -> str:
        return self.name

    @classmethod
    def from_storage(cls, code: str) -> Any:
        try:
            return cls[code]  # type: ignore[index]
        except KeyError:
            raise ValueError(f"Unknown {cls.__name__} storage code: {code!r}") from None


class BloodType(_StorageCodeMixin, str, Enum):
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"


class BookingType(_StorageCodeMixin, str, Enum):
    """How a reservation was made."""

    ADVANCE = "advance"
    WALK_IN = "walk-in"
    EMERGENCY = "emergency"

    @property
    def priority(self) -> int:
        """Rank in the waiting queue; higher is served first."""
        return _BOOKING_PRIORITY[self]

    @property
    def arrives_on_booking(self) -> bool:
        return self is not BookingType.ADVANCE


_BOOKING_PRIORITY: dict[BookingType, int] = {
    BookingType.ADVANCE: 0,
    BookingType.WALK_IN: 1,
    BookingType.EMERGENCY: 2,
}


class ReservationStatus(_StorageCodeMixin, str, Enum):
    """Queue a reservation currently sits in."""

    CURRENT = "current"
    WAITING = "waiting"
    UPCOMING = "upcoming"
    COMPLETED = "completed"


_WIRE = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


def _clean_image(value: object) -> object:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def parse_appointment_date(value: object) -> dt.date:
    """Parse an ISO date or datetime into the calendar date that gets stored.

    Aware datetimes are normalized to UTC before the date part is taken.
    """
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        return value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return dt.date.fromisoformat(text)
        except ValueError:
            pass
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            raise PydanticCustomError("appointment_date", "Invalid appointment date") from None
    else:
        raise PydanticCustomError("appointment_date", "Invalid appointment date")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc)
    return parsed.date()


class PatientInput(BaseModel):
    """Payload for creating or editing a patient profile."""

    model_config = _WIRE

    name: str
    phone: str
    age: int
    blood_type: BloodType
    xray_image_base64: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _check_name(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        value = value.strip()
        if len(value) < NAME_MIN_LENGTH:
            raise PydanticCustomError("name_too_short", "Name must be at least 3 characters")
        if len(value) > NAME_MAX_LENGTH:
            raise PydanticCustomError("name_too_long", "Name is too long")
        return value

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        if not _PHONE_RE.match(value):
            raise PydanticCustomError(
                "phone_format", "Phone must be exactly 10 digits (e.g. 0993198176)"
            )
        return value

    @field_validator("age")
    @classmethod
    def _check_age(cls, value: int) -> int:
        if value <= 0:
            raise PydanticCustomError("age_positive", "Age must be greater than 0")
        return value

    @field_validator("blood_type", mode="before")
    @classmethod
    def _check_blood_type(cls, value: object) -> object:
        if isinstance(value, BloodType):
            return value
        if not isinstance(value, str) or value not in {b.value for b in BloodType}:
            raise PydanticCustomError("blood_type", "Please select a blood type")
        return value

    @field_validator("xray_image_base64", mode="before")
    @classmethod
    def _check_xray(cls, value: object) -> object:
        value = _clean_image(value)
        if isinstance(value, str) and not _IMAGE_DATA_URL_RE.match(value):
            raise PydanticCustomError("xray_image", "X-ray image must be a valid base64 image")
        return value


class ReservationInput(BaseModel):
    """Payload for booking a reservation, for an existing or a new patient."""

    model_config = _WIRE

    patient_id: str | None = None
    patient: PatientInput | None = None
    booking_type: BookingType
    appointment_date: dt.date

    @field_validator("booking_type", mode="before")
    @classmethod
    def _check_booking_type(cls, value: object) -> object:
        if isinstance(value, BookingType):
            return value
        if not isinstance(value, str) or value not in {b.value for b in BookingType}:
            raise PydanticCustomError("booking_type", "Invalid booking type")
        return value

    @field_validator("appointment_date", mode="before")
    @classmethod
    def _check_appointment_date(cls, value: object) -> dt.date:
        return parse_appointment_date(value)

    @model_validator(mode="after")
    def _check_patient_selection(self) -> "ReservationInput":
        if not self.patient_id and self.patient is None:
            raise PydanticCustomError(
                "patient_selection", "Please select an existing patient or create a new one"
            )
        return self


class FinishTreatmentInput(BaseModel):
    model_config = _WIRE

    treatment_note: str = Field(default="", validate_default=True)
    xray_image_base64: str | None = None

    @field_validator("treatment_note", mode="before")
    @classmethod
    def _check_note(cls, value: object) -> object:
        if value is None:
            value = ""
        if isinstance(value, str):
            value = value.strip()
            if len(value) < TREATMENT_NOTE_MIN_LENGTH:
                raise PydanticCustomError(
                    "treatment_note",
                    "Treatment note is required and must be at least 5 characters",
                )
        return value

    @field_validator("xray_image_base64", mode="before")
    @classmethod
    def _check_xray(cls, value: object) -> object:
        return _clean_image(value)


class Reservation(BaseModel):
    """A stored booking."""

    model_config = _WIRE

    id: str
    patient_id: str
    booking_type: BookingType
    status: ReservationStatus
    appointment_date: dt.date
    has_arrived: bool
    created_at: dt.datetime
    completed_at: dt.datetime | None = None
    treatment_note: str | None = None
    xray_image_base64: str | None = None


class ReservationView(Reservation):
    """A reservation flattened with its owning patient's details for display."""

    name: str
    phone: str
    age: int
    blood_type: BloodType


class PatientProfile(BaseModel):
    """A master patient record with its reservations, newest first."""

    model_config = _WIRE

    id: str
    name: str
    phone: str
    age: int
    blood_type: BloodType
    xray_image_base64: str | None = None
    created_at: dt.datetime
    linked_reservations: list[Reservation] = Field(default_factory=list)


class ReservationsData(BaseModel):
    """The four front-desk queues, each in display order."""

    model_config = _WIRE

    current_patient: ReservationView | None = None
    waiting_patients: list[ReservationView] = Field(default_factory=list)
    upcoming_patients: list[ReservationView] = Field(default_factory=list)
    treatment_history: list[ReservationView] = Field(default_factory=list)


class QueueStats(BaseModel):
    model_config = _WIRE

    waiting: int
    upcoming: int
    emergency: int
    completed: int
    has_current: bool


class QueueFilter(BaseModel):
    """Narrows the waiting and upcoming queues by name/phone and booking type."""

    model_config = _WIRE

    search: str | None = None
    booking_type: BookingType | None = None


class HistoryQuery(BaseModel):
    """Search over completed treatments. Date bounds are inclusive."""

    model_config = _WIRE

    search: str | None = None
    booking_type: BookingType | None = None
    completed_from: dt.date | None = None
    completed_to: dt.date | None = None
    page: int = Field(default=1, ge=1)


class HistoryPage(BaseModel):
    model_config = _WIRE

    items: list[ReservationView]
    page: int
    page_size: int
    total: int
    total_pages: int


M = TypeVar("M", bound=BaseModel)


def parse_payload(model: type[M], payload: M | Mapping[str, Any] | Any) -> M:
    """Validate ``payload`` as ``model``, raising the domain ``ValidationError``.

    Only the first issue is reported, with its dotted field location.
    """
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise ValidationError(first["msg"], field=field) from exc
