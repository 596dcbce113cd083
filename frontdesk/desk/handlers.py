from collections.abc import Callable, Mapping
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict

from frontdesk.domain.exceptions import FrontDeskError
from frontdesk.domain.models import HistoryQuery, QueueFilter, parse_payload
from frontdesk.reservations.ports import AbstractReservationService


class HandlerResult(BaseModel):
    """Status code and JSON body for the hosting HTTP layer to send back."""

    model_config = ConfigDict(frozen=True)

    status: int
    body: dict[str, Any]


def _to_json(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, list):
        return [_to_json(item) for item in data]
    return data


def _booking_filter(value: object) -> object:
    """Treat the dashboard's ``"all"`` option as no filter."""
    return None if value in (None, "", "all") else value


def _as_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


class DeskHandlers:
    """Maps front-desk requests onto the reservation service.

    Successes carry ``{"data": ...}``; any failure is a 400 carrying
    ``{"message": ...}`` so the operator can read it and retry.
    """

    def __init__(self, service: AbstractReservationService) -> None:
        self._service = service

    def _respond(
        self,
        call: Callable[[], Any],
        *,
        failure_message: str,
        status: int = 200,
    ) -> HandlerResult:
        try:
            data = call()
        except FrontDeskError as exc:
            return HandlerResult(status=400, body={"message": str(exc)})
        except Exception:
            logger.exception("Unexpected error: {}", failure_message)
            return HandlerResult(status=400, body={"message": failure_message})
        return HandlerResult(status=status, body={"data": _to_json(data)})

    def list_patients(self, search: str | None = None) -> HandlerResult:
        return self._respond(
            lambda: self._service.list_patients(search),
            failure_message="Failed to load patients",
        )

    def create_patient(self, payload: Any) -> HandlerResult:
        return self._respond(
            lambda: self._service.create_patient(payload),
            failure_message="Failed to create patient",
            status=201,
        )

    def update_patient(self, patient_id: str, payload: Any) -> HandlerResult:
        return self._respond(
            lambda: self._service.update_patient(patient_id, payload),
            failure_message="Failed to update patient",
        )

    def delete_patient(self, patient_id: str, *, cascade: bool | None = None) -> HandlerResult:
        result = self._respond(
            lambda: self._service.delete_patient(patient_id, cascade=cascade),
            failure_message="Failed to delete patient",
        )
        if result.status != 200:
            return result
        return HandlerResult(status=200, body={"success": True})

    def list_reservations(self, params: Mapping[str, Any] | None = None) -> HandlerResult:
        def call() -> Any:
            if not params:
                return self._service.get_reservations()
            queue_filter = parse_payload(
                QueueFilter,
                {
                    "search": params.get("search"),
                    "booking_type": _booking_filter(params.get("bookingType")),
                },
            )
            return self._service.get_reservations(queue_filter)

        return self._respond(call, failure_message="Failed to load reservations")

    def create_reservation(self, payload: Any) -> HandlerResult:
        return self._respond(
            lambda: self._service.add_reservation(payload),
            failure_message="Failed to add reservation",
            status=201,
        )

    def mark_arrived(self, reservation_id: str) -> HandlerResult:
        return self._respond(
            lambda: self._service.mark_arrived(reservation_id),
            failure_message="Failed to mark patient as arrived",
        )

    def start_treatment(
        self, reservation_id: str, payload: Mapping[str, Any] | None = None
    ) -> HandlerResult:
        replace_current = _as_bool((payload or {}).get("replaceCurrent", False))
        return self._respond(
            lambda: self._service.start_treatment(reservation_id, replace_current),
            failure_message="Failed to start treatment",
        )

    def finish_treatment(self, payload: Mapping[str, Any] | None = None) -> HandlerResult:
        payload = payload or {}
        return self._respond(
            lambda: self._service.finish_treatment(
                payload.get("treatmentNote") or "",
                payload.get("xrayImageBase64"),
            ),
            failure_message="Failed to finish treatment",
        )

    def delete_reservation(self, reservation_id: str, *, from_history: bool = False) -> HandlerResult:
        """Delete from history when ``from_history`` is set, otherwise cancel."""
        operation = (
            self._service.delete_reservation if from_history else self._service.cancel_reservation
        )
        return self._respond(
            lambda: operation(reservation_id),
            failure_message="Failed to delete reservation",
        )

    def queue_stats(self) -> HandlerResult:
        return self._respond(self._service.queue_stats, failure_message="Failed to load stats")

    def search_history(self, params: Mapping[str, Any] | None = None) -> HandlerResult:
        params = params or {}

        def call() -> Any:
            query = parse_payload(
                HistoryQuery,
                {
                    "search": params.get("search"),
                    "booking_type": _booking_filter(params.get("bookingType")),
                    "completed_from": params.get("from") or None,
                    "completed_to": params.get("to") or None,
                    "page": params.get("page") or 1,
                },
            )
            return self._service.search_history(query)

        return self._respond(call, failure_message="Failed to load treatment history")
