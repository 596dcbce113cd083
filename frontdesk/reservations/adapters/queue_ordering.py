import datetime as dt
import math
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from frontdesk.domain.models import (
    HistoryPage,
    HistoryQuery,
    QueueFilter,
    Reservation,
    ReservationStatus,
    ReservationView,
)

R = TypeVar("R", bound=Reservation)

_EPOCH = dt.datetime.min.replace(tzinfo=dt.timezone.utc)


def waiting_sort_key(reservation: Reservation) -> tuple[int, dt.datetime]:
    """Emergency before walk-in before advance, then first come first served."""
    return -reservation.booking_type.priority, reservation.created_at


def upcoming_sort_key(reservation: Reservation) -> tuple[dt.date, dt.datetime]:
    return reservation.appointment_date, reservation.created_at


def history_sort_key(reservation: Reservation) -> tuple[dt.datetime, dt.datetime]:
    """Sorted in reverse: latest completion first, then latest created."""
    return reservation.completed_at or _EPOCH, reservation.created_at


def current_sort_key(reservation: Reservation) -> dt.datetime:
    """Sorted in reverse: the most recently created current reservation wins."""
    return reservation.created_at


_ORDERING: dict[ReservationStatus, tuple[Callable[[Any], Any], bool]] = {
    ReservationStatus.CURRENT: (current_sort_key, True),
    ReservationStatus.WAITING: (waiting_sort_key, False),
    ReservationStatus.UPCOMING: (upcoming_sort_key, False),
    ReservationStatus.COMPLETED: (history_sort_key, True),
}


def sort_queue(status: ReservationStatus, reservations: Iterable[R]) -> list[R]:
    """Return ``reservations`` in the display order of the ``status`` queue."""
    key, reverse = _ORDERING[status]
    return sorted(reservations, key=key, reverse=reverse)


def matches_search(view: ReservationView, term: str | None, *, include_note: bool = False) -> bool:
    """Case-insensitive substring match on name or phone (and treatment note if asked)."""
    query = (term or "").strip().lower()
    if not query:
        return True
    haystacks = [view.name, view.phone]
    if include_note:
        haystacks.append(view.treatment_note or "")
    return any(query in text.lower() for text in haystacks)


def filter_queue(views: Iterable[ReservationView], queue_filter: QueueFilter) -> list[ReservationView]:
    return [
        v
        for v in views
        if matches_search(v, queue_filter.search)
        and (queue_filter.booking_type is None or v.booking_type == queue_filter.booking_type)
    ]


def filter_history(views: Iterable[ReservationView], query: HistoryQuery) -> list[ReservationView]:
    """Apply the history search, booking-type and inclusive completion-date filters."""
    matched: list[ReservationView] = []
    for v in views:
        if not matches_search(v, query.search, include_note=True):
            continue
        if query.booking_type is not None and v.booking_type != query.booking_type:
            continue
        completed_on = v.completed_at.astimezone(dt.timezone.utc).date() if v.completed_at else None
        if query.completed_from and (completed_on is None or completed_on < query.completed_from):
            continue
        if query.completed_to and (completed_on is None or completed_on > query.completed_to):
            continue
        matched.append(v)
    return matched


def paginate(views: list[ReservationView], page: int, page_size: int) -> HistoryPage:
    """Slice one page out of ``views``; a page past the end clamps to the last one."""
    total = len(views)
    total_pages = max(1, math.ceil(total / page_size))
    page = min(max(page, 1), total_pages)
    start = (page - 1) * page_size
    return HistoryPage(
        items=views[start : start + page_size],
        page=page,
        page_size=page_size,
        total=total,
        total_pages=total_pages,
    )
