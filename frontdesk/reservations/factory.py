from typing import Callable

from loguru import logger

from frontdesk.config import AppConfig, StoreAdapter
from frontdesk.reservations.adapters.memory import InMemoryReservationStore
from frontdesk.reservations.adapters.sqlalchemy_store import SqlAlchemyReservationStore
from frontdesk.reservations.ports import ReservationStoreProtocol
from frontdesk.reservations.service import ReservationService


def _build_sqlalchemy(config: AppConfig) -> ReservationStoreProtocol:
    store = SqlAlchemyReservationStore(config.store.database_url, echo=config.store.echo)
    store.create_schema()
    return store


def _build_memory(config: AppConfig) -> ReservationStoreProtocol:
    return InMemoryReservationStore()


_BUILDERS: dict[StoreAdapter, Callable[[AppConfig], ReservationStoreProtocol]] = {
    StoreAdapter.SQLALCHEMY: _build_sqlalchemy,
    StoreAdapter.MEMORY: _build_memory,
}


def build_reservation_service(config: AppConfig) -> ReservationService:
    """Build the reservation service on the store selected by config."""
    adapter = config.store.adapter
    logger.info("Building reservation service with store: {}", adapter.value)
    return ReservationService(
        _BUILDERS[adapter](config),
        delete_policy=config.patient_delete_policy,
        history_page_size=config.history_page_size,
    )
