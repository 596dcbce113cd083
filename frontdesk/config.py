import sys
from enum import Enum

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreAdapter(Enum):
    SQLALCHEMY = "sqlalchemy"
    MEMORY = "memory"


class PatientDeletePolicy(Enum):
    """What deleting a patient does to the reservations linked to it.

    ``BLOCK`` refuses the delete while any reservation is linked. ``CASCADE``
    deletes them too, treatment history included.
    """

    BLOCK = "block"
    CASCADE = "cascade"


class StoreConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FRONTDESK_STORE_", env_file=".env", extra="ignore")

    adapter: StoreAdapter = StoreAdapter.SQLALCHEMY
    database_url: str = "sqlite:///frontdesk.db"
    echo: bool = False


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FRONTDESK_", env_file=".env", extra="ignore")

    patient_delete_policy: PatientDeletePolicy = PatientDeletePolicy.BLOCK
    history_page_size: int = Field(default=6, gt=0)
    log_level: str = "INFO"
    store: StoreConfig = Field(default_factory=lambda: StoreConfig())


def configure_logging(level: str = "INFO") -> None:
    """Send loguru output to stderr at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
