"""
Runtime configuration for a service hosting the event sourcing core.

Every tunable is a field on `Settings`, a pydantic-settings model read from
`PARKING_EVENTS_*` environment variables, so deployments configure the
store, broker naming and retry budgets without code changes.
"""
import logging

import pydantic_core
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ValidationError


class Settings(BaseSettings):
    db_path: str = ":memory:"
    read_model_path: str = ":memory:"
    service_name: str = "parking-service"
    exchange: str = "parking.events"
    # Defaults to "<service_name>.events" when left empty.
    queue: str = ""
    snapshot_every: int = Field(default=2, ge=1)
    max_conflict_retries: int = Field(default=3, ge=0)
    projection_max_attempts: int = Field(default=3, ge=1)
    projection_backoff: float = Field(default=0.05, ge=0)
    broker_max_deliveries: int = Field(default=5, ge=1)
    polling_interval: float = Field(default=0.2, gt=0)
    pool_size: int = Field(default=10, ge=1)
    encryption_key: str | None = None
    strict_replay: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="PARKING_EVENTS_", extra="ignore")

    @property
    def queue_name(self) -> str:
        return self.queue or f"{self.service_name}.events"

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Reads the environment; explicit keyword overrides win over it."""
        try:
            return cls(**overrides)
        except pydantic_core.ValidationError as e:
            raise ValidationError(f"Invalid settings: {e}", errors=e.errors()) from e


def configure_logging(level: str | int = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
