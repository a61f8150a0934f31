"""
Client configuration using pydantic-settings.
Loads from TRACKLINK_* environment variables (or .env) with the same
defaults as the stock Traccar client.

Legacy installs stored server_address/server_port/secure instead of a
single server URL; those keys are folded into server_url on load.
"""
import random
from functools import lru_cache
from typing import Any, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tracklink.models import AccuracyPolicy

DEFAULT_SERVER_PORT = 5055


def generate_device_id() -> str:
    """Random six-digit identifier for devices that were never assigned one."""
    return str(random.randint(100000, 999999))


class Settings(BaseSettings):
    """Tracking client settings. Treated as immutable for one session."""

    model_config = SettingsConfigDict(
        env_prefix="TRACKLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Identity / endpoint
    device_id: str = Field(default_factory=generate_device_id)
    server_url: str = "http://demo.traccar.org:5055"

    # Sampling
    interval_s: float = 300.0
    distance_m: float = 0.0
    angle_deg: float = 0.0
    accuracy: AccuracyPolicy = AccuracyPolicy.MEDIUM

    # Service switches
    service_enabled: bool = False
    remote_control: bool = False

    # Local storage
    queue_db_path: str = "/var/lib/tracklink/queue.db"
    queue_synchronous: str = "FULL"

    # Uplink
    retry_base_s: float = 15.0
    retry_max_s: float = 900.0
    request_timeout_s: float = 15.0
    request_method: str = "GET"
    idle_poll_s: float = 30.0

    # Sensor feed (local GPS publisher)
    sensor_endpoint: str = "tcp://localhost:5558"
    sensor_topic: str = "gps"

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # console or json

    # Legacy keys, consumed by migrate_legacy_server
    server_address: Optional[str] = None
    server_port: Optional[int] = None
    secure: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def migrate_legacy_server(cls, data: Any) -> Any:
        """Fold server_address/server_port/secure into server_url."""
        if not isinstance(data, dict) or data.get("server_address") is None:
            return data
        data = dict(data)
        host = data.pop("server_address")
        port = int(data.pop("server_port", None) or 0) or DEFAULT_SERVER_PORT
        secure = str(data.pop("secure", False)).lower() in ("1", "true", "yes", "on")
        scheme = "https" if secure else "http"
        data["server_url"] = f"{scheme}://{host}:{port}"
        return data

    @field_validator("device_id")
    @classmethod
    def fill_device_id(cls, value: str) -> str:
        return value.strip() or generate_device_id()

    @field_validator("interval_s")
    @classmethod
    def check_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval_s must be positive")
        return value

    @field_validator("request_method")
    @classmethod
    def check_method(cls, value: str) -> str:
        value = value.upper()
        if value not in ("GET", "POST"):
            raise ValueError("request_method must be GET or POST")
        return value

    @model_validator(mode="after")
    def check_retry_range(self):
        """Backoff needs 0 < retry_base_s <= retry_max_s."""
        if self.retry_base_s <= 0 or self.retry_max_s < self.retry_base_s:
            raise ValueError(
                f"Invalid retry range: base={self.retry_base_s} max={self.retry_max_s}"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
