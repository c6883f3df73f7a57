"""
Configuration for the Interval Timer Sync Service.

All tunables live here and can be overridden with INTERVAL_SYNC_* environment
variables.
"""

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="INTERVAL_SYNC_")

    # Server
    host: str = Field("127.0.0.1", description="Bind address for the server")
    port: int = Field(8003, ge=1, le=65535)
    log_level: str = Field("INFO", description="Root log level")

    # Client
    socket_base_url: str = Field(
        "ws://127.0.0.1:8003/", description="Base URL session keys are appended to"
    )

    # Keepalive
    session_health_check_interval_seconds: float = Field(60.0, gt=0)
    client_health_check_timeout_seconds: float = Field(200.0, gt=0)

    # Reconnection
    reconnect_max_interval_seconds: float = Field(1800.0, ge=0)
    reconnect_backoff_factor: float = Field(1.5, gt=0)

    # Limits and eviction
    max_sessions_per_registry: int = Field(100, ge=1)
    max_registries: int = Field(1000, ge=1)
    registry_idle_timeout_seconds: float = Field(3600.0, gt=0)
    registry_reap_interval_seconds: float = Field(300.0, gt=0)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
