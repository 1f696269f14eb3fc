from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ELECTORATE_", env_file=".env", extra="ignore")

    app_name: str = "electorate"

    # Coordination store
    store_backend: str = Field(default="memory")  # memory or redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    redis_namespace: str = "electorate"
    reaper_interval: float = 1.0

    # Leases
    lease_ttl: int = 60
    keepalive_interval: float | None = None  # defaults to lease_ttl / 3

    # Observation retry
    observe_retry_delay_initial: float = 0.5
    observe_retry_delay_max: float = 30.0
    observe_retry_multiplier: float = 2.0
    observe_max_retries: int = 10

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


settings = Settings()
