# order_saga/config.py
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from order_saga.execution.retry import RetryPolicy


class Settings(BaseSettings):
    app_name: str = "Order Saga Orchestrator"
    environment: str = "development"
    debug: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    storage_backend: str = Field(default="sqlite", description="sqlite or memory")
    database_url: str = "sqlite:///./order_saga.db"

    worker_concurrency: int = 10
    worker_poll_interval: float = 5.0

    # Activity faults are retried this many times before surfacing as failures
    activity_max_retries: int = 3
    activity_initial_delay: float = 0.5
    activity_backoff_base: float = 2.0
    activity_timeout: Optional[float] = 30.0

    storage_max_retries: int = 5
    storage_initial_delay: float = 0.1

    strict_determinism: bool = False

    # Ownership lease on a Running instance; renewed every third of the ttl
    lease_ttl: float = 60.0

    log_level: str = "INFO"
    log_format: str = Field(default="console", description="console or json")

    model_config = SettingsConfigDict(
        env_prefix="SAGA_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    def activity_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.activity_max_retries,
            initial_delay=self.activity_initial_delay,
            exponential_base=self.activity_backoff_base,
        )

    def storage_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.storage_max_retries,
            initial_delay=self.storage_initial_delay,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
