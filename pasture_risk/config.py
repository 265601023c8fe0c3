"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

from pasture_risk.domain.enums import Window


class Settings(BaseSettings):
    app_name: str = "pasture-risk"
    log_level: str = "INFO"

    # Scheduling
    cycle_interval_minutes: float = 15.0
    worker_pool_size: int = 8

    # Aggregation: minimum valid readings per window
    min_readings_7d: int = 1
    min_readings_14d: int = 2
    min_readings_30d: int = 3
    aggregate_cache_ttl_seconds: int = 3600

    # Store retries
    store_retry_attempts: int = 3
    store_retry_base_seconds: float = 0.5
    store_retry_max_seconds: float = 30.0

    # Rule matching
    top_k_recommendations: int = 5
    treatment_cooldown_days: dict[str, int] = Field(
        default_factory=lambda: {
            "lime": 540,
            "fertiliser": 42,
            "irrigation": 3,
            "reseeding": 365,
            "herbicide": 60,
        }
    )

    # Reference data files (optional; built-in defaults otherwise)
    condition_catalog_path: str | None = None
    rules_path: str | None = None

    model_config = {"env_prefix": "PASTURE_"}

    @property
    def min_readings(self) -> dict[Window, int]:
        return {
            Window.D7: self.min_readings_7d,
            Window.D14: self.min_readings_14d,
            Window.D30: self.min_readings_30d,
        }


settings = Settings()
