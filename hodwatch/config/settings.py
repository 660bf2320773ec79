"""Application settings loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, PostgresDsn, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hodwatch.config.constants import RestartPolicy


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Polygon API
    polygon_api_key: str = Field(..., description="Polygon.io API key")
    polygon_base_url: str = Field(
        default="https://api.polygon.io",
        description="Polygon REST base URL",
    )
    polygon_ws_url: str = Field(
        default="wss://delayed.polygon.io/stocks",
        description="Polygon stocks websocket URL (delayed feed by default)",
    )
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # Database
    database_url: PostgresDsn = Field(
        ..., description="PostgreSQL connection URL (must be set via DATABASE_URL env var)"
    )

    # Snapshot ingestor
    snapshot_interval_seconds: float = Field(default=15.0, gt=0)

    # Metadata ingestor
    metadata_request_delay_seconds: float = Field(
        default=0.25,
        ge=0,
        description="Delay between single reference-data requests",
    )
    metadata_batch_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay after each upserted batch of reference data",
    )

    # Live trade streamer
    stream_initial_backoff_seconds: float = Field(default=1.0, gt=0)
    stream_max_backoff_seconds: float = Field(default=10.0, gt=0)
    stream_stale_after_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Warn when no trade has been accepted for this long while connected",
    )
    stream_subscription: str = Field(default="T.*", description="Trade channel subscription")

    # HOD scanner
    hod_scan_interval_seconds: float = Field(default=5.0, gt=0)
    hod_restart_policy: RestartPolicy = Field(
        default=RestartPolicy.DAY_HIGH,
        description="'day_high' re-seeds from stored day highs, 'resume' from today's alerts",
    )

    # Low-float filter
    low_float_interval_seconds: float = Field(default=15.0, gt=0)
    low_float_min_price: float = Field(default=0.3, ge=0)
    low_float_max_price: float = Field(default=250.0, ge=0)
    low_float_min_volume: float = Field(default=100_000, ge=0)
    low_float_min_change_percent: float = Field(default=10.0)
    low_float_min_float: float = Field(default=100_000, ge=0)
    low_float_max_float: float = Field(default=100_000_000, ge=0)
    low_float_min_rel_vol: float = Field(default=1.5, ge=0)
    low_float_retention_minutes: int = Field(default=60, ge=1)

    # News ingestor
    news_page_delay_seconds: float = Field(default=0.5, ge=0)

    # IPO ingestor
    ipo_page_delay_seconds: float = Field(default=0.5, ge=0)

    # Average daily volume job
    avg_volume_request_delay_seconds: float = Field(
        default=12.0,
        ge=0,
        description="Delay between aggregate-bar requests (5 per minute on the free tier)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="text")
    log_dir: str = Field(default="logs")

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        """Reject bounds whose lower end exceeds the upper end."""
        if self.stream_max_backoff_seconds < self.stream_initial_backoff_seconds:
            raise ValueError(
                "STREAM_MAX_BACKOFF_SECONDS must be >= STREAM_INITIAL_BACKOFF_SECONDS"
            )
        if self.low_float_max_price < self.low_float_min_price:
            raise ValueError("LOW_FLOAT_MAX_PRICE must be >= LOW_FLOAT_MIN_PRICE")
        if self.low_float_max_float < self.low_float_min_float:
            raise ValueError("LOW_FLOAT_MAX_FLOAT must be >= LOW_FLOAT_MIN_FLOAT")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
