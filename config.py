"""
Configuration management for the ICCT cache and query-optimization layer.
Centralized configuration with environment variables.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    # Application configuration
    app_name: str = Field(default="icct-cache", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    port: int = Field(default=8000, validation_alias="PORT")
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # Logging
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        validation_alias="LOG_FORMAT",
    )

    # Redis configuration (REDIS_URL wins over host/port when set)
    redis_url: Optional[str] = Field(default=None, validation_alias="REDIS_URL")
    redis_host: str = Field(default="localhost", validation_alias="REDIS_HOST")
    redis_port: int = Field(default=6379, validation_alias="REDIS_PORT")
    redis_password: Optional[str] = Field(default=None, validation_alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, validation_alias="REDIS_DB")
    redis_timeout: float = Field(default=5.0, validation_alias="REDIS_TIMEOUT")
    redis_max_retries: int = Field(default=3, validation_alias="REDIS_MAX_RETRIES")
    redis_max_connections: int = Field(default=20, validation_alias="REDIS_MAX_CONNECTIONS")
    redis_health_check_interval: int = Field(default=30, validation_alias="REDIS_HEALTH_CHECK_INTERVAL")

    # Cache policy
    cache_key_prefix: str = Field(default="icct:", validation_alias="CACHE_KEY_PREFIX")
    cache_default_ttl: int = Field(default=3600, validation_alias="CACHE_DEFAULT_TTL")  # 1 hour
    cache_reconnect_interval: float = Field(default=5.0, validation_alias="CACHE_RECONNECT_INTERVAL")

    # Performance monitor
    performance_history_size: int = Field(default=1000, validation_alias="PERFORMANCE_HISTORY_SIZE")
    performance_recent_window: int = Field(default=10, validation_alias="PERFORMANCE_RECENT_WINDOW")
    slow_query_threshold_ms: float = Field(default=1000.0, validation_alias="SLOW_QUERY_THRESHOLD_MS")

    # Alert thresholds (two-tier: warning / critical)
    alert_response_time_warning_ms: float = Field(default=2000.0, validation_alias="ALERT_RESPONSE_TIME_WARNING_MS")
    alert_response_time_critical_ms: float = Field(default=5000.0, validation_alias="ALERT_RESPONSE_TIME_CRITICAL_MS")
    alert_memory_warning_mb: float = Field(default=200.0, validation_alias="ALERT_MEMORY_WARNING_MB")
    alert_memory_critical_mb: float = Field(default=500.0, validation_alias="ALERT_MEMORY_CRITICAL_MB")
    alert_cache_hit_rate_warning: float = Field(default=50.0, validation_alias="ALERT_CACHE_HIT_RATE_WARNING")
    alert_error_rate_warning: float = Field(default=5.0, validation_alias="ALERT_ERROR_RATE_WARNING")
    alert_error_rate_critical: float = Field(default=10.0, validation_alias="ALERT_ERROR_RATE_CRITICAL")
    recommendation_cache_hit_rate: float = Field(default=70.0, validation_alias="RECOMMENDATION_CACHE_HIT_RATE")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
