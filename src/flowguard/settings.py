from __future__ import annotations

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flowguard.circuit_breaker import CircuitBreakerConfig
from flowguard.logging import get_log_level_value
from flowguard.pool import ConnectionPoolConfig
from flowguard.retry import DEFAULT_RETRYABLE_STATUS_CODES, RetryConfig

ENV_PREFIX = "FLOWGUARD_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class FlowguardSettings(BaseSettings):
    """Settings for a resilient workflow-automation API client."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    base_url: str
    api_key: str | None = None
    api_key_header: str = "X-N8N-API-KEY"
    log_level: str = "INFO"

    retry_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_backoff_multiplier: float = 2.0
    retry_status_codes: list[int] = sorted(DEFAULT_RETRYABLE_STATUS_CODES)

    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 30.0
    breaker_monitoring_period: float | None = 60.0

    pool_max_connections: int = 10
    pool_connection_timeout: float = 30.0
    pool_idle_timeout: float = 60.0
    pool_acquire_timeout: float | None = None

    metrics_capacity: int = 1000
    cache_default_ttl: float = 300.0
    connectivity_probe_path: str = "/workflows"

    @field_validator("base_url", "api_key_header", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        get_log_level_value(value)
        return value

    @model_validator(mode="after")
    def _validate_bounds(self) -> FlowguardSettings:
        if self.retry_max_retries < 0:
            raise ValueError("retry_max_retries must be >= 0")
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        if self.pool_max_connections < 1:
            raise ValueError("pool_max_connections must be >= 1")
        if self.pool_connection_timeout <= 0:
            raise ValueError("pool_connection_timeout must be > 0")
        if self.metrics_capacity < 1:
            raise ValueError("metrics_capacity must be >= 1")
        if self.cache_default_ttl < 0:
            raise ValueError("cache_default_ttl must be >= 0")
        return self

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            retryable_status_codes=frozenset(self.retry_status_codes),
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            reset_timeout=self.breaker_reset_timeout,
            monitoring_period=self.breaker_monitoring_period,
        )

    def pool_config(self) -> ConnectionPoolConfig:
        return ConnectionPoolConfig(
            max_connections=self.pool_max_connections,
            connection_timeout=self.pool_connection_timeout,
            idle_timeout=self.pool_idle_timeout,
            acquire_timeout=self.pool_acquire_timeout,
        )

    def default_headers(self) -> dict[str, str]:
        """Build headers attached to every API request."""
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers[self.api_key_header] = self.api_key
        return headers
