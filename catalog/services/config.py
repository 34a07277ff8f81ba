"""
FetchConfig - tuning options shared by the cache, the client and the orchestrator.
"""

from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from catalog.services.errors import ValidationError


class FetchConfig(BaseModel):
    """
    Recognized options with their defaults.

    Accepts both the camelCase option names (``ttlMs``) and the snake_case
    field names (``ttl_ms``). Callers override a subset:

        config = FetchConfig.from_options({"ttlMs": 60_000, "maxAttempts": 5})
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    # Cache
    ttl_ms: int = Field(default=60 * 60 * 1000, gt=0, alias="ttlMs")
    max_entries: int = Field(default=100, ge=1, alias="maxEntries")
    max_storage_bytes: int = Field(
        default=5 * 1024 * 1024, gt=0, alias="maxStorageBytes"
    )
    # Must start with a digit and contain no underscore: it is embedded in store keys
    schema_version: str = Field(
        default="1.0.0", pattern=r"^\d[^_]*$", alias="schemaVersion"
    )
    cache_prefix: str = Field(
        default="catalog_cache", min_length=1, alias="cachePrefix"
    )
    cleanup_interval_ms: int = Field(
        default=5 * 60 * 1000, gt=0, alias="cleanupIntervalMs"
    )

    # Retry / transport
    max_attempts: int = Field(default=3, ge=1, alias="maxAttempts")
    base_delay_ms: int = Field(default=1000, ge=0, alias="baseDelayMs")
    max_delay_ms: int = Field(default=10_000, ge=0, alias="maxDelayMs")
    backoff_factor: float = Field(default=2.0, ge=1.0, alias="backoffFactor")
    request_timeout_ms: int = Field(default=30_000, gt=0, alias="requestTimeoutMs")
    dedup_window_ms: int = Field(default=5000, ge=0, alias="dedupWindowMs")
    slow_threshold_ms: int = Field(default=3000, gt=0, alias="slowThresholdMs")

    # Orchestrator
    background_refresh_enabled: bool = Field(
        default=True, alias="backgroundRefreshEnabled"
    )
    background_refresh_threshold_ms: int = Field(
        default=30 * 60 * 1000, ge=0, alias="backgroundRefreshThresholdMs"
    )

    @model_validator(mode="wrap")
    @classmethod
    def _raise_package_error(cls, data: Any, handler: Any) -> "FetchConfig":
        # Applies to FetchConfig(...) as well as model_validate()
        try:
            return handler(data)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid fetch configuration: {e.error_count()} error(s)",
                context={"errors": e.errors(include_url=False)},
            ) from e

    @classmethod
    def from_options(cls, options: dict[str, Any] | None = None) -> "FetchConfig":
        """Build a config from a partial mapping of overrides."""
        return cls.model_validate(options or {})

    @property
    def ttl(self) -> timedelta:
        return timedelta(milliseconds=self.ttl_ms)

    @property
    def request_timeout(self) -> float:
        """Per-attempt timeout in seconds."""
        return self.request_timeout_ms / 1000
