import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from catalog.services.config import FetchConfig

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Catalog API
    api_base_url: str = Field(
        default="https://benefits-backend-v2-public.onrender.com",
        alias="CATALOG_API_BASE_URL",
    )

    # Persistent cache store
    cache_db_url: str = Field(
        default="sqlite+aiosqlite:///./catalog_cache.db", alias="CATALOG_CACHE_DB_URL"
    )
    cache_capacity_bytes: int | None = Field(
        default=None, alias="CATALOG_CACHE_CAPACITY_BYTES"
    )

    # Fetch tuning (unset values keep the FetchConfig defaults)
    ttl_ms: int | None = Field(default=None, alias="CATALOG_TTL_MS")
    max_entries: int | None = Field(default=None, alias="CATALOG_MAX_ENTRIES")
    max_storage_bytes: int | None = Field(
        default=None, alias="CATALOG_MAX_STORAGE_BYTES"
    )
    schema_version: str | None = Field(default=None, alias="CATALOG_SCHEMA_VERSION")
    max_attempts: int | None = Field(default=None, alias="CATALOG_MAX_ATTEMPTS")
    request_timeout_ms: int | None = Field(
        default=None, alias="CATALOG_REQUEST_TIMEOUT_MS"
    )
    background_refresh_enabled: bool | None = Field(
        default=None, alias="CATALOG_BACKGROUND_REFRESH"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    debug: bool = Field(default=False, alias="CATALOG_DEBUG")

    def fetch_config(self) -> FetchConfig:
        """FetchConfig with the environment overrides applied."""
        overrides = {
            name: value
            for name in (
                "ttl_ms",
                "max_entries",
                "max_storage_bytes",
                "schema_version",
                "max_attempts",
                "request_timeout_ms",
                "background_refresh_enabled",
            )
            if (value := getattr(self, name)) is not None
        }
        return FetchConfig.from_options(overrides)


def load_settings() -> Settings:
    """Read settings from the process environment."""
    return Settings.model_validate(dict(os.environ))


global_settings = load_settings()
