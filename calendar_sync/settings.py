from __future__ import annotations

import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")
    google_token_encryption_key: str = Field(..., alias="GOOGLE_TOKEN_ENCRYPTION_KEY")
    backend_session_secret: str = Field(..., alias="BACKEND_SESSION_SECRET")

    calendar_timezone: str = Field("UTC", alias="CALENDAR_TIMEZONE")
    default_calendar_id: str = Field("primary", alias="DEFAULT_CALENDAR_ID")

    calendar_client_id: str | None = Field(None, alias="CALENDAR_CLIENT_ID")
    calendar_client_secret: str | None = Field(None, alias="CALENDAR_CLIENT_SECRET")
    calendar_redirect_uri: str | None = Field(None, alias="CALENDAR_REDIRECT_URI")
    oauth_state_ttl_seconds: int = Field(600, alias="OAUTH_STATE_TTL_SECONDS")

    token_refresh_buffer_seconds: int = Field(300, alias="TOKEN_REFRESH_BUFFER_SECONDS")
    token_refresh_max_attempts: int = Field(3, alias="TOKEN_REFRESH_MAX_ATTEMPTS")
    token_refresh_backoff_seconds: float = Field(0.5, alias="TOKEN_REFRESH_BACKOFF_SECONDS")

    provider_max_retries: int = Field(3, alias="PROVIDER_MAX_RETRIES")
    provider_backoff_seconds: float = Field(1.0, alias="PROVIDER_BACKOFF_SECONDS")
    provider_page_size: int = Field(250, alias="PROVIDER_PAGE_SIZE")
    default_rate_limit_delay_seconds: int = Field(60, alias="DEFAULT_RATE_LIMIT_DELAY_SECONDS")

    routine_window_days: int = Field(7, alias="ROUTINE_WINDOW_DAYS")
    inbound_horizon_days: int = Field(30, alias="INBOUND_HORIZON_DAYS")

    outbox_max_attempts: int = Field(5, alias="OUTBOX_MAX_ATTEMPTS")
    outbox_batch_size: int = Field(25, alias="OUTBOX_BATCH_SIZE")
    outbox_poll_seconds: float = Field(5.0, alias="OUTBOX_POLL_SECONDS")

    materializer_interval_seconds: int = Field(3600, alias="MATERIALIZER_INTERVAL_SECONDS")
    inbound_sync_interval_seconds: int = Field(900, alias="INBOUND_SYNC_INTERVAL_SECONDS")
    run_background_worker: bool = Field(True, alias="RUN_BACKGROUND_WORKER")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


# For local dev convenience only.
if os.getenv("CALENDAR_SYNC_DEBUG_SETTINGS"):
    print(get_settings())
