from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Noti Server"
    environment: str = "dev"

    port: int = 8000
    database_url: str = "sqlite:///./notifications.db"

    # Shared secret compared against the Authorization header
    auth_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AUTHED", "AUTH_TOKEN"),
    )

    # Push gateway credentials (JSON file with "api_key" and optional "endpoint")
    push_credentials_file: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AUTH_FILE", "PUSH_CREDENTIALS_FILE"),
    )
    push_gateway_url: str = "http://localhost:9000/send"
    push_timeout_seconds: float = 10.0

    # Dispatch pipeline
    poll_interval_seconds: float = 5.0
    poll_batch_size: int = Field(default=100, ge=1)
    worker_count: int = Field(default=10, ge=1)
    claim_timeout_seconds: float = 300.0

    # Insert retries on "database is locked"
    insert_max_attempts: int = Field(default=10, ge=1)
    insert_backoff_seconds: float = 1.0

    # Retention
    retention_hours: float = 24.0
    retention_run_hour: int = Field(default=0, ge=0, le=23)
    retention_timezone: str | None = None  # e.g. "Asia/Singapore"; local time when unset

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )


settings = Settings()


def get_settings() -> Settings:
    return settings
