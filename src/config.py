from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    app_public_base_url: str
    cors_allow_origins: str = "http://localhost:3000"

    default_minimum_quorum: float = 50.0
    default_approval_threshold: float = 75.0
    default_requires_majority: bool = True
    default_voting_period_hours: int = 168
    max_comment_length: int = 1000
    allow_ballot_changes: bool = True

    vote_rate_limit_attempts: int = 5
    vote_rate_limit_window_seconds: float = 60.0
    vote_rate_limit_max_keys: int = 10_000

    resend_api_key: str | None = None
    email_from: str = "board-notifications@resend.dev"
    email_http_timeout_seconds: float = 10.0
    delivery_max_attempts: int = 3
    delivery_backoff_base_seconds: float = 0.5
    delivery_max_concurrency: int = 5

    deadline_sweep_interval_seconds: float = 60.0
    notification_retry_window_hours: float = 24.0
    max_dispatch_attempts_per_episode: int = 3

    voting_webhook_secret: str = ""

    web_access_token_expiry_hours: int = 24 * 30
    web_access_token_secret: str = "change-me-in-production"

    ops_console_enabled: bool = False
    ops_console_require_admin: bool = True
    ops_event_buffer_size: int = 500

    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_seconds: int = 30
    db_echo_sql: bool = False

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("app_public_base_url")
    @classmethod
    def validate_public_base_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("APP_PUBLIC_BASE_URL must be provided")
        return value.rstrip("/")

    @field_validator("default_minimum_quorum", "default_approval_threshold")
    @classmethod
    def validate_percentage(cls, value: float) -> float:
        if not 0 <= value <= 100:
            raise ValueError("percentage thresholds must be within [0, 100]")
        return value

    @field_validator("delivery_max_attempts")
    @classmethod
    def validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("DELIVERY_MAX_ATTEMPTS must be at least 1")
        return value

    def cors_allow_origin_list(self) -> list[str]:
        return [item.strip() for item in self.cors_allow_origins.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
