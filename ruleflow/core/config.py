from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Ruleflow Automation Engine"
    env: str = "dev"
    log_level: str = "INFO"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # AUTOMATION ENGINE
    automation_job_max_attempts: int = Field(default=3, ge=1, le=25)
    automation_backoff_type: Literal["exponential", "fixed"] = "exponential"
    automation_backoff_delay_ms: int = Field(default=1000, ge=0, le=3_600_000)
    automation_backoff_max_ms: int = Field(default=3_600_000, ge=0)
    automation_execution_max_retries: int = Field(default=3, ge=0, le=25)
    automation_execution_lease_seconds: int = Field(default=900, ge=10, le=86_400)
    automation_worker_poll_ms: int = Field(default=1000, ge=50, le=60_000)
    automation_worker_batch_size: int = Field(default=10, ge=1, le=500)
    automation_default_timezone: str = "UTC"

    # EFFECTORS
    messaging_provider_default: str = "stub"
    webhook_action_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    # INBOUND WEBHOOKS
    webhook_signing_secret: str = "dev-webhook-secret"

    @field_validator("automation_default_timezone", "messaging_provider_default", mode="before")
    @classmethod
    def normalize_required_strings(cls, value: str | None) -> str:
        cleaned = str(value or "").strip()
        if not cleaned:
            raise ValueError("Value cannot be empty")
        return cleaned

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str | None) -> str:
        return str(value or "INFO").strip().upper() or "INFO"

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        weak_secrets = {"", "change_me", "dev-webhook-secret"}
        if self.webhook_signing_secret.strip() in weak_secrets or len(self.webhook_signing_secret.strip()) < 24:
            raise ValueError("WEBHOOK_SIGNING_SECRET must be a strong random value in production")
        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point at SQLite in production")
        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
