"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    api_key: str = ""  # X-API-Key for operator endpoints (empty = open in development)

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Journey worker
    journey_backend: str = Field(default="redis", pattern=r"^(redis|memory)$")
    journey_poll_interval_seconds: float = 5.0
    journey_worker_concurrency: int = 10
    journey_job_max_retries: int = 3
    journey_lock_ttl_seconds: int = 60
    journey_lock_wait_seconds: float = 10.0

    # Messaging window (local wall clock)
    timezone: str = "Asia/Kolkata"
    quiet_hours_start: int = Field(default=10, ge=0, le=24)
    quiet_hours_end: int = Field(default=19, ge=0, le=24)

    # Proactive outreach caps
    proactive_daily_limit: int = 1
    proactive_rolling_limit: int = 3
    proactive_rolling_days: int = 10

    # WhatsApp templates
    wa_template_intro: str = ""
    wa_template_nudge1: str = ""
    wa_template_nudge2: str = ""
    wa_template_language: str = Field(default="en", pattern=r"^[a-z]{2}(-[A-Z]{2})?$")

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_from: str = ""
    twilio_messaging_service_sid: str = ""
    twilio_template_map: str = ""  # JSON: {"intro:en": "HX...", "nudge": "HX..."}

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts


@lru_cache()
def get_settings() -> Settings:
    return Settings()
