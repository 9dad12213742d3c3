"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost/leadcall"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Voice provider (Retell)
    retell_api_key: str = ""
    retell_base_url: str = "https://api.retellai.com"
    retell_from_number: str = ""
    retell_timeout_seconds: float = 10.0

    # Shared secret for call webhook HMAC (falls back to retell_api_key)
    call_webhook_secret: str = ""

    # Twilio (WhatsApp fallback channel)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_messaging_service_sid: str = ""
    twilio_whatsapp_from: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Contact policy
    default_timezone: str = "America/Sao_Paulo"
    business_days: str = "0,1,2,3,4,5"  # Monday=0 ... Saturday=5
    business_start_hour: int = 8
    business_end_hour: int = 20
    retry_lookahead_hours: int = 2
    appointment_buffer_hours: int = 2
    voicemail_callback_min_minutes: int = 15
    voicemail_callback_max_minutes: int = 25
    default_max_attempts: int = 3
    min_attempt_gap_hours: int = 2
    dispatch_failure_backoff_minutes: int = 15
    stale_attempt_timeout_minutes: int = 120

    # Sweep loops
    retry_sweep_interval_seconds: int = 600
    channel_prompt_interval_seconds: int = 3600
    sweep_batch_size: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def webhook_secret(self) -> str:
        return self.call_webhook_secret or self.retell_api_key

    @property
    def business_day_set(self) -> frozenset[int]:
        return frozenset(
            int(d) for d in self.business_days.split(",") if d.strip()
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
