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
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/ghl_ingest"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (alert cooldowns, scheduler heartbeats)
    redis_url: str = "redis://localhost:6379/0"

    # Cron trigger auth - bearer secret OR platform scheduler header
    cron_secret: str = ""
    cron_platform_header: str = "x-vercel-cron"

    # GHL marketplace app
    api_base_url: str = "http://localhost:8000"
    ghl_oauth_url: str = "https://services.leadconnectorhq.com/oauth/token"
    ghl_client_id: str = ""
    ghl_client_secret: str = ""
    ghl_public_key: str = ""  # PEM, used to verify x-wh-signature
    verify_webhook_signatures: bool = True
    webhook_max_age_seconds: int = 300

    # Timeouts
    downstream_timeout_seconds: float = 15.0
    handler_timeout_seconds: float = 45.0

    # Batch sizes per cron tick
    webhook_batch_size: int = 50
    install_batch_size: int = 10
    sync_batch_size: int = 5
    cron_concurrency: int = 10

    # Retry policy (linear backoff: attempts * unit)
    max_attempts: int = 3
    webhook_backoff_seconds: int = 60
    sync_backoff_seconds: int = 300
    processing_timeout_seconds: int = 300

    # Install orchestration
    install_lock_ttl_seconds: int = 300
    install_stale_after_seconds: int = 600
    agency_sync_delay_seconds: int = 5

    # Dedup + retention
    dedup_window_seconds: int = 3600
    completed_retention_hours: int = 24
    audit_retention_days: int = 7

    # OAuth
    token_refresh_buffer_hours: int = 4
    token_refresh_batch_size: int = 25

    # Embedded scheduler (for deployments without an external cron)
    run_embedded_scheduler: bool = False
    scheduler_interval_seconds: int = 60

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
