# billing_service/core/config.py
# All billing-service settings loaded from environment variables / .env file
# In production: values come from the deployment's secret store via env injection
# In development: loaded from .env file via python-dotenv

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for billing-service configuration.
    pydantic-settings automatically reads from environment variables.
    Variable names are case-insensitive.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_env: str = "development"
    app_name: str = "GymFit Billing Service"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 3004
    allowed_origins: str = "http://localhost:3000,http://localhost:5173"
    frontend_url: str = "http://localhost:3000"

    # Database
    database_url: str
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_seconds: int = 20
    db_statement_timeout_ms: int = 15000
    db_retry_attempts: int = 2             # retries after the first attempt
    db_retry_base_delay_seconds: float = 0.2
    db_retry_max_delay_seconds: float = 2.0
    auto_migrate_on_startup: bool = False

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 2.0
    webhook_idempotency_ttl_seconds: int = 7 * 24 * 3600
    compensation_task_ttl_seconds: int = 24 * 3600
    plan_cache_ttl_seconds: int = 3600

    # Sibling services
    member_service_url: str = "http://member-service:3002"
    identity_service_url: str = "http://identity-service:3001"
    service_read_timeout_seconds: float = 5.0
    service_write_timeout_seconds: float = 10.0

    # Webhooks
    payment_webhook_secret: str = ""
    sepay_api_key: str = ""

    # Bank transfer (Sepay)
    sepay_api_base_url: str = "https://my.sepay.vn/userapi"
    sepay_qr_base_url: str = "https://qr.sepay.vn"
    sepay_account_number: str = ""
    sepay_account_name: str = ""
    sepay_bank_code: str = ""
    sepay_bank_name: str = ""
    bank_transfer_expiry_minutes: int = 30

    # Billing rules
    currency: str = "VND"
    max_payment_retries: int = 3
    loyalty_amount_per_point: int = 10000  # 1 point per 10,000 VND paid

    # Background jobs
    enable_background_jobs: bool = True
    expiration_job_hour_utc: int = 1
    revenue_report_hour_utc: int = 0
    compensation_drain_interval_seconds: int = 300
    compensation_max_attempts: int = 8
    compensation_backoff_base_seconds: int = 60

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Parse comma-separated ALLOWED_ORIGINS into a list."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.
    Use as a FastAPI dependency: settings = Depends(get_settings)
    Or import directly:         from billing_service.core.config import settings
    """
    return Settings()


# Module-level singleton -- import this directly in most places
settings = get_settings()
