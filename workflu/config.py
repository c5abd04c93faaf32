"""
WorkFlu - Configuration Settings

This module handles all application configuration using Pydantic Settings.
Environment variables are loaded from .env file.

Runtime business configuration (exchange rate, approval thresholds, credit
terms) lives in the system_settings table and is read through
ConfigurationService; the values here are only its fallbacks.
"""

from functools import lru_cache
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===========================================
    # APPLICATION CONFIGURATION
    # ===========================================
    app_name: str = "WorkFlu"
    app_env: str = "development"
    debug: bool = True
    secret_key: str  # Required - must be set in .env
    api_version: str = "v1"
    base_url: str = "http://localhost:5000"  # Base URL for action links

    # ===========================================
    # DATABASE CONFIGURATION
    # ===========================================
    database_url_async: str  # Required - must be set in .env
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # ===========================================
    # JWT AUTHENTICATION
    # ===========================================
    jwt_secret_key: str  # Required - must be set in .env
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # ===========================================
    # REDIS / CELERY CONFIGURATION
    # ===========================================
    redis_url: str = "redis://localhost:6379/0"
    celery_timezone: str = "Africa/Addis_Ababa"

    # ===========================================
    # EMAIL CONFIGURATION
    # ===========================================
    email_enabled: bool = True  # False leaves the email channel without a transport
    email_provider: str = ""  # Empty = pick from configured credentials
    mail_server: str = ""
    mail_port: int = 587
    mail_use_tls: bool = True
    mail_username: str = ""
    mail_password: str = ""
    mail_from: str = ""
    mail_from_name: str = "WorkFlu Notifications"
    sendgrid_api_key: str = ""
    mailgun_api_key: str = ""
    mailgun_domain: str = ""

    @property
    def smtp_host(self) -> str:
        """SMTP host server."""
        return self.mail_server

    @property
    def smtp_port(self) -> int:
        """SMTP port."""
        return self.mail_port

    @property
    def smtp_username(self) -> str:
        """SMTP username."""
        return self.mail_username

    @property
    def smtp_password(self) -> str:
        """SMTP password."""
        return self.mail_password

    @property
    def smtp_use_tls(self) -> bool:
        """Whether to use TLS for SMTP."""
        return self.mail_use_tls

    @property
    def email_from(self) -> str:
        """Email from address."""
        return self.mail_from or self.mail_username or "noreply@workflu.local"

    # ===========================================
    # SMS GATEWAY
    # Empty URL = simulated delivery (logged only)
    # ===========================================
    sms_gateway_url: str = ""
    sms_api_key: str = ""
    sms_sender_id: str = "WorkFlu"
    sms_timeout_seconds: float = 10.0

    # ===========================================
    # WEBHOOK DELIVERY
    # ===========================================
    webhook_secret: str  # Required - shared HMAC secret for X-WorkFlu-Signature
    webhook_timeout_seconds: float = 10.0
    webhook_user_agent: str = "WorkFlu-Notifications/1.0"

    # ===========================================
    # NOTIFICATION ENGINE
    # ===========================================
    notification_default_language: str = "en"
    notification_queue_batch_size: int = 50
    notification_retry_batch_size: int = 20
    notification_max_attempts: int = 5
    notification_retention_days: int = 90  # Archive after
    notification_history_retention_days: int = 365  # Purge archived after
    health_check_critical_threshold: int = 5  # Critical alerts in 24h before admins are alerted

    # ===========================================
    # SCHEDULER
    # ===========================================
    scheduler_enabled: bool = True
    scheduler_disabled_jobs: str = ""  # Comma-separated job names

    @property
    def scheduler_disabled_jobs_list(self) -> List[str]:
        """Parse disabled job names into list."""
        return [name.strip() for name in self.scheduler_disabled_jobs.split(",") if name.strip()]

    # ===========================================
    # APPROVAL WORKFLOW
    # ===========================================
    approval_escalation_hours: int = 24
    approval_threshold_purchase: Optional[float] = 10000.0
    approval_threshold_capital_entry: Optional[float] = 5000.0
    approval_threshold_supplier_advance: Optional[float] = 2000.0
    approval_threshold_purchase_return: Optional[float] = 5000.0

    @property
    def approval_thresholds(self) -> Dict[str, Optional[float]]:
        """Fallback thresholds keyed by operation type."""
        return {
            "purchase": self.approval_threshold_purchase,
            "capital_entry": self.approval_threshold_capital_entry,
            "supplier_advance": self.approval_threshold_supplier_advance,
            "purchase_return": self.approval_threshold_purchase_return,
        }

    # ===========================================
    # CENTRAL FINANCIAL DEFAULTS
    # ===========================================
    default_usd_etb_rate: Optional[float] = None  # No default: the rate must be configured
    supplier_advance_terms_days: int = 30
    capital_low_balance_threshold: float = 50000.0

    # ===========================================
    # CORS SETTINGS
    # ===========================================
    cors_origins: str = "http://localhost:3000,http://localhost:5000"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string into list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


# Export settings instance
settings = get_settings()
