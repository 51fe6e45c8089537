"""
Configuration for Lawman Case Workflow Service
==============================================

Environment variables:
- ENVIRONMENT: development|production (default: development)
- JWT_SECRET_KEY: Signing secret for access/refresh tokens
- ACCESS_TOKEN_EXPIRE_MINUTES: Access token lifetime (default: 15)
- REFRESH_TOKEN_EXPIRE_DAYS: Refresh token lifetime (default: 7)
- SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASSWORD / SMTP_FROM: Primary mail transport
- BREVO_API_KEY: Fallback mail transport (Brevo HTTPS API)
- MAIL_RETRIES / MAIL_RETRY_DELAY_SECONDS: Retry policy for the mail core
- NOTIFICATION_COOLDOWN_SECONDS / NOTIFICATION_NOT_FOUND_COOLDOWN_SECONDS: Cooldown tiers
- NOTIFICATION_COOLDOWN_FILE: Where the API client persists not-found cooldowns
- API_HOST / API_PORT / ENFORCE_HTTPS / HSTS_MAX_AGE: HTTP serving
- SCHEDULER_ENABLED: Run deadline polling / stale cleanup in the API process (default: true)
- DATABASE_URL: Read directly by db.session (default: sqlite:///./lawman.db)
"""

from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    environment: str = "development"
    log_level: str = "INFO"

    # Session tokens
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    refresh_cookie_name: str = "refreshToken"

    # Primary mail transport (SMTP)
    smtp_host: Optional[str] = None
    smtp_port: int = 465
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: str = "Lawman Legal <noreply@lawman.legal>"
    smtp_timeout: int = 20

    # Fallback mail transport (Brevo)
    brevo_api_key: Optional[str] = None
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"

    # Mail retry policy
    mail_retries: int = 2
    mail_retry_delay_seconds: float = 2.0

    # Notification cooldown tiers (seconds); the long tier persists in the client's file
    notification_cooldown_seconds: int = 60
    notification_not_found_cooldown_seconds: int = 24 * 60 * 60
    notification_cooldown_file: str = "~/.lawman/cooldowns.json"

    # Deadlines / background jobs
    deadline_soon_hours: int = 48
    kpi_deadline_window_days: int = 7
    deadline_poll_interval_seconds: int = 300
    stale_case_cleanup_enabled: bool = False
    stale_case_max_hours: int = 120
    stale_cleanup_interval_seconds: int = 3600
    scheduler_enabled: bool = True

    # HTTP
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    enforce_https: bool = False
    hsts_max_age: int = 31536000
    cors_allow_origins: str = "http://localhost:5173,http://127.0.0.1:5173"
    app_url: str = "http://localhost:5173"

    # Service info
    service_version: str = "1.0.0"

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    def cors_origins(self) -> List[str]:
        origins: List[str] = []
        for item in self.cors_allow_origins.split(","):
            origin = item.strip().strip('"').strip("'").rstrip("/")
            if origin:
                origins.append(origin)
        return origins

    def validate_mail_config(self) -> List[str]:
        """Validate mail configuration, return list of warnings"""
        warnings = []

        if not self.smtp_configured and not self.brevo_api_key:
            warnings.append("Neither SMTP_* nor BREVO_API_KEY set - emails will not be delivered")
        elif not self.smtp_configured:
            warnings.append("SMTP_* not set - mail goes through Brevo only")
        elif not self.brevo_api_key:
            warnings.append("BREVO_API_KEY not set - no fallback if SMTP fails")

        if self.is_production and self.jwt_secret_key == "dev-secret-key-change-in-production":
            warnings.append("JWT_SECRET_KEY is the development default in production")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
