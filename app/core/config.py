from __future__ import annotations

import os
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseAppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "GatoFit Billing"
    ENV: str = "dev"
    DATABASE_URL: str | None = None
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SSL_CERT_REQS: str | None = "required"
    JWT_SECRET: str = "change_me"
    FRONTEND_URL: str = "https://gatofit.app"

    # Email notifications (SMTP, any relay)
    NOTIFICATIONS_ENABLED: bool = True
    FROM_EMAIL: str | None = None
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None

    # PayPal (recurring billing processor)
    PAYPAL_MODE: str = "sandbox"  # sandbox | live
    PAYPAL_CLIENT_ID: str | None = None
    PAYPAL_CLIENT_SECRET: str | None = None
    PAYPAL_WEBHOOK_ID: str | None = None
    PAYPAL_PRODUCT_ID: str | None = None
    PAYPAL_BRAND_NAME: str = "GatoFit"
    PAYPAL_LOCALE: str = "en-US"

    # Processor call budget
    PROCESSOR_READ_TIMEOUT_SECONDS: float = 15.0
    PROCESSOR_WRITE_TIMEOUT_SECONDS: float = 25.0
    PROCESSOR_MAX_RETRIES: int = 2
    PROCESSOR_BACKOFF_SECONDS: float = 0.5
    PROCESSOR_TOKEN_REFRESH_MARGIN_SECONDS: int = 60

    # Lifecycle policy
    GRACE_PERIOD_DAYS: int = 3
    PLAN_CHANGE_GUARD_HOURS: int = 24
    RECONCILER_INTERVAL_MINUTES: int = 15
    RECONCILER_BATCH_SIZE: int = 200
    PREMIUM_CACHE_TTL_SECONDS: int = 300

    CORS_ALLOW_ORIGINS: list[str] = ["*"]
    CORS_ALLOW_METHODS: list[str] = ["*"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    HSTS_SECONDS: int = 31_536_000
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "plain"
    SENTRY_DSN: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1
    AUDIT_LOG_FILE: str | None = "storage/audit.log"
    METRICS_TOKEN: str | None = None  # when set, /metrics requires "Bearer <token>"

    @field_validator("PAYPAL_MODE", mode="before")
    @classmethod
    def normalize_paypal_mode(cls, v):
        """Anything other than 'live' talks to the sandbox."""
        if v is None:
            return "sandbox"
        return "live" if str(v).strip().lower() == "live" else "sandbox"

    @property
    def PAYPAL_BASE_URL(self) -> str:
        if self.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @model_validator(mode="after")
    def _validate_required_fields(self) -> BaseAppSettings:
        # Convert Heroku's postgres:// URL to postgresql://
        if self.DATABASE_URL and self.DATABASE_URL.startswith("postgres://"):
            self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql://", 1)

        if self.GRACE_PERIOD_DAYS < 1:
            raise ValueError("GRACE_PERIOD_DAYS must be at least 1")
        # Reconciler must tick more often than the shortest grace window
        if self.RECONCILER_INTERVAL_MINUTES >= self.GRACE_PERIOD_DAYS * 24 * 60:
            raise ValueError("RECONCILER_INTERVAL_MINUTES must be shorter than the grace period")
        if self.PROCESSOR_MAX_RETRIES < 0:
            raise ValueError("PROCESSOR_MAX_RETRIES cannot be negative")

        required_in_prod = (
            "DATABASE_URL",
            "JWT_SECRET",
            "PAYPAL_CLIENT_ID",
            "PAYPAL_CLIENT_SECRET",
            "PAYPAL_WEBHOOK_ID",
            "PAYPAL_PRODUCT_ID",
        )
        if self.ENV.lower() == "prod":
            missing = [name for name in required_in_prod if not getattr(self, name)]
            default_violations: list[str] = []
            if self.JWT_SECRET == "change_me":
                default_violations.append("JWT_SECRET uses default placeholder")
            if missing:
                raise ValueError(f"Missing required production settings: {', '.join(missing)}")
            if default_violations:
                raise ValueError("Insecure default secrets in production: " + ", ".join(default_violations))
        return self


class DevSettings(BaseAppSettings):
    ENV: str = "dev"
    DATABASE_URL: str = "sqlite:///./storage/dev.db"
    FRONTEND_URL: str = "http://localhost:3000"
    PAYPAL_CLIENT_ID: str = "dev-paypal-client"
    PAYPAL_CLIENT_SECRET: str = "dev-paypal-secret"
    PAYPAL_PRODUCT_ID: str = "PROD-DEV"


class TestSettings(BaseAppSettings):
    ENV: str = "test"
    DATABASE_URL: str = "sqlite:///:memory:"
    PAYPAL_CLIENT_ID: str = "test-paypal-client"
    PAYPAL_CLIENT_SECRET: str = "test-paypal-secret"
    PAYPAL_WEBHOOK_ID: str = "WH-TEST"
    PAYPAL_PRODUCT_ID: str = "PROD-TEST"
    PROCESSOR_BACKOFF_SECONDS: float = 0.0
    NOTIFICATIONS_ENABLED: bool = False
    AUDIT_LOG_FILE: str | None = None


class ProdSettings(BaseAppSettings):
    ENV: str = "prod"
    PAYPAL_MODE: str = "live"
    CORS_ALLOW_ORIGINS: list[str] = [
        "https://gatofit.app",
        "https://www.gatofit.app",
    ]
    CORS_ALLOW_CREDENTIALS: bool = True
    LOG_FORMAT: str = "json"


_ENV_TO_SETTINGS: dict[str, type[BaseAppSettings]] = {
    "dev": DevSettings,
    "development": DevSettings,
    "test": TestSettings,
    "testing": TestSettings,
    "prod": ProdSettings,
    "production": ProdSettings,
}


@lru_cache
def get_settings() -> BaseAppSettings:
    env_name = os.getenv("APP_ENV") or os.getenv("ENV") or "dev"
    env = env_name.lower()
    settings_cls = _ENV_TO_SETTINGS.get(env, DevSettings)
    return settings_cls()


settings = get_settings()
