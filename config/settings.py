"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Apex Sports Booking API"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    DEV_AUTH_ENABLED: bool = True

    # ── Stripe ───────────────────────────────────────────────
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PLATFORM_FEE_PERCENT: float = 10.0
    STRIPE_CURRENCY: str = "usd"
    STRIPE_MIN_CHARGE_CENTS: int = 50
    STRIPE_MAX_NETWORK_RETRIES: int = 1
    STRIPE_TIMEOUT_SECONDS: int = 8

    PAYMENT_BREAKER_FAIL_MAX: int = 5
    PAYMENT_BREAKER_RESET_SECONDS: int = 60

    # ── Notifications ────────────────────────────────────────
    NOTIFICATIONS_ENABLED: bool = True
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "notifications@apexsports.example.com"
    EMAIL_FROM_NAME: str = "Apex Sports"
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    SEND_SMS: bool = True
    APP_URL: str = ""
    NOTIFICATION_TIMEZONE: str = "America/Los_Angeles"

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 60

    # ── Business Config ──────────────────────────────────────
    MAX_RULE_SPAN_DAYS: int = 730
    BOOKING_MESSAGE_MAX_LENGTH: int = 2000

    @field_validator("STRIPE_PLATFORM_FEE_PERCENT")
    @classmethod
    def clamp_fee_percent(cls, v: float) -> float:
        return min(100.0, max(0.0, v))

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def dev_auth_allowed(self) -> bool:
        return self.DEV_AUTH_ENABLED and not self.is_production

    @property
    def my_bookings_url(self) -> str:
        base = self.APP_URL.rstrip("/")
        return f"{base}/bookings" if base else ""

    def connect_onboarding_url(self, state: str) -> str:
        """Where the processor sends a coach back to after payout onboarding."""
        base = self.APP_URL.rstrip("/") or "http://localhost:5173"
        return f"{base}/dashboard/profile?connect={state}"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance; import `settings` rather than calling this."""
    return Settings()


settings = get_settings()
