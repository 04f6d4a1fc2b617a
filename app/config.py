"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Environnement d'exécution: "dev" | "staging" | "prod"
ENV = os.getenv("PETCARE_ENV", "dev").lower()

# Clé legacy (uniquement tolérée en DEV)
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY") or "dev-secret-key"
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "dev_local"}

# Scopes reconnus
API_SCOPES = {"donor", "support", "admin"}

# Scheduler (optionnel)
SCHEDULER_ENABLED = os.getenv("PETCARE_SCHEDULER_ENABLED", "0") in {
    "1",
    "true",
    "yes",
    "True",
    "YES",
}


class Settings(BaseSettings):
    """Environment configuration for the PetCare payments backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///petcare.db"
    psp_webhook_secret: str | None = None
    psp_webhook_secret_next: str | None = None
    psp_webhook_max_drift_seconds: int = 180
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = [
        "https://petcare.org.ua",
        "https://app.petcare.org.ua",
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Reconciliation ------------------------------------------------
    SCHEDULER_ENABLED: bool = SCHEDULER_ENABLED
    RECONCILIATION_INTERVAL_MINUTES: int = 24 * 60

    # --- Guardianships & subscriptions ---------------------------------
    GUARDIANSHIP_GRACE_DAYS: int = 3
    SUBSCRIPTION_CHARGE_TOLERANCE_DAYS: int = 3
    SUBSCRIPTION_BILLING_PERIOD_DAYS: int = 30
    DEFAULT_CURRENCY: str = "UAH"

    # --- Payment gateway -----------------------------------------------
    PAYMENT_GATEWAY: str = "stub"
    PAYMENT_PROVIDER_NAME: str = "LiqPay"
    STRIPE_ENABLED: bool = False
    STRIPE_SECRET_KEY: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("psp_webhook_secret", "psp_webhook_secret_next")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty webhook secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class AppInfo(BaseModel):
    name: str = "petcare-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "API_SCOPES",
    "SCHEDULER_ENABLED",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
