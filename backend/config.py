# config.py
# ============================================================================
# ECHOBEATS LANDING — APPLICATION CONFIGURATION
# ============================================================================
# Environment-derived settings, built once at startup and passed explicitly
# to the store factory, the payment gateway and the lifecycle controller.
# ============================================================================

import os
from typing import List, Literal, Mapping, Optional

from pydantic import BaseModel, Field


StorageBackend = Literal["auto", "memory", "postgres"]


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class AppConfig(BaseModel):
    """Server configuration from environment"""

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    gateway_timeout_seconds: float = Field(default=20.0, gt=0)

    # Storage
    database_url: Optional[str] = None
    storage_backend: StorageBackend = "auto"
    db_min_pool_size: int = Field(default=1, ge=1)
    db_max_pool_size: int = Field(default=10, ge=1)

    # Server
    host: str = "0.0.0.0"
    port: int = 5000
    env: str = "development"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    forwarded_allow_ips: str = "127.0.0.1"

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    domain_verification_enabled: bool = True

    @property
    def debug(self) -> bool:
        return self.env == "development"

    @property
    def payments_enabled(self) -> bool:
        """Client checkout UI is only offered when a publishable key exists."""
        return bool(self.stripe_publishable_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AppConfig":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(name)
            return value.strip() if value and value.strip() else None

        app_env = get("ENV") or "development"
        return cls(
            stripe_secret_key=get("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=get("STRIPE_WEBHOOK_SECRET"),
            stripe_publishable_key=get("STRIPE_PUBLISHABLE_KEY") or get("VITE_STRIPE_PUBLIC_KEY"),
            gateway_timeout_seconds=float(get("GATEWAY_TIMEOUT_SECONDS") or 20.0),
            database_url=get("DATABASE_URL"),
            storage_backend=(get("STORAGE_BACKEND") or "auto").lower(),
            db_min_pool_size=int(get("DB_MIN_POOL_SIZE") or 1),
            db_max_pool_size=int(get("DB_MAX_POOL_SIZE") or 10),
            host=get("HOST") or "0.0.0.0",
            port=int(get("PORT") or 5000),
            env=app_env,
            cors_origins=[o.strip() for o in (get("CORS_ORIGINS") or "*").split(",") if o.strip()],
            forwarded_allow_ips=get("FORWARDED_ALLOW_IPS") or "127.0.0.1",
            log_level=(get("LOG_LEVEL") or "INFO").upper(),
            log_format=(get("LOG_FORMAT") or ("console" if app_env == "development" else "json")).lower(),
            domain_verification_enabled=_flag(get("DOMAIN_VERIFICATION_ENABLED"), True),
        )
