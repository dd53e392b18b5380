"""Environment-driven settings.

Everything is read once at import into the frozen SETTINGS singleton; a bad
value fails startup with a ValueError naming the variable rather than
surfacing later as a confusing checkout or database error.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]


def _getenv(name: str, default: str) -> str:
    return os.environ.get(name, default).strip()


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    frontend_url: str = "http://localhost:5173"
    checkout_currency: str = "usd"
    gateway_timeout_seconds: float = 10.0
    jwt_public_key: str | None = None

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")
    timeout_raw = _getenv("GATEWAY_TIMEOUT_SECONDS", "10")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    try:
        gateway_timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"GATEWAY_TIMEOUT_SECONDS must be a number (got {timeout_raw!r})"
        ) from None
    if gateway_timeout <= 0:
        raise ValueError(
            f"GATEWAY_TIMEOUT_SECONDS must be positive (got {timeout_raw!r})"
        )

    currency = _getenv("CHECKOUT_CURRENCY", "usd").lower()
    if len(currency) != 3 or not currency.isalpha():
        raise ValueError(
            f"CHECKOUT_CURRENCY must be a 3-letter ISO code (got {currency!r})"
        )

    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None
    stripe_secret_key = _getenv("STRIPE_SECRET_KEY", "") or None
    stripe_webhook_secret = _getenv("STRIPE_WEBHOOK_SECRET", "") or None

    # Without them the unsigned in-memory gateway would be wired in
    if app_env_raw == "prod" and not (stripe_secret_key and stripe_webhook_secret):
        raise ValueError(
            "STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET are required when APP_ENV=prod"
        )

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getenv_bool("LOG_JSON", False),
        port=port,
        database_url=database_url,
        redis_url=redis_url,
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=stripe_webhook_secret,
        frontend_url=_getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        checkout_currency=currency,
        gateway_timeout_seconds=gateway_timeout,
        jwt_public_key=_getenv("JWT_PUBLIC_KEY", "") or None,
    )


SETTINGS = load_settings()
