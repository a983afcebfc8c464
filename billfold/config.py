from __future__ import annotations

import os
from dataclasses import dataclass

PAYMENT_MODES = {"accumulate", "overwrite"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD").strip().upper()
    if len(raw) != 3 or not raw.isalpha():
        return "USD"
    return raw


def _payment_mode() -> str:
    raw = os.getenv("BILL_PAYMENT_MODE", "accumulate").strip().lower()
    return raw if raw in PAYMENT_MODES else "accumulate"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./billfold.db"
    frontend_origin: str = "http://localhost:3000"
    default_currency: str = "USD"
    exchange_rate_api_key: str | None = None
    exchange_rate_base_url: str = "https://v6.exchangerate-api.com/v6"
    rate_cache_ttl_seconds: int = 12 * 60 * 60
    rate_cache_max_entries: int = 500
    rate_timeout_seconds: float = 10.0
    rate_max_retries: int = 3
    rate_backoff_seconds: float = 1.0
    bill_late_fee: int = 3500
    bill_minimum_payment_floor: int = 2500
    bill_payment_mode: str = "accumulate"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            default_currency=_default_currency(),
            exchange_rate_api_key=os.getenv("EXCHANGERATE_API_KEY") or None,
            exchange_rate_base_url=os.getenv("EXCHANGERATE_BASE_URL", cls.exchange_rate_base_url),
            rate_cache_ttl_seconds=_env_int("RATE_CACHE_TTL_SECONDS", cls.rate_cache_ttl_seconds),
            rate_cache_max_entries=_env_int("RATE_CACHE_MAX_ENTRIES", cls.rate_cache_max_entries),
            rate_timeout_seconds=_env_float("RATE_TIMEOUT_SECONDS", cls.rate_timeout_seconds),
            rate_max_retries=_env_int("RATE_MAX_RETRIES", cls.rate_max_retries),
            rate_backoff_seconds=_env_float("RATE_BACKOFF_SECONDS", cls.rate_backoff_seconds),
            bill_late_fee=_env_int("BILL_LATE_FEE", cls.bill_late_fee),
            bill_minimum_payment_floor=_env_int(
                "BILL_MINIMUM_PAYMENT_FLOOR", cls.bill_minimum_payment_floor
            ),
            bill_payment_mode=_payment_mode(),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            host=os.getenv("HOST", cls.host),
            port=_env_int("PORT", cls.port),
        )
