from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
from typing import Mapping, Optional

from budget_client.currency_conversion import ensure_supported_currency, normalize_currency

logger = logging.getLogger(__name__)

SYSTEM_BASE_CURRENCY = "PHP"
SYSTEM_DEFAULT_CURRENCY = "EUR"


@dataclass(frozen=True)
class Settings:
    api_base_url: str = "http://localhost:5000/api"
    api_token: Optional[str] = None
    base_currency: str = SYSTEM_BASE_CURRENCY
    default_currency: str = SYSTEM_DEFAULT_CURRENCY
    rates_url: str = "https://api.exchangerate-api.com/v4/latest"
    static_rates: Optional[Mapping[str, float]] = None
    preferences_db_url: str = "sqlite:///./budget_client.db"
    rates_stale_after_seconds: float = 30 * 60
    rates_refresh_interval_seconds: float = 60 * 60
    rates_max_attempts: int = 3
    rates_retry_delay_seconds: float = 1.0
    budget_refetch_delay_seconds: float = 1.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            api_base_url=os.getenv("BUDGET_API_URL", cls.api_base_url),
            api_token=os.getenv("BUDGET_API_TOKEN") or None,
            base_currency=_currency_from_env("BASE_CURRENCY", SYSTEM_BASE_CURRENCY, supported=False),
            default_currency=_currency_from_env("DEFAULT_CURRENCY", SYSTEM_DEFAULT_CURRENCY),
            rates_url=os.getenv("RATES_URL", cls.rates_url),
            static_rates=_static_rates_from_env(),
            preferences_db_url=os.getenv("PREFERENCES_DB_URL", cls.preferences_db_url),
            rates_stale_after_seconds=_number_from_env(
                "RATES_STALE_AFTER_SECONDS", cls.rates_stale_after_seconds
            ),
            rates_refresh_interval_seconds=_number_from_env(
                "RATES_REFRESH_INTERVAL_SECONDS", cls.rates_refresh_interval_seconds
            ),
            rates_max_attempts=max(1, int(_number_from_env("RATES_MAX_ATTEMPTS", cls.rates_max_attempts))),
            rates_retry_delay_seconds=_number_from_env(
                "RATES_RETRY_DELAY_SECONDS", cls.rates_retry_delay_seconds
            ),
            budget_refetch_delay_seconds=_number_from_env(
                "BUDGET_REFETCH_DELAY_SECONDS", cls.budget_refetch_delay_seconds
            ),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )


def _currency_from_env(name: str, fallback: str, supported: bool = True) -> str:
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        return ensure_supported_currency(raw) if supported else normalize_currency(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, fallback)
        return fallback


def _number_from_env(name: str, fallback: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, fallback)
        return fallback
    if value < 0:
        logger.warning("Negative %s=%r, using %s", name, raw, fallback)
        return fallback
    return value


def _static_rates_from_env() -> Optional[Mapping[str, float]]:
    raw = os.getenv("STATIC_RATES")
    if not raw:
        return None
    try:
        rates = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("STATIC_RATES is not valid JSON, using live rates")
        return None
    if not isinstance(rates, dict):
        logger.warning("STATIC_RATES must be a JSON object, using live rates")
        return None
    try:
        return {normalize_currency(code): float(value) for code, value in rates.items()}
    except (TypeError, ValueError):
        logger.warning("STATIC_RATES has invalid entries, using live rates")
        return None
