from __future__ import annotations

import logging
from typing import Mapping

from budget_client.currency_conversion import (
    SUPPORTED_CURRENCIES,
    ConversionResult,
    convert_amount_checked,
    format_amount,
    format_amount_with_original,
)
from budget_client.models import UserProfile
from budget_client.preferences import PreferenceStore
from budget_client.rate_source import RateSource

logger = logging.getLogger(__name__)


class CurrencyService:
    """Display currency, exchange rates and conversion helpers for the UI.

    One instance is created per application and handed to every consumer;
    conversions always use the rate table that is currently loaded.
    """

    supported_currencies = SUPPORTED_CURRENCIES

    def __init__(self, preferences: PreferenceStore, rate_source: RateSource) -> None:
        self.preferences = preferences
        self.rate_source = rate_source

    @property
    def base_currency(self) -> str:
        return self.rate_source.base_currency

    @property
    def currency(self) -> str:
        return self.preferences.get_display_currency()

    def set_currency(self, currency: str) -> str:
        return self.preferences.set_display_currency(currency)

    def sync_profile(self, profile: UserProfile | None) -> bool:
        if profile is None:
            return False
        return self.preferences.sync_profile_currency(profile.preferred_currency)

    @property
    def exchange_rates(self) -> Mapping[str, float] | None:
        table = self.rate_source.table
        return dict(table.rates) if table is not None else None

    @property
    def rates_error(self) -> str | None:
        error = self.rate_source.error
        return str(error) if error is not None else None

    @property
    def rates_loading(self) -> bool:
        return self.rate_source.loading

    async def ensure_rates(self) -> Mapping[str, float] | None:
        await self.rate_source.get_rates()
        return self.exchange_rates

    async def refresh_rates(self) -> Mapping[str, float] | None:
        await self.rate_source.refresh()
        return self.exchange_rates

    def convert_checked(
        self, amount: float, from_currency: str, to_currency: str | None = None
    ) -> ConversionResult:
        return convert_amount_checked(
            amount, from_currency, to_currency or self.currency, self.exchange_rates
        )

    def convert_amount(
        self, amount: float, from_currency: str, to_currency: str | None = None
    ) -> float:
        return self.convert_checked(amount, from_currency, to_currency).amount

    def format_amount(self, amount: float, currency: str | None = None) -> str:
        return format_amount(amount, currency or self.currency)

    def format_amount_with_original(self, amount: float, original_currency: str) -> str:
        return format_amount_with_original(
            amount, original_currency, self.currency, self.exchange_rates
        )

    def state(self) -> dict:
        return {
            "currency": self.currency,
            "base_currency": self.base_currency,
            "supported_currencies": list(self.supported_currencies),
            "exchange_rates": self.exchange_rates,
            "rates_error": self.rates_error,
            "rates_loading": self.rates_loading,
        }
