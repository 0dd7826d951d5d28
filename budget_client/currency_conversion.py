from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Mapping

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS: dict[str, str] = {
    "PHP": "₱",
    "EUR": "€",
    "USD": "$",
    "GBP": "£",
    "CAD": "C$",
    "CHF": "CHF ",
    "JPY": "¥",
    "AUD": "A$",
}

SUPPORTED_CURRENCIES: tuple[str, ...] = tuple(CURRENCY_SYMBOLS)


class MissingRateLookup(LookupError):
    """Raised when a currency has no usable entry in the rate table."""


@dataclass(frozen=True)
class ConversionResult:
    amount: float
    converted: bool


def convert_amount_checked(
    amount: float,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, float] | None,
) -> ConversionResult:
    """Convert ``amount`` and report whether a conversion actually happened.

    Rates are expressed as units of each currency per 1 unit of the base
    currency. A missing or non-positive rate never propagates: the amount is
    returned unconverted with ``converted=False``.
    """
    if source_currency == target_currency:
        return ConversionResult(amount=amount, converted=True)

    try:
        normalized_source = normalize_currency(source_currency)
        normalized_target = normalize_currency(target_currency)
    except ValueError:
        logger.warning(
            "Cannot convert between %r and %r, returning amount unconverted",
            source_currency,
            target_currency,
        )
        return ConversionResult(amount=amount, converted=False)

    if normalized_source == normalized_target:
        return ConversionResult(amount=amount, converted=True)

    try:
        source_rate = lookup_rate(rates, normalized_source)
        target_rate = lookup_rate(rates, normalized_target)
    except MissingRateLookup as exc:
        logger.warning("%s; returning %s %s unconverted", exc, amount, normalized_source)
        return ConversionResult(amount=amount, converted=False)

    return ConversionResult(amount=amount * (target_rate / source_rate), converted=True)


def convert_amount(
    amount: float,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, float] | None,
) -> float:
    return convert_amount_checked(amount, source_currency, target_currency, rates).amount


def lookup_rate(rates: Mapping[str, float] | None, currency: str) -> float:
    rate = (rates or {}).get(currency)
    if rate is None or isinstance(rate, bool) or not isinstance(rate, (int, float)):
        raise MissingRateLookup(f"No exchange rate for {currency}")
    if rate <= 0:
        raise MissingRateLookup(f"Invalid exchange rate for {currency}: {rate}")
    return float(rate)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def ensure_supported_currency(value: str) -> str:
    normalized = normalize_currency(value)
    if normalized not in CURRENCY_SYMBOLS:
        raise ValueError(f"Unsupported currency: {normalized}")
    return normalized


def get_currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency, f"{currency} ")


def format_amount(amount: float, currency: str) -> str:
    """Render ``amount`` with the currency symbol and exactly two decimals."""
    sign = "-" if amount < 0 else ""
    return f"{sign}{get_currency_symbol(currency)}{abs(amount):.2f}"


def format_amount_with_original(
    amount: float,
    original_currency: str,
    display_currency: str,
    rates: Mapping[str, float] | None,
) -> str:
    """Render a converted amount followed by the original in parentheses.

    ``amount`` is expressed in ``original_currency``. When both currencies are
    the same the amount is rendered once, and so is the original amount when
    no rate is available to convert it.
    """
    if original_currency == display_currency:
        return format_amount(amount, display_currency)
    result = convert_amount_checked(amount, original_currency, display_currency, rates)
    if not result.converted:
        return format_amount(amount, original_currency)
    return (
        f"{format_amount(result.amount, display_currency)} "
        f"({format_amount(amount, original_currency)})"
    )
