from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from http.client import HTTPException
import json
import logging
import time
from typing import Awaitable, Callable, Mapping, Protocol
from urllib.request import urlopen

from budget_client.currency_conversion import SUPPORTED_CURRENCIES, normalize_currency

logger = logging.getLogger(__name__)


class RateFetchFailure(RuntimeError):
    """Raised when a rate provider cannot fetch rates."""


class RateProvider(Protocol):
    async def fetch_rates(self, base_currency: str) -> Mapping[str, float]:
        ...


@dataclass(frozen=True)
class RateTable:
    """Units of each currency per 1 unit of ``base_currency``."""

    base_currency: str
    rates: Mapping[str, float]
    fetched_at: float

    def __post_init__(self) -> None:
        rates = dict(self.rates)
        rates[self.base_currency] = 1.0
        object.__setattr__(self, "rates", rates)

    def age(self, now: float) -> float:
        return now - self.fetched_at


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory rates for offline use.

    The table may be expressed against any currency it contains; it is
    rebased onto the requested base currency.
    """

    rates: Mapping[str, float]

    async def fetch_rates(self, base_currency: str) -> Mapping[str, float]:
        normalized_base = normalize_currency(base_currency)
        base_rate = self.rates.get(normalized_base)
        if not base_rate:
            raise RateFetchFailure(f"Static rates have no entry for {normalized_base}")
        return {
            normalize_currency(code): float(value) / base_rate
            for code, value in self.rates.items()
        }


@dataclass
class ExchangeRateApiProvider:
    base_url: str = "https://api.exchangerate-api.com/v4/latest"
    timeout_seconds: float = 8

    async def fetch_rates(self, base_currency: str) -> Mapping[str, float]:
        return await asyncio.to_thread(self._fetch_rates, normalize_currency(base_currency))

    def _fetch_rates(self, base_currency: str) -> Mapping[str, float]:
        url = f"{self.base_url.rstrip('/')}/{base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (OSError, HTTPException, ValueError) as exc:
            # Resets while reading are OSErrors; undecodable bodies are ValueErrors.
            raise RateFetchFailure(f"Exchange rate API unavailable: {exc}") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateFetchFailure("Exchange rate response missing rates")

        parsed: dict[str, float] = {}
        for code, value in rates.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                logger.warning("Ignoring invalid rate for %s: %r", code, value)
                continue
            try:
                parsed[normalize_currency(code)] = float(value)
            except ValueError:
                logger.warning("Ignoring rate with invalid currency code %r", code)
        parsed[base_currency] = 1.0

        missing = [code for code in SUPPORTED_CURRENCIES if code not in parsed]
        if missing:
            logger.warning("Exchange rate response missing %s", ", ".join(missing))
        return parsed


@dataclass
class RateSource:
    """Caches the rate table and keeps it fresh.

    A fetched table is served for ``stale_after_seconds``; callers arriving
    while a fetch is in flight wait for it instead of fetching again. Failed
    fetches are retried ``max_attempts`` times with exponential backoff, after
    which ``error`` is set and the last good table stays in place.
    """

    provider: RateProvider
    base_currency: str = "PHP"
    stale_after_seconds: float = 30 * 60
    refresh_interval_seconds: float = 60 * 60
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    error: RateFetchFailure | None = field(default=None, init=False)
    loading: bool = field(default=False, init=False)
    _table: RateTable | None = field(default=None, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _refresh_task: asyncio.Task | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.base_currency = normalize_currency(self.base_currency)
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

    @property
    def table(self) -> RateTable | None:
        return self._table

    def is_fresh(self) -> bool:
        return (
            self._table is not None
            and self._table.age(self.clock()) < self.stale_after_seconds
        )

    async def get_rates(self) -> RateTable | None:
        if self.is_fresh():
            return self._table
        async with self._lock:
            if self.is_fresh():
                return self._table
            return await self._refresh_locked()

    async def refresh(self) -> RateTable | None:
        async with self._lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> RateTable | None:
        self.loading = True
        last_error: RateFetchFailure | None = None
        try:
            for attempt in range(self.max_attempts):
                try:
                    rates = await self.provider.fetch_rates(self.base_currency)
                except RateFetchFailure as exc:
                    last_error = exc
                    logger.warning(
                        "Rate fetch attempt %d/%d failed: %s",
                        attempt + 1,
                        self.max_attempts,
                        exc,
                    )
                    if attempt + 1 < self.max_attempts:
                        await self.sleep(self.retry_delay_seconds * 2**attempt)
                    continue
                # Replaced wholesale, never merged into the previous table.
                self._table = RateTable(
                    base_currency=self.base_currency,
                    rates=rates,
                    fetched_at=self.clock(),
                )
                self.error = None
                return self._table
        finally:
            self.loading = False

        self.error = last_error
        if self._table is None:
            logger.error("Exchange rates unavailable and no previous rates cached")
        else:
            logger.error("Exchange rate refresh failed, keeping rates from last successful fetch")
        return self._table

    def start(self) -> None:
        """Schedule the periodic background refresh on the running loop."""
        if self.refresh_interval_seconds <= 0 or self._refresh_task is not None:
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_forever())

    async def stop(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _refresh_forever(self) -> None:
        while True:
            await self.sleep(self.refresh_interval_seconds)
            try:
                await self.refresh()
            except Exception:
                logger.exception("Background rate refresh failed, retrying next interval")
