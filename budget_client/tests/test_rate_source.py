import asyncio
import io
import json
import unittest
from unittest.mock import patch
from urllib.error import URLError

from budget_client.rate_source import (
    ExchangeRateApiProvider,
    RateFetchFailure,
    RateSource,
    StaticRateProvider,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class ScriptedProvider:
    """Returns or raises the scripted results in order."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls = 0

    async def fetch_rates(self, base_currency: str):
        self.calls += 1
        await asyncio.sleep(0)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class RateSourceTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.delays: list[float] = []

    async def _sleep(self, seconds: float) -> None:
        self.delays.append(seconds)

    def make_source(self, provider, **kwargs) -> RateSource:
        return RateSource(
            provider=provider,
            base_currency="PHP",
            clock=self.clock,
            sleep=self._sleep,
            **kwargs,
        )

    async def test_fetched_table_includes_base_currency(self) -> None:
        source = self.make_source(ScriptedProvider({"EUR": 0.016}))

        table = await source.get_rates()

        self.assertEqual(table.rates["PHP"], 1.0)
        self.assertEqual(table.rates["EUR"], 0.016)
        self.assertIsNone(source.error)
        self.assertFalse(source.loading)

    async def test_reuses_cached_table_within_staleness_window(self) -> None:
        provider = ScriptedProvider({"EUR": 0.016}, {"EUR": 0.017})
        source = self.make_source(provider)

        await source.get_rates()
        self.clock.now += 29 * 60
        table = await source.get_rates()

        self.assertEqual(provider.calls, 1)
        self.assertEqual(table.rates["EUR"], 0.016)

    async def test_refetches_after_staleness_window(self) -> None:
        provider = ScriptedProvider({"EUR": 0.016}, {"EUR": 0.017})
        source = self.make_source(provider)

        await source.get_rates()
        self.clock.now += 31 * 60
        table = await source.get_rates()

        self.assertEqual(provider.calls, 2)
        self.assertEqual(table.rates["EUR"], 0.017)

    async def test_concurrent_callers_share_one_fetch(self) -> None:
        provider = ScriptedProvider({"EUR": 0.016})
        source = self.make_source(provider)

        tables = await asyncio.gather(*(source.get_rates() for _ in range(5)))

        self.assertEqual(provider.calls, 1)
        self.assertTrue(all(table is tables[0] for table in tables))

    async def test_retries_with_exponential_backoff(self) -> None:
        provider = ScriptedProvider(
            RateFetchFailure("down"),
            RateFetchFailure("down"),
            {"EUR": 0.016},
        )
        source = self.make_source(provider, max_attempts=3, retry_delay_seconds=1.0)

        table = await source.get_rates()

        self.assertEqual(provider.calls, 3)
        self.assertEqual(self.delays, [1.0, 2.0])
        self.assertEqual(table.rates["EUR"], 0.016)
        self.assertIsNone(source.error)

    async def test_exhausted_retries_without_cache_sets_error(self) -> None:
        provider = ScriptedProvider(RateFetchFailure("down"))
        source = self.make_source(provider, max_attempts=2)

        with self.assertLogs("budget_client.rate_source", level="ERROR"):
            table = await source.get_rates()

        self.assertIsNone(table)
        self.assertIsInstance(source.error, RateFetchFailure)
        self.assertEqual(provider.calls, 2)

    async def test_failed_refresh_keeps_last_known_good(self) -> None:
        provider = ScriptedProvider({"EUR": 0.016}, RateFetchFailure("down"))
        source = self.make_source(provider, max_attempts=2)

        first = await source.get_rates()
        with self.assertLogs("budget_client.rate_source", level="ERROR"):
            second = await source.refresh()

        self.assertIs(second, first)
        self.assertIsNotNone(source.error)

    async def test_successful_refresh_replaces_table_and_clears_error(self) -> None:
        provider = ScriptedProvider(
            {"EUR": 0.016, "GBP": 0.0129},
            RateFetchFailure("down"),
            {"EUR": 0.015},
        )
        source = self.make_source(provider, max_attempts=1)

        await source.get_rates()
        with self.assertLogs("budget_client.rate_source", level="ERROR"):
            await source.refresh()
        table = await source.refresh()

        self.assertIsNone(source.error)
        self.assertNotIn("GBP", table.rates)

    async def test_background_refresh_runs_on_interval(self) -> None:
        provider = ScriptedProvider({"EUR": 0.016})
        refreshed = asyncio.Event()

        async def sleep(seconds: float) -> None:
            self.delays.append(seconds)
            if provider.calls:
                refreshed.set()
            await asyncio.sleep(0)

        source = RateSource(
            provider=provider,
            clock=self.clock,
            sleep=sleep,
            refresh_interval_seconds=3600,
        )
        source.start()
        await asyncio.wait_for(refreshed.wait(), timeout=1)
        await source.stop()

        self.assertGreaterEqual(provider.calls, 1)
        self.assertIn(3600, self.delays)

    async def test_background_refresh_survives_unexpected_error(self) -> None:
        provider = ScriptedProvider(KeyError("boom"), {"EUR": 0.016})
        refreshed = asyncio.Event()

        async def sleep(seconds: float) -> None:
            if provider.calls >= 2:
                refreshed.set()
            await asyncio.sleep(0)

        source = RateSource(
            provider=provider,
            clock=self.clock,
            sleep=sleep,
            refresh_interval_seconds=3600,
        )
        with self.assertLogs("budget_client.rate_source", level="ERROR") as logs:
            source.start()
            await asyncio.wait_for(refreshed.wait(), timeout=1)
            await source.stop()

        self.assertIn("Background rate refresh failed", logs.output[0])
        self.assertEqual(source.table.rates["EUR"], 0.016)


class StaticRateProviderTests(unittest.IsolatedAsyncioTestCase):
    async def test_rebases_onto_requested_currency(self) -> None:
        provider = StaticRateProvider(rates={"EUR": 1, "PHP": 62.5, "USD": 1.125})

        rates = await provider.fetch_rates("PHP")

        self.assertEqual(rates["PHP"], 1.0)
        self.assertAlmostEqual(rates["EUR"], 0.016)
        self.assertAlmostEqual(rates["USD"], 0.018)

    async def test_missing_base_raises(self) -> None:
        provider = StaticRateProvider(rates={"EUR": 1})

        with self.assertRaises(RateFetchFailure):
            await provider.fetch_rates("PHP")


class ExchangeRateApiProviderTests(unittest.IsolatedAsyncioTestCase):
    @patch("budget_client.rate_source.urlopen")
    async def test_parses_rates_payload(self, urlopen) -> None:
        payload = {"base": "PHP", "rates": {"PHP": 1, "EUR": 0.016, "usd": 0.018, "BAD": "x"}}
        urlopen.return_value.__enter__.return_value = io.BytesIO(json.dumps(payload).encode())

        provider = ExchangeRateApiProvider(base_url="https://rates.example/latest")
        with self.assertLogs("budget_client.rate_source", level="WARNING"):
            rates = await provider.fetch_rates("php")

        self.assertEqual(rates["EUR"], 0.016)
        self.assertEqual(rates["USD"], 0.018)
        self.assertNotIn("BAD", rates)
        self.assertEqual(urlopen.call_args.args[0], "https://rates.example/latest/PHP")

    @patch("budget_client.rate_source.urlopen")
    async def test_network_error_raises_fetch_failure(self, urlopen) -> None:
        urlopen.side_effect = URLError("offline")

        with self.assertRaises(RateFetchFailure):
            await ExchangeRateApiProvider().fetch_rates("PHP")

    @patch("budget_client.rate_source.urlopen")
    async def test_missing_rates_raises_fetch_failure(self, urlopen) -> None:
        urlopen.return_value.__enter__.return_value = io.BytesIO(b'{"result": "error"}')

        with self.assertRaises(RateFetchFailure):
            await ExchangeRateApiProvider().fetch_rates("PHP")

    @patch("budget_client.rate_source.urlopen")
    async def test_undecodable_body_raises_fetch_failure(self, urlopen) -> None:
        urlopen.return_value.__enter__.return_value = io.BytesIO(b'{"rates": {"EUR": 0.016}, "x": "\xe9"}')

        with self.assertRaises(RateFetchFailure):
            await ExchangeRateApiProvider().fetch_rates("PHP")

    @patch("budget_client.rate_source.urlopen")
    async def test_connection_reset_sets_rate_source_error(self, urlopen) -> None:
        urlopen.side_effect = ConnectionResetError("reset")
        source = RateSource(provider=ExchangeRateApiProvider(), max_attempts=1)

        with self.assertLogs("budget_client.rate_source", level="ERROR"):
            table = await source.get_rates()

        self.assertIsNone(table)
        self.assertIsInstance(source.error, RateFetchFailure)
        self.assertFalse(source.loading)


if __name__ == "__main__":
    unittest.main()
