import os
import tempfile
import unittest

from fastapi.testclient import TestClient

from budget_client.config import Settings
from budget_client.main import create_app
from budget_client.tests.fakes import FakeBudgetApi


class DashboardApiTests(unittest.TestCase):
    def setUp(self) -> None:
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        settings = Settings(
            default_currency="EUR",
            static_rates={"PHP": 1, "EUR": 0.016, "USD": 0.018},
            preferences_db_url=f"sqlite:///{self.path}",
            rates_refresh_interval_seconds=0,
            budget_refetch_delay_seconds=0,
            log_level="WARNING",
        )
        self.api = FakeBudgetApi()
        self.app = create_app(settings, api=self.api)
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        os.remove(self.path)

    def test_currency_state_exposes_rates(self) -> None:
        response = self.client.get("/currency")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["currency"], "EUR")
        self.assertEqual(body["base_currency"], "PHP")
        self.assertEqual(body["exchange_rates"]["EUR"], 0.016)
        self.assertIsNone(body["rates_error"])
        self.assertIn("JPY", body["supported_currencies"])

    def test_set_currency(self) -> None:
        response = self.client.put("/currency", json={"currency": "usd"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "USD")

    def test_set_unsupported_currency_is_rejected(self) -> None:
        response = self.client.put("/currency", json={"currency": "SEK"})

        self.assertEqual(response.status_code, 400)

    def test_convert(self) -> None:
        response = self.client.get("/convert", params={"amount": 1000, "from_currency": "PHP"})

        body = response.json()
        self.assertAlmostEqual(body["amount"], 16.0)
        self.assertTrue(body["converted"])
        self.assertEqual(body["formatted"], "€16.00")
        self.assertEqual(body["formatted_with_original"], "€16.00 (₱1000.00)")

    def test_unconverted_amount_keeps_its_own_symbol(self) -> None:
        response = self.client.get("/convert", params={"amount": 100, "from_currency": "sek"})

        body = response.json()
        self.assertFalse(body["converted"])
        self.assertEqual(body["amount"], 100)
        self.assertEqual(body["formatted"], "SEK 100.00")

    def test_dashboard(self) -> None:
        response = self.client.get("/dashboard/2024/5")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        stats = body["stats"]
        self.assertAlmostEqual(stats["total_spent"], 99.2)
        self.assertAlmostEqual(stats["total_budget"], 96.0)
        self.assertEqual(stats["remaining"], 0)
        self.assertEqual(stats["highest_spender"], "Food")
        self.assertEqual(stats["uncategorized"]["name"], "Uncategorized")
        self.assertEqual(stats["categories"][0]["formatted_spent"], "€96.00")

    def test_yearly_totals(self) -> None:
        body = self.client.get("/totals/2024").json()

        self.assertEqual(body["currency"], "EUR")
        self.assertAlmostEqual(body["months"]["5"], 99.2)

    def test_invalid_month_is_rejected(self) -> None:
        response = self.client.get("/dashboard/2024/0")

        self.assertEqual(response.status_code, 400)

    def test_dashboard_retry_after_failure(self) -> None:
        self.api.failing = {"budgets"}
        body = self.client.get("/dashboard/2024/5").json()
        self.assertEqual(body["status"], "retry")
        self.assertIsNone(body["stats"])

        self.api.failing = set()
        body = self.client.post("/dashboard/retry").json()

        self.assertEqual(body["status"], "ok")

    def test_closed_month_budget_edit_conflicts(self) -> None:
        self.client.get("/dashboard/2024/4")

        response = self.client.put("/budgets/monthly/1", json={"budget_amount": 100})

        self.assertEqual(response.status_code, 409)
        self.assertIn("closed", response.json()["detail"])
        self.assertEqual(self.api.updates, [])

    def test_negative_budget_is_rejected(self) -> None:
        self.client.get("/dashboard/2024/5")

        response = self.client.put("/budgets/monthly/1", json={"budget_amount": -1})

        self.assertEqual(response.status_code, 400)

    def test_budget_edit_for_open_month(self) -> None:
        self.client.get("/dashboard/2024/5")

        response = self.client.put("/budgets/monthly/2", json={"budget_amount": 2500})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.api.updates, [("2", 2500)])


if __name__ == "__main__":
    unittest.main()
