from __future__ import annotations

import asyncio
from http.client import HTTPException
import json
import logging
from typing import Any
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from pydantic import ValidationError

from budget_client.models import (
    Category,
    CategoryBudget,
    CategoryRecord,
    MonthlyBudgetRecord,
    ProfileRecord,
    Transaction,
    TransactionRecord,
    UserProfile,
)

logger = logging.getLogger(__name__)


class ApiRequestError(RuntimeError):
    """Raised when the budget API cannot be reached or returns bad data."""


class StaleWriteRejection(RuntimeError):
    """Raised when editing a budget for a month that is no longer editable."""

    def __init__(self, budget: CategoryBudget) -> None:
        super().__init__(
            f"Budgets for {budget.year}-{budget.month:02d} are closed and cannot be edited."
        )
        self.budget = budget


def ensure_editable(budget: CategoryBudget) -> None:
    if not budget.is_editable:
        raise StaleWriteRejection(budget)


class BudgetApiClient:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        base_currency: str = "PHP",
        timeout_seconds: float = 10,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.base_currency = base_currency
        self.timeout_seconds = timeout_seconds

    async def get_profile(self) -> UserProfile:
        payload = await self._request("GET", "/user/profile")
        return self._parse(ProfileRecord, payload).to_domain()

    async def get_categories(self) -> list[Category]:
        payload = await self._request("GET", "/categories")
        return [self._parse(CategoryRecord, item).to_domain() for item in _as_list(payload)]

    async def get_monthly_budgets(self, year: int, month: int) -> list[CategoryBudget]:
        payload = await self._request("GET", f"/budgets/monthly/{year}/{month}")
        return [
            self._parse(MonthlyBudgetRecord, item).to_domain(year, month, self.base_currency)
            for item in _as_list(payload)
        ]

    async def get_transactions(self) -> list[Transaction]:
        payload = await self._request("GET", "/transactions")
        return [
            self._parse(TransactionRecord, item).to_domain(self.base_currency)
            for item in _as_list(payload)
        ]

    async def update_monthly_budget(self, budget: CategoryBudget, amount: float) -> Any:
        ensure_editable(budget)
        if amount < 0:
            raise ValueError("Budget amount must not be negative.")
        return await self._request(
            "PUT",
            f"/budgets/monthly/{budget.category_id}",
            {"budgetAmount": amount, "currency": budget.amount.currency},
        )

    async def _request(self, method: str, path: str, body: dict | None = None) -> Any:
        return await asyncio.to_thread(self._send, method, path, body)

    def _send(self, method: str, path: str, body: dict | None) -> Any:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = Request(f"{self.base_url}{path}", data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except HTTPError as exc:
            raise ApiRequestError(f"{method} {path} failed with status {exc.code}") from exc
        except (OSError, HTTPException) as exc:
            raise ApiRequestError(f"{method} {path} failed: {exc}") from exc

        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise ApiRequestError(f"{method} {path} returned invalid JSON: {exc}") from exc

    @staticmethod
    def _parse(model, item: Any):
        try:
            return model.model_validate(item)
        except ValidationError as exc:
            raise ApiRequestError(f"Invalid {model.__name__}: {exc}") from exc


def _as_list(payload: Any) -> list:
    if isinstance(payload, list):
        return payload
    logger.warning("Expected a list from the budget API, got %s", type(payload).__name__)
    return []
