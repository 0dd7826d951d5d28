from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Optional

from budget_client.aggregation import MonthlyStats, monthly_totals, summarize_month
from budget_client.api_client import ApiRequestError, BudgetApiClient
from budget_client.currency_service import CurrencyService
from budget_client.models import Category, CategoryBudget, Transaction

logger = logging.getLogger(__name__)

CATEGORIES = "categories"
BUDGETS = "budgets"
TRANSACTIONS = "transactions"
COLLECTIONS = (CATEGORIES, BUDGETS, TRANSACTIONS)

STATUS_LOADING = "loading"
STATUS_OK = "ok"
STATUS_PARTIAL = "partial"
STATUS_RETRY = "retry"


@dataclass
class PeriodSnapshot:
    year: int
    month: int
    categories: Optional[list[Category]] = None
    budgets: Optional[list[CategoryBudget]] = None
    transactions: Optional[list[Transaction]] = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def period(self) -> tuple[int, int]:
        return self.year, self.month


@dataclass(frozen=True)
class DashboardView:
    year: int
    month: int
    status: str
    failed: list[str]
    stats: Optional[MonthlyStats]
    rates_error: Optional[str] = None


def validate_period(year: int, month: int) -> tuple[int, int]:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12.")
    if year < 1:
        raise ValueError("Year must be positive.")
    return year, month


class DashboardController:
    """Loads a month's collections and derives the dashboard from them.

    Categories, budgets and transactions are fetched independently; each
    response is applied only if its month is still the selected one.
    """

    def __init__(
        self,
        api: BudgetApiClient,
        currency: CurrencyService,
        refetch_delay_seconds: float = 1.0,
    ) -> None:
        self.api = api
        self.currency = currency
        self.refetch_delay_seconds = refetch_delay_seconds
        self._selected: Optional[tuple[int, int]] = None
        self._snapshots: dict[tuple[int, int], PeriodSnapshot] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def selected_period(self) -> Optional[tuple[int, int]]:
        return self._selected

    def snapshot(self, year: int, month: int) -> Optional[PeriodSnapshot]:
        return self._snapshots.get((year, month))

    async def select_month(self, year: int, month: int) -> DashboardView:
        period = validate_period(year, month)
        self._selected = period
        self._snapshots[period] = PeriodSnapshot(year=year, month=month)
        await asyncio.gather(
            self._load_profile(),
            self.currency.ensure_rates(),
            self._load(period, COLLECTIONS),
        )
        if period != self._selected:
            # A later selection superseded this one before its data arrived.
            return DashboardView(year, month, STATUS_LOADING, [], None, self.currency.rates_error)
        return self.view()

    async def retry(self) -> DashboardView:
        if self._selected is None:
            raise LookupError("No month selected.")
        period = self._selected
        snapshot = self._snapshots[period]
        failed = [name for name in COLLECTIONS if name in snapshot.errors]
        await self._load(period, failed)
        return self.view()

    def view(self) -> DashboardView:
        if self._selected is None:
            raise LookupError("No month selected.")
        snapshot = self._snapshots[self._selected]
        year, month = snapshot.period
        failed = [name for name in COLLECTIONS if name in snapshot.errors]
        rates_error = self.currency.rates_error

        if CATEGORIES in snapshot.errors or BUDGETS in snapshot.errors:
            return DashboardView(year, month, STATUS_RETRY, failed, None, rates_error)
        if snapshot.categories is None or snapshot.budgets is None:
            return DashboardView(year, month, STATUS_LOADING, failed, None, rates_error)
        if snapshot.transactions is None and TRANSACTIONS not in snapshot.errors:
            return DashboardView(year, month, STATUS_LOADING, failed, None, rates_error)

        stats = summarize_month(
            snapshot.categories,
            snapshot.budgets,
            snapshot.transactions,
            self.currency.currency,
            self.currency.exchange_rates,
            year,
            month,
            rates_stale=rates_error is not None,
        )
        status = STATUS_PARTIAL if failed else STATUS_OK
        return DashboardView(year, month, status, failed, stats, rates_error)

    async def yearly_totals(self, year: int) -> dict[int, float]:
        """Spend per month of ``year`` in the display currency."""
        validate_period(year, 1)
        transactions, _ = await asyncio.gather(self.api.get_transactions(), self.currency.ensure_rates())
        return monthly_totals(
            transactions,
            self.currency.currency,
            self.currency.exchange_rates,
            year,
        )

    async def update_budget(self, category_id: str, amount: float) -> None:
        """Write the selected month's budget for a category and refetch later.

        Closed months raise ``StaleWriteRejection`` before anything is sent.
        """
        if self._selected is None:
            raise LookupError("No month selected.")
        period = self._selected
        snapshot = self._snapshots[period]
        budget = next(
            (item for item in snapshot.budgets or [] if item.category_id == category_id),
            None,
        )
        if budget is None:
            raise LookupError(f"No budget for category {category_id} in {period[0]}-{period[1]:02d}.")
        await self.api.update_monthly_budget(budget, amount)
        task = asyncio.get_running_loop().create_task(self._refetch_later(period))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_for_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))

    async def _refetch_later(self, period: tuple[int, int]) -> None:
        await asyncio.sleep(self.refetch_delay_seconds)
        await self._load(period, (BUDGETS,), keep_on_error=True)

    async def _load(self, period: tuple[int, int], names, keep_on_error: bool = False) -> None:
        await asyncio.gather(*(self._fetch_into(period, name, keep_on_error) for name in names))

    async def _fetch_into(self, period: tuple[int, int], name: str, keep_on_error: bool = False) -> None:
        year, month = period
        try:
            if name == CATEGORIES:
                result = await self.api.get_categories()
            elif name == BUDGETS:
                result = await self.api.get_monthly_budgets(year, month)
            elif name == TRANSACTIONS:
                result = await self.api.get_transactions()
            else:
                raise ValueError(f"Unknown collection: {name}")
        except ApiRequestError as exc:
            logger.warning("Loading %s for %d-%02d failed: %s", name, year, month, exc)
            self._apply(period, name, error=str(exc), keep_on_error=keep_on_error)
            return
        self._apply(period, name, result=result)

    def _apply(
        self,
        period: tuple[int, int],
        name: str,
        result=None,
        error: str | None = None,
        keep_on_error: bool = False,
    ) -> None:
        if period != self._selected:
            logger.info("Discarding %s response for %d-%02d, month no longer selected", name, *period)
            return
        snapshot = self._snapshots[period]
        if error is not None:
            # Data already on screen stays until the next successful load.
            if keep_on_error and getattr(snapshot, name) is not None:
                return
            snapshot.errors[name] = error
            return
        snapshot.errors.pop(name, None)
        setattr(snapshot, name, result)

    async def _load_profile(self) -> None:
        try:
            profile = await self.api.get_profile()
        except ApiRequestError as exc:
            logger.warning("Loading profile failed: %s", exc)
            return
        self.currency.sync_profile(profile)
