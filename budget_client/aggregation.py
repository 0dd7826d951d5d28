from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Mapping, Optional

from budget_client.currency_conversion import convert_amount_checked
from budget_client.models import (
    UNCATEGORIZED_COLOR,
    UNCATEGORIZED_ID,
    UNCATEGORIZED_NAME,
    Category,
    CategoryBudget,
    Money,
    Transaction,
)

NOT_AVAILABLE = "N/A"


@dataclass(frozen=True)
class CategorySummary:
    category_id: str
    name: str
    color: str
    budget: float
    spent: float
    transaction_count: int
    is_editable: bool = False
    is_deletable: bool = True

    @property
    def remaining(self) -> float:
        return max(0.0, self.budget - self.spent)

    @property
    def percentage(self) -> float:
        return self.spent / self.budget * 100 if self.budget > 0 else 0.0

    @property
    def is_over_budget(self) -> bool:
        return self.budget > 0 and self.spent > self.budget

    @property
    def is_uncategorized(self) -> bool:
        return self.category_id == UNCATEGORIZED_ID


@dataclass(frozen=True)
class CurrencyBreakdown:
    currency: str
    amount: float
    converted: float


@dataclass(frozen=True)
class DailySpending:
    date: date
    amount: float
    transaction_count: int


@dataclass(frozen=True)
class MonthlyStats:
    year: int
    month: int
    currency: str
    total_spent: float
    total_budget: float
    transaction_count: int
    categories: list[CategorySummary]
    uncategorized: Optional[CategorySummary]
    by_currency: list[CurrencyBreakdown] = field(default_factory=list)
    daily: list[DailySpending] = field(default_factory=list)
    rates_stale: bool = False

    @property
    def remaining(self) -> float:
        return max(0.0, self.total_budget - self.total_spent)

    @property
    def percentage_used(self) -> float:
        return self.total_spent / self.total_budget * 100 if self.total_budget > 0 else 0.0

    @property
    def highest_spender(self) -> Optional[CategorySummary]:
        return highest_spender(self.categories, self.uncategorized)

    @property
    def highest_spender_name(self) -> str:
        top = self.highest_spender
        return top.name if top is not None else NOT_AVAILABLE


class _Converter:
    """Converts into one display currency and remembers any failed lookup."""

    def __init__(self, currency: str, rates: Mapping[str, float] | None) -> None:
        self.currency = currency
        self.rates = rates
        self.stale = False

    def __call__(self, money: Money) -> float:
        result = convert_amount_checked(money.value, money.currency, self.currency, self.rates)
        if not result.converted:
            self.stale = True
        return result.amount


def in_month(transaction: Transaction, year: int, month: int) -> bool:
    return transaction.date.year == year and transaction.date.month == month


def summarize_month(
    categories: Iterable[Category],
    budgets: Iterable[CategoryBudget],
    transactions: Iterable[Transaction] | None,
    display_currency: str,
    rates: Mapping[str, float] | None,
    year: int,
    month: int,
    rates_stale: bool = False,
) -> MonthlyStats:
    """Roll categories, budgets and transactions up into display-currency stats.

    Base-currency transaction amounts are preferred over the recorded original
    amount. Transactions without a known category land in the uncategorized
    bucket. Passing ``transactions=None`` uses the budgets' server-side
    ``spent_this_month`` instead.
    """
    convert = _Converter(display_currency, rates)
    categories = list(categories)
    budgets_by_category = {budget.category_id: budget for budget in budgets}
    known_ids = {category.id for category in categories}

    spent: dict[str, float] = {category.id: 0.0 for category in categories}
    counts: dict[str, int] = {category.id: 0 for category in categories}
    uncategorized_spent = 0.0
    uncategorized_count = 0
    month_transactions: list[Transaction] = []

    if transactions is None:
        for category_id, budget in budgets_by_category.items():
            if category_id in spent:
                spent[category_id] = convert(budget.spent_this_month)
    else:
        month_transactions = [txn for txn in transactions if in_month(txn, year, month)]
        for txn in month_transactions:
            value = convert(txn.amount.for_summation())
            if txn.category_id in known_ids:
                spent[txn.category_id] += value
                counts[txn.category_id] += 1
            else:
                uncategorized_spent += value
                uncategorized_count += 1

    summaries: list[CategorySummary] = []
    total_budget = 0.0
    for category in categories:
        budget = budgets_by_category.get(category.id)
        budget_value = convert(budget.amount) if budget is not None else 0.0
        total_budget += budget_value
        summaries.append(
            CategorySummary(
                category_id=category.id,
                name=category.name,
                color=category.color,
                budget=budget_value,
                spent=spent[category.id],
                transaction_count=counts[category.id],
                is_editable=budget.is_editable if budget is not None else False,
            )
        )

    uncategorized = None
    if uncategorized_count:
        uncategorized = CategorySummary(
            category_id=UNCATEGORIZED_ID,
            name=UNCATEGORIZED_NAME,
            color=UNCATEGORIZED_COLOR,
            budget=0.0,
            spent=uncategorized_spent,
            transaction_count=uncategorized_count,
            is_editable=False,
            is_deletable=False,
        )

    total_spent = sum(summary.spent for summary in summaries) + uncategorized_spent
    by_currency = spending_by_currency(month_transactions, display_currency, rates)
    daily = daily_spending(month_transactions, display_currency, rates)

    return MonthlyStats(
        year=year,
        month=month,
        currency=display_currency,
        total_spent=total_spent,
        total_budget=total_budget,
        transaction_count=len(month_transactions),
        categories=summaries,
        uncategorized=uncategorized,
        by_currency=by_currency,
        daily=daily,
        rates_stale=rates_stale or convert.stale,
    )


def highest_spender(
    categories: Iterable[CategorySummary],
    uncategorized: Optional[CategorySummary] = None,
) -> Optional[CategorySummary]:
    """Largest spender, first one wins ties, None when nothing was spent."""
    candidates = list(categories)
    if uncategorized is not None:
        candidates.append(uncategorized)
    top: Optional[CategorySummary] = None
    for candidate in candidates:
        if top is None or candidate.spent > top.spent:
            top = candidate
    if top is None or top.spent <= 0:
        return None
    return top


def monthly_totals(
    transactions: Iterable[Transaction],
    display_currency: str,
    rates: Mapping[str, float] | None,
    year: int,
) -> dict[int, float]:
    convert = _Converter(display_currency, rates)
    totals = {month: 0.0 for month in range(1, 13)}
    for txn in transactions:
        if txn.date.year != year:
            continue
        totals[txn.date.month] += convert(txn.amount.for_summation())
    return totals


def daily_spending(
    transactions: Iterable[Transaction],
    display_currency: str,
    rates: Mapping[str, float] | None,
) -> list[DailySpending]:
    convert = _Converter(display_currency, rates)
    amounts: dict[date, float] = {}
    counts: dict[date, int] = {}
    for txn in transactions:
        amounts[txn.date] = amounts.get(txn.date, 0.0) + convert(txn.amount.for_summation())
        counts[txn.date] = counts.get(txn.date, 0) + 1
    return [
        DailySpending(date=day, amount=amounts[day], transaction_count=counts[day])
        for day in sorted(amounts)
    ]


def spending_by_currency(
    transactions: Iterable[Transaction],
    display_currency: str,
    rates: Mapping[str, float] | None,
) -> list[CurrencyBreakdown]:
    """Totals per original recording currency alongside their converted value."""
    convert = _Converter(display_currency, rates)
    amounts: dict[str, float] = {}
    converted: dict[str, float] = {}
    for txn in transactions:
        original = txn.amount.original
        amounts[original.currency] = amounts.get(original.currency, 0.0) + original.value
        converted[original.currency] = converted.get(original.currency, 0.0) + convert(
            txn.amount.for_summation()
        )
    return [
        CurrencyBreakdown(currency=code, amount=amounts[code], converted=converted[code])
        for code in sorted(amounts)
    ]
