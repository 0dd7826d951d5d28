import logging
from datetime import date
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import create_engine

from budget_client.aggregation import CategorySummary, MonthlyStats
from budget_client.api_client import ApiRequestError, BudgetApiClient, StaleWriteRejection
from budget_client.config import Settings
from budget_client.currency_service import CurrencyService
from budget_client.dashboard import DashboardController, DashboardView
from budget_client.preferences import PreferenceStore
from budget_client.rate_source import ExchangeRateApiProvider, RateSource, StaticRateProvider

logger = logging.getLogger(__name__)


class CurrencyStateResponse(BaseModel):
    currency: str
    base_currency: str
    supported_currencies: list[str]
    exchange_rates: Optional[dict[str, float]] = None
    rates_error: Optional[str] = None
    rates_loading: bool


class CurrencyPayload(BaseModel):
    currency: str


class ConversionResponse(BaseModel):
    amount: float
    from_currency: str
    currency: str
    converted: bool
    formatted: str
    formatted_with_original: str


class CategorySummaryResponse(BaseModel):
    category_id: str
    name: str
    color: str
    budget: float
    spent: float
    remaining: float
    percentage: float
    is_over_budget: bool
    transaction_count: int
    is_editable: bool
    is_deletable: bool
    formatted_spent: str
    formatted_budget: str


class CurrencyBreakdownResponse(BaseModel):
    currency: str
    amount: float
    converted_to_preferred: float


class DailySpendingResponse(BaseModel):
    date: date
    amount: float
    transaction_count: int


class MonthlyStatsResponse(BaseModel):
    currency: str
    total_spent: float
    total_budget: float
    remaining: float
    percentage_used: float
    transaction_count: int
    highest_spender: str
    categories: list[CategorySummaryResponse]
    uncategorized: Optional[CategorySummaryResponse] = None
    by_currency: list[CurrencyBreakdownResponse]
    daily_spending: list[DailySpendingResponse]
    rates_stale: bool
    formatted_total_spent: str
    formatted_total_budget: str
    formatted_remaining: str


class DashboardResponse(BaseModel):
    year: int
    month: int
    status: str
    failed: list[str]
    rates_error: Optional[str] = None
    stats: Optional[MonthlyStatsResponse] = None


class YearlyTotalsResponse(BaseModel):
    year: int
    currency: str
    months: dict[int, float]


class BudgetUpdatePayload(BaseModel):
    budget_amount: float

    @classmethod
    def validate_payload(cls, payload: "BudgetUpdatePayload") -> "BudgetUpdatePayload":
        if payload.budget_amount < 0:
            raise ValueError("Budget amount must not be negative.")
        return payload


def build_currency_service(settings: Settings) -> CurrencyService:
    connect_args = {}
    if settings.preferences_db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    engine = create_engine(settings.preferences_db_url, connect_args=connect_args)
    if settings.static_rates:
        provider = StaticRateProvider(rates=settings.static_rates)
    else:
        provider = ExchangeRateApiProvider(base_url=settings.rates_url)
    rate_source = RateSource(
        provider=provider,
        base_currency=settings.base_currency,
        stale_after_seconds=settings.rates_stale_after_seconds,
        refresh_interval_seconds=settings.rates_refresh_interval_seconds,
        max_attempts=settings.rates_max_attempts,
        retry_delay_seconds=settings.rates_retry_delay_seconds,
    )
    preferences = PreferenceStore(engine, default_currency=settings.default_currency)
    return CurrencyService(preferences, rate_source)


def summary_response(summary: CategorySummary, currency: CurrencyService) -> CategorySummaryResponse:
    return CategorySummaryResponse(
        category_id=summary.category_id,
        name=summary.name,
        color=summary.color,
        budget=summary.budget,
        spent=summary.spent,
        remaining=summary.remaining,
        percentage=summary.percentage,
        is_over_budget=summary.is_over_budget,
        transaction_count=summary.transaction_count,
        is_editable=summary.is_editable,
        is_deletable=summary.is_deletable,
        formatted_spent=currency.format_amount(summary.spent),
        formatted_budget=currency.format_amount(summary.budget),
    )


def stats_response(stats: MonthlyStats, currency: CurrencyService) -> MonthlyStatsResponse:
    return MonthlyStatsResponse(
        currency=stats.currency,
        total_spent=stats.total_spent,
        total_budget=stats.total_budget,
        remaining=stats.remaining,
        percentage_used=stats.percentage_used,
        transaction_count=stats.transaction_count,
        highest_spender=stats.highest_spender_name,
        categories=[summary_response(item, currency) for item in stats.categories],
        uncategorized=(
            summary_response(stats.uncategorized, currency) if stats.uncategorized else None
        ),
        by_currency=[
            CurrencyBreakdownResponse(
                currency=item.currency,
                amount=item.amount,
                converted_to_preferred=item.converted,
            )
            for item in stats.by_currency
        ],
        daily_spending=[
            DailySpendingResponse(
                date=item.date,
                amount=item.amount,
                transaction_count=item.transaction_count,
            )
            for item in stats.daily
        ],
        rates_stale=stats.rates_stale,
        formatted_total_spent=currency.format_amount(stats.total_spent, stats.currency),
        formatted_total_budget=currency.format_amount(stats.total_budget, stats.currency),
        formatted_remaining=currency.format_amount(stats.remaining, stats.currency),
    )


def dashboard_response(view: DashboardView, currency: CurrencyService) -> DashboardResponse:
    return DashboardResponse(
        year=view.year,
        month=view.month,
        status=view.status,
        failed=view.failed,
        rates_error=view.rates_error,
        stats=stats_response(view.stats, currency) if view.stats is not None else None,
    )


def create_app(
    settings: Settings | None = None,
    currency: CurrencyService | None = None,
    api: BudgetApiClient | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    currency = currency or build_currency_service(settings)
    api = api or BudgetApiClient(
        settings.api_base_url,
        token=settings.api_token,
        base_currency=settings.base_currency,
    )
    dashboard = DashboardController(
        api,
        currency,
        refetch_delay_seconds=settings.budget_refetch_delay_seconds,
    )

    app = FastAPI()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.currency = currency
    app.state.dashboard = dashboard

    @app.on_event("startup")
    async def start_rate_refresh() -> None:
        await currency.ensure_rates()
        if currency.rates_error:
            logger.warning("Starting without exchange rates: %s", currency.rates_error)
        currency.rate_source.start()

    @app.on_event("shutdown")
    async def stop_rate_refresh() -> None:
        await currency.rate_source.stop()

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/currency", response_model=CurrencyStateResponse)
    def get_currency() -> CurrencyStateResponse:
        return CurrencyStateResponse(**currency.state())

    @app.put("/currency", response_model=CurrencyStateResponse)
    def set_currency(payload: CurrencyPayload) -> CurrencyStateResponse:
        try:
            currency.set_currency(payload.currency)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return CurrencyStateResponse(**currency.state())

    @app.post("/rates/refresh", response_model=CurrencyStateResponse)
    async def refresh_rates() -> CurrencyStateResponse:
        await currency.refresh_rates()
        return CurrencyStateResponse(**currency.state())

    @app.get("/convert", response_model=ConversionResponse)
    async def convert(
        amount: float = Query(...),
        from_currency: str = Query(...),
    ) -> ConversionResponse:
        await currency.ensure_rates()
        result = currency.convert_checked(amount, from_currency)
        return ConversionResponse(
            amount=result.amount,
            from_currency=from_currency,
            currency=currency.currency,
            converted=result.converted,
            formatted=currency.format_amount(
                result.amount,
                currency.currency if result.converted else from_currency.strip().upper(),
            ),
            formatted_with_original=currency.format_amount_with_original(amount, from_currency),
        )

    @app.get("/dashboard/{year}/{month}", response_model=DashboardResponse)
    async def get_dashboard(year: int, month: int) -> DashboardResponse:
        try:
            view = await dashboard.select_month(year, month)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return dashboard_response(view, currency)

    @app.post("/dashboard/retry", response_model=DashboardResponse)
    async def retry_dashboard() -> DashboardResponse:
        try:
            view = await dashboard.retry()
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return dashboard_response(view, currency)

    @app.get("/totals/{year}", response_model=YearlyTotalsResponse)
    async def get_yearly_totals(year: int) -> YearlyTotalsResponse:
        try:
            totals = await dashboard.yearly_totals(year)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ApiRequestError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return YearlyTotalsResponse(year=year, currency=currency.currency, months=totals)

    @app.put("/budgets/monthly/{category_id}", response_model=DashboardResponse)
    async def update_monthly_budget(category_id: str, payload: BudgetUpdatePayload) -> DashboardResponse:
        try:
            payload = BudgetUpdatePayload.validate_payload(payload)
            await dashboard.update_budget(category_id, payload.budget_amount)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StaleWriteRejection as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ApiRequestError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return dashboard_response(dashboard.view(), currency)

    return app
