from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

UNCATEGORIZED_ID = "uncategorized"
UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_COLOR = "#9CA3AF"
DEFAULT_CATEGORY_COLOR = "#6B7280"


@dataclass(frozen=True)
class Money:
    value: float
    currency: str


@dataclass(frozen=True)
class TransactionAmount:
    """Amount as recorded plus, when known, its base-currency equivalent."""

    original: Money
    base: Optional[Money] = None

    def for_summation(self) -> Money:
        return self.base if self.base is not None else self.original


@dataclass(frozen=True)
class Transaction:
    id: str
    amount: TransactionAmount
    date: date
    category_id: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    color: str = DEFAULT_CATEGORY_COLOR


@dataclass(frozen=True)
class CategoryBudget:
    category_id: str
    year: int
    month: int
    amount: Money
    spent_this_month: Money
    is_editable: bool


@dataclass(frozen=True)
class UserProfile:
    id: str
    name: str
    preferred_currency: Optional[str] = None


def _to_str_id(value):
    if value is None or isinstance(value, str):
        return value
    return str(value)


def parse_record_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return datetime.fromisoformat(text).date()
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}") from exc


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProfileRecord(_Record):
    id: str
    name: str = ""
    preferred_currency: str | None = Field(
        None, validation_alias=AliasChoices("preferredCurrency", "preferred_currency")
    )
    currency: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return _to_str_id(value)

    def to_domain(self) -> UserProfile:
        return UserProfile(
            id=self.id,
            name=self.name,
            preferred_currency=self.preferred_currency or self.currency,
        )


class CategoryRecord(_Record):
    id: str
    name: str
    color: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return _to_str_id(value)

    def to_domain(self) -> Category:
        return Category(id=self.id, name=self.name, color=self.color or DEFAULT_CATEGORY_COLOR)


class MonthlyBudgetRecord(_Record):
    category_id: str = Field(validation_alias=AliasChoices("categoryId", "category_id"))
    budget_amount: float = Field(0, validation_alias=AliasChoices("budgetAmount", "budget_amount"))
    currency: str | None = None
    spent_this_month: float = Field(
        0, validation_alias=AliasChoices("spentThisMonth", "spent_this_month")
    )
    is_editable: bool = Field(False, validation_alias=AliasChoices("isEditable", "is_editable"))

    @field_validator("category_id", mode="before")
    @classmethod
    def coerce_category_id(cls, value):
        return _to_str_id(value)

    def to_domain(self, year: int, month: int, base_currency: str) -> CategoryBudget:
        currency = self.currency or base_currency
        return CategoryBudget(
            category_id=self.category_id,
            year=year,
            month=month,
            amount=Money(self.budget_amount, currency),
            spent_this_month=Money(self.spent_this_month, currency),
            is_editable=self.is_editable,
        )


class TransactionRecord(_Record):
    id: str
    amount: float
    currency: str | None = None
    original_amount: float | None = Field(
        None, validation_alias=AliasChoices("originalAmount", "original_amount")
    )
    original_currency: str | None = Field(
        None, validation_alias=AliasChoices("originalCurrency", "original_currency")
    )
    amount_php: float | None = Field(
        None, validation_alias=AliasChoices("amountPHP", "amount_php", "baseAmount")
    )
    transaction_date: date = Field(
        validation_alias=AliasChoices("transactionDate", "transaction_date", "date")
    )
    category_id: str | None = Field(
        None, validation_alias=AliasChoices("categoryId", "category_id")
    )
    description: str | None = None

    @field_validator("id", "category_id", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _to_str_id(value)

    @field_validator("transaction_date", mode="before")
    @classmethod
    def parse_transaction_date(cls, value):
        return parse_record_date(value)

    def to_domain(self, base_currency: str) -> Transaction:
        original_value = self.original_amount if self.original_amount is not None else self.amount
        original_currency = self.original_currency or self.currency or base_currency
        base = Money(self.amount_php, base_currency) if self.amount_php is not None else None
        return Transaction(
            id=self.id,
            amount=TransactionAmount(
                original=Money(original_value, original_currency),
                base=base,
            ),
            date=self.transaction_date,
            category_id=self.category_id or None,
            description=self.description or "",
        )
