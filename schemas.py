import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, InstallmentStatus, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: AccountType = AccountType.bank
    initial_balance_cents: int = 0
    color: str = Field("#3B82F6", max_length=7)


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: TransactionType
    color: str = Field("#6B7280", max_length=7)
    icon: str = Field("💰", max_length=16)


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    type: TransactionType
    amount_cents: int
    description: Optional[str] = Field(default=None, max_length=200)
    date: date


class InstallmentPurchaseIn(BaseModel):
    description: str = Field(..., max_length=200)
    total_amount_cents: int
    installments_count: int
    start_date: date
    account_id: int
    category_id: Optional[int] = None


class InstallmentPayIn(BaseModel):
    payment_id: int
    date: date


class PositionIn(BaseModel):
    ticker: str = Field(..., max_length=20)
    name: str = Field(..., max_length=120)
    type: str = Field("stock", max_length=30)
    quantity: Decimal
    average_price_cents: int = Field(..., ge=0)
    current_price_cents: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class PriceUpdateIn(BaseModel):
    current_price_cents: int = Field(..., ge=0)


class SellIn(BaseModel):
    quantity: Decimal
    sell_price_cents: int = Field(..., ge=0)
    account_id: int
    category_id: Optional[int] = None
    date: Optional[dt.date] = None


class SalaryConfigIn(BaseModel):
    amount_cents: int
    account_id: int
    category_id: Optional[int] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    initial_balance_cents: int
    balance_cents: int
    color: str


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    color: str
    icon: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: Optional[int]
    type: TransactionType
    amount_cents: int
    description: Optional[str]
    date: date


class InstallmentPaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    installment_number: int
    amount_cents: int
    due_date: date
    paid_date: Optional[date]
    transaction_id: Optional[int]


class InstallmentPurchaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    description: str
    total_amount_cents: int
    installments_count: int
    installment_amount_cents: int
    start_date: date
    account_id: int
    category_id: Optional[int]
    status: InstallmentStatus
    paid_count: int
    remaining_cents: int
    payments: list[InstallmentPaymentOut]


class PositionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticker: str
    name: str
    type: str
    quantity: Decimal
    average_price_cents: int
    current_price_cents: Optional[int]
    total_invested_cents: int
    current_value_cents: Optional[int]
    profit_loss_cents: Optional[int]
    profit_loss_percent: Optional[float]
    notes: Optional[str]


class SalaryConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    account_id: int
    category_id: Optional[int]
    last_paid_month: Optional[str]
