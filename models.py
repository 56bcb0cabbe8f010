from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base

MICROS_PER_UNIT = 1_000_000


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class AccountType(str, Enum):
    bank = "bank"
    wallet = "wallet"
    savings = "savings"
    investment = "investment"
    other = "other"


class InstallmentStatus(str, Enum):
    active = "active"
    completed = "completed"


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.income:
        return amount_cents
    return -amount_cents


def micros_times_cents(quantity_micros: int, price_cents: int) -> int:
    value = (Decimal(quantity_micros) * Decimal(price_cents)) / MICROS_PER_UNIT
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.bank
    )
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    # Moved only by BalanceMaintainer, in the same commit as the transaction change.
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#3B82F6")

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account", cascade="all, delete-orphan"
    )
    installment_purchases: Mapped[list["InstallmentPurchase"]] = relationship(
        "InstallmentPurchase", back_populates="account", cascade="all, delete-orphan"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6B7280")
    icon: Mapped[str] = mapped_column(String(16), nullable=False, default="💰")

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_type_date", "type", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )

    @property
    def signed_amount_cents(self) -> int:
        return signed_amount(self.type, self.amount_cents)


class InstallmentPurchase(Base, TimestampMixin):
    __tablename__ = "installment_purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    installments_count: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    status: Mapped[InstallmentStatus] = mapped_column(
        SAEnum(InstallmentStatus), nullable=False, default=InstallmentStatus.active
    )

    account: Mapped["Account"] = relationship(
        "Account", back_populates="installment_purchases"
    )
    category: Mapped[Optional["Category"]] = relationship("Category")
    payments: Mapped[list["InstallmentPayment"]] = relationship(
        "InstallmentPayment",
        back_populates="purchase",
        cascade="all, delete-orphan",
        order_by="InstallmentPayment.installment_number",
    )

    __table_args__ = (
        CheckConstraint("total_amount_cents > 0", name="ck_installment_total_positive"),
        CheckConstraint("installments_count >= 1", name="ck_installment_count_positive"),
    )

    @property
    def paid_count(self) -> int:
        return sum(1 for p in self.payments if p.paid_date is not None)

    @property
    def remaining_cents(self) -> int:
        return sum(p.amount_cents for p in self.payments if p.paid_date is None)


class InstallmentPayment(Base, TimestampMixin):
    __tablename__ = "installment_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    purchase_id: Mapped[int] = mapped_column(
        ForeignKey("installment_purchases.id", ondelete="CASCADE"), nullable=False
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    purchase: Mapped["InstallmentPurchase"] = relationship(
        "InstallmentPurchase", back_populates="payments"
    )

    __table_args__ = (
        UniqueConstraint(
            "purchase_id", "installment_number", name="uq_installment_payment_number"
        ),
        CheckConstraint(
            "installment_number >= 1", name="ck_installment_payment_number_positive"
        ),
    )


class InvestmentPosition(Base, TimestampMixin):
    __tablename__ = "investment_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticker: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    quantity_micros: Mapped[int] = mapped_column(Integer, nullable=False)
    average_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_price_cents: Mapped[Optional[int]] = mapped_column(Integer)
    price_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("quantity_micros > 0", name="ck_position_quantity_positive"),
        CheckConstraint("average_price_cents >= 0", name="ck_position_price_positive"),
    )

    @property
    def quantity(self) -> Decimal:
        return Decimal(self.quantity_micros) / MICROS_PER_UNIT

    @property
    def total_invested_cents(self) -> int:
        return micros_times_cents(self.quantity_micros, self.average_price_cents)

    @property
    def current_value_cents(self) -> Optional[int]:
        if self.current_price_cents is None:
            return None
        return micros_times_cents(self.quantity_micros, self.current_price_cents)

    @property
    def profit_loss_cents(self) -> Optional[int]:
        current = self.current_value_cents
        if current is None:
            return None
        return current - self.total_invested_cents

    @property
    def profit_loss_percent(self) -> Optional[float]:
        profit_loss = self.profit_loss_cents
        invested = self.total_invested_cents
        if profit_loss is None or invested == 0:
            return None
        return profit_loss / invested * 100


class SalaryConfig(Base, TimestampMixin):
    __tablename__ = "salary_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    # "YYYY-MM" of the last month whose salary was posted.
    last_paid_month: Mapped[Optional[str]] = mapped_column(String(7))

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_salary_amount_positive"),
    )
