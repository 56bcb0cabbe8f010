from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from errors import (
    AlreadyPaid,
    AlreadyProcessed,
    ExternalServiceError,
    InsufficientQuantity,
    InvalidReference,
    NotFound,
    ValidationError,
)
from models import (
    MICROS_PER_UNIT,
    Account,
    Category,
    InstallmentPayment,
    InstallmentPurchase,
    InstallmentStatus,
    InvestmentPosition,
    SalaryConfig,
    Transaction,
    TransactionType,
    micros_times_cents,
)
from periods import (
    add_months,
    first_business_day,
    local_today,
    month_period,
    month_start,
    year_month,
)
from quotes import PriceQuoteService
from schemas import (
    AccountIn,
    CategoryIn,
    InstallmentPurchaseIn,
    PositionIn,
    SalaryConfigIn,
    SellIn,
    TransactionIn,
)

logger = logging.getLogger(__name__)


DEFAULT_CATEGORIES: list[tuple[str, TransactionType, str, str]] = [
    ("Salary", TransactionType.income, "#10B981", "💼"),
    ("Freelance", TransactionType.income, "#10B981", "💻"),
    ("Investments", TransactionType.income, "#10B981", "📈"),
    ("Gifts", TransactionType.income, "#10B981", "🎁"),
    ("Other income", TransactionType.income, "#10B981", "💰"),
    ("Food", TransactionType.expense, "#EF4444", "🍔"),
    ("Transport", TransactionType.expense, "#EF4444", "🚗"),
    ("Housing", TransactionType.expense, "#EF4444", "🏠"),
    ("Health", TransactionType.expense, "#EF4444", "🏥"),
    ("Education", TransactionType.expense, "#EF4444", "📚"),
    ("Leisure", TransactionType.expense, "#EF4444", "🎮"),
    ("Clothing", TransactionType.expense, "#EF4444", "👕"),
    ("Bills", TransactionType.expense, "#EF4444", "💳"),
    ("Other expenses", TransactionType.expense, "#EF4444", "💸"),
]

SALARY_DESCRIPTION = "Monthly salary"
MAX_HISTORY_MONTHS = 1200


def seed_default_categories(session: Session) -> int:
    existing = session.execute(select(func.count(Category.id))).scalar_one() or 0
    if existing:
        return 0
    for name, txn_type, color, icon in DEFAULT_CATEGORIES:
        session.add(Category(name=name, type=txn_type, color=color, icon=icon))
    session.commit()
    logger.info(f"seed_categories: inserted={len(DEFAULT_CATEGORIES)}")
    return len(DEFAULT_CATEGORIES)


def quantity_to_micros(quantity: Decimal) -> int:
    try:
        micros = (Decimal(quantity) * MICROS_PER_UNIT).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError("Quantity must be a number") from exc
    return int(micros)


def _percent_change(current: int, previous: int) -> Optional[float]:
    if previous == 0:
        return None
    return (current - previous) / abs(previous) * 100


def _clean_name(value: Optional[str], label: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise ValidationError(f"{label} cannot be empty")
    return clean


@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    query: Optional[str] = None


class BalanceMaintainer:
    """Keeps ``Account.balance_cents`` equal to the initial balance plus the
    signed amounts of every transaction referencing the account.

    Balances move by in-database increments, so two writers touching the same
    account serialise on the row instead of overwriting each other's reads.
    Nothing here commits: the caller's single commit covers the transaction
    row and the balance change together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def shift(self, account_id: int, delta_cents: int) -> None:
        if delta_cents == 0:
            return
        self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta_cents)
            .execution_options(synchronize_session="fetch")
        )

    def apply(self, txn: Transaction) -> None:
        self.shift(txn.account_id, txn.signed_amount_cents)

    def reverse(self, txn: Transaction) -> None:
        self.shift(txn.account_id, -txn.signed_amount_cents)

    def move(self, old_account_id: int, old_signed_cents: int, txn: Transaction) -> None:
        # Old effect comes off the old account before the new one is applied;
        # the two accounts may differ.
        self.shift(old_account_id, -old_signed_cents)
        self.apply(txn)


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.balances = BalanceMaintainer(session)

    def list_all(self) -> list[Account]:
        stmt = select(Account).order_by(Account.created_at.desc(), Account.id.desc())
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFound("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            name=_clean_name(data.name, "Account name"),
            type=data.type,
            initial_balance_cents=data.initial_balance_cents,
            balance_cents=data.initial_balance_cents,
            color=data.color,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        name = _clean_name(data.name, "Account name")
        delta = data.initial_balance_cents - account.initial_balance_cents

        account.name = name
        account.type = data.type
        account.color = data.color
        account.initial_balance_cents = data.initial_balance_cents
        self.balances.shift(account.id, delta)

        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> int:
        """Delete the account with every transaction, installment purchase and
        salary configuration that references it. Returns the number of
        transactions removed."""
        account = self.get(account_id)
        txn_ids = select(Transaction.id).where(Transaction.account_id == account.id)
        removed = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.account_id == account.id
                )
            ).scalar_one()
            or 0
        )
        self.session.execute(
            update(InstallmentPayment)
            .where(InstallmentPayment.transaction_id.in_(txn_ids))
            .values(transaction_id=None)
            .execution_options(synchronize_session="fetch")
        )
        salary = self.session.scalar(
            select(SalaryConfig).where(SalaryConfig.account_id == account.id)
        )
        if salary:
            logger.warning(
                f"account_delete: account_id={account.id} removes salary configuration"
            )
            self.session.delete(salary)
            self.session.flush()

        self.session.delete(account)
        self.session.commit()
        logger.info(
            f"account_delete: account_id={account_id} transactions_removed={removed}"
        )
        return removed

    def _ledger_sums(self) -> dict[int, int]:
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        stmt = select(
            Transaction.account_id, func.coalesce(func.sum(signed), 0).label("total")
        ).group_by(Transaction.account_id)
        return {
            int(row.account_id): int(row.total or 0)
            for row in self.session.execute(stmt)
        }

    def balance_drift(self) -> list[dict[str, int]]:
        sums = self._ledger_sums()
        drift: list[dict[str, int]] = []
        for account in self.list_all():
            expected = account.initial_balance_cents + sums.get(account.id, 0)
            if account.balance_cents != expected:
                drift.append(
                    {
                        "account_id": account.id,
                        "stored_cents": account.balance_cents,
                        "expected_cents": expected,
                    }
                )
        return drift

    def rebuild_balances(self) -> int:
        sums = self._ledger_sums()
        changed = 0
        for account in self.list_all():
            expected = account.initial_balance_cents + sums.get(account.id, 0)
            if account.balance_cents != expected:
                account.balance_cents = expected
                changed += 1
        self.session.commit()
        logger.info(f"rebuild_balances: accounts_changed={changed}")
        return changed


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        if txn_type:
            stmt = stmt.where(Category.type == txn_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = _clean_name(data.name, "Category name")
        existing = self.session.scalar(
            select(Category).where(func.lower(Category.name) == name.lower())
        )
        if existing:
            raise ValidationError("Category with this name already exists")
        category = Category(name=name, type=data.type, color=data.color, icon=data.icon)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.balances = BalanceMaintainer(session)

    def _check_references(
        self,
        account_id: int,
        category_id: Optional[int],
        txn_type: TransactionType,
    ) -> None:
        if not self.session.get(Account, account_id):
            raise NotFound("Account not found")
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found")
        if category.type != txn_type:
            raise InvalidReference("Category type mismatch")

    def _validate(self, data: TransactionIn) -> None:
        if data.amount_cents <= 0:
            raise ValidationError("Amount must be greater than zero")
        self._check_references(data.account_id, data.category_id, data.type)

    def record(
        self,
        *,
        account_id: int,
        category_id: Optional[int],
        txn_type: TransactionType,
        amount_cents: int,
        description: Optional[str],
        txn_date: date,
    ) -> Transaction:
        """Add a transaction and its balance effect to the current unit of work
        without committing. Callers have already validated the references."""
        if amount_cents <= 0:
            raise ValidationError("Amount must be greater than zero")
        txn = Transaction(
            account_id=account_id,
            category_id=category_id,
            type=txn_type,
            amount_cents=amount_cents,
            description=description,
            date=txn_date,
        )
        self.session.add(txn)
        self.session.flush()
        self.balances.apply(txn)
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        self._validate(data)
        txn = self.record(
            account_id=data.account_id,
            category_id=data.category_id,
            txn_type=data.type,
            amount_cents=data.amount_cents,
            description=(data.description or "").strip() or None,
            txn_date=data.date,
        )
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        self._validate(data)

        old_account_id = txn.account_id
        old_signed = txn.signed_amount_cents

        txn.account_id = data.account_id
        txn.category_id = data.category_id
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.description = (data.description or "").strip() or None
        txn.date = data.date
        self.session.flush()
        self.balances.move(old_account_id, old_signed, txn)

        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.balances.reverse(txn)
        self.session.execute(
            update(InstallmentPayment)
            .where(InstallmentPayment.transaction_id == txn.id)
            .values(transaction_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.delete(txn)
        self.session.commit()

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                func.lower(func.coalesce(Transaction.description, "")).like(like)
            )
        return self.session.scalars(stmt).unique().all()

    def clear_all(self) -> int:
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        rows = self.session.execute(
            select(
                Transaction.account_id,
                func.sum(signed).label("total"),
                func.count(Transaction.id).label("count"),
            ).group_by(Transaction.account_id)
        ).all()
        removed = 0
        for row in rows:
            self.balances.shift(int(row.account_id), -int(row.total or 0))
            removed += int(row.count)
        self.session.execute(
            update(InstallmentPayment)
            .where(InstallmentPayment.transaction_id.isnot(None))
            .values(transaction_id=None)
            .execution_options(synchronize_session="fetch")
        )
        self.session.execute(
            delete(Transaction).execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        logger.info(f"clear_transactions: removed={removed}")
        return removed


class StatisticsService:
    """Read-only aggregates over the ledger, computed on every call.

    Windows are bucketed on the stored calendar ``date`` so a month is the
    same month regardless of server timezone. Every method that would
    otherwise depend on "now" takes an explicit ``today``.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _sums(self, start: date, end: date) -> tuple[int, int]:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
        ).where(Transaction.date.between(start, end))
        row = self.session.execute(stmt).one()
        return int(row.income), int(row.expenses)

    def total_balance(self) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(Account.balance_cents), 0))
        ).scalar_one()
        return int(total or 0)

    def current_stats(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        month = month_period(today)
        income, expenses = self._sums(month.start, month.end)
        return {
            "month": month.slug,
            "total_balance_cents": self.total_balance(),
            "monthly_income_cents": income,
            "monthly_expenses_cents": expenses,
            "monthly_balance_cents": income - expenses,
        }

    def period_stats(self, start: date, end: date) -> dict[str, object]:
        if start > end:
            raise ValidationError("Start date must be before end date")
        income, expenses = self._sums(start, end)
        return {
            "start": start,
            "end": end,
            "income_cents": income,
            "expenses_cents": expenses,
            "balance_cents": income - expenses,
        }

    def expenses_by_category(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[dict[str, object]]:
        if start and end and start > end:
            raise ValidationError("Start date must be before end date")
        total = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(
                Transaction.category_id,
                Category.name,
                Category.icon,
                Category.color,
                total,
            )
            .select_from(Transaction)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(Transaction.type == TransactionType.expense)
            .group_by(
                Transaction.category_id, Category.name, Category.icon, Category.color
            )
            .order_by(total.desc())
        )
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)

        out: list[dict[str, object]] = []
        for row in self.session.execute(stmt):
            amount = int(row.total or 0)
            if amount <= 0:
                continue
            out.append(
                {
                    "category_id": row.category_id,
                    "name": row.name or "Uncategorized",
                    "icon": row.icon,
                    "color": row.color,
                    "total_cents": amount,
                }
            )
        return out

    def balance_history(
        self, months_back: int = 6, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        if months_back < 1:
            raise ValidationError("months_back must be at least 1")
        if months_back > MAX_HISTORY_MONTHS:
            raise ValidationError(f"months_back must be at most {MAX_HISTORY_MONTHS}")
        today = today or local_today()
        end_month = month_start(today)
        try:
            months = [add_months(end_month, -i) for i in range(months_back - 1, -1, -1)]
        except ValueError as exc:
            raise ValidationError("months_back reaches before the first supported date") from exc
        window_end = month_period(today).end

        ym = func.strftime("%Y-%m", Transaction.date).label("ym")
        stmt = (
            select(
                ym,
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("income"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.expense,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("expenses"),
            )
            .where(Transaction.date.between(months[0], window_end))
            .group_by(ym)
        )
        totals = {
            str(row.ym): (int(row.income), int(row.expenses))
            for row in self.session.execute(stmt)
        }

        out: list[dict[str, object]] = []
        for month in months:
            label = year_month(month)
            income, expenses = totals.get(label, (0, 0))
            out.append(
                {
                    "month": label,
                    "income_cents": income,
                    "expenses_cents": expenses,
                    "balance_cents": income - expenses,
                }
            )
        return out

    def monthly_comparison(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        current = month_period(today)
        previous = month_period(add_months(current.start, -1))

        cur_income, cur_expenses = self._sums(current.start, current.end)
        prev_income, prev_expenses = self._sums(previous.start, previous.end)
        cur_balance = cur_income - cur_expenses
        prev_balance = prev_income - prev_expenses
        return {
            "current": {
                "month": current.slug,
                "income_cents": cur_income,
                "expenses_cents": cur_expenses,
                "balance_cents": cur_balance,
            },
            "previous": {
                "month": previous.slug,
                "income_cents": prev_income,
                "expenses_cents": prev_expenses,
                "balance_cents": prev_balance,
            },
            "change_percent": {
                "income": _percent_change(cur_income, prev_income),
                "expenses": _percent_change(cur_expenses, prev_expenses),
                "balance": _percent_change(cur_balance, prev_balance),
            },
        }

    def top_expenses(
        self,
        limit: int = 10,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[dict[str, object]]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.type == TransactionType.expense)
            .order_by(
                Transaction.amount_cents.desc(),
                Transaction.date.desc(),
                Transaction.id.desc(),
            )
            .limit(limit)
        )
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        return [
            {
                "id": txn.id,
                "account_id": txn.account_id,
                "amount_cents": txn.amount_cents,
                "description": txn.description,
                "date": txn.date,
                "category_name": txn.category.name if txn.category else None,
                "category_icon": txn.category.icon if txn.category else None,
            }
            for txn in self.session.scalars(stmt).all()
        ]


class InstallmentDeletePolicy(str, Enum):
    preserve_history = "preserve_history"
    strict_cascade = "strict_cascade"


def split_installments(total_cents: int, count: int) -> list[int]:
    """Per-installment amounts; the last absorbs the rounding remainder."""
    if count < 1:
        raise ValidationError("Installment count must be at least 1")
    if total_cents <= 0:
        raise ValidationError("Total amount must be greater than zero")
    each = int(
        (Decimal(total_cents) / Decimal(count)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )
    last = total_cents - each * (count - 1)
    if each <= 0 or last <= 0:
        raise ValidationError("Total amount is too small for the installment count")
    return [each] * (count - 1) + [last]


class InstallmentService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionService(session)

    def list_all(self) -> list[InstallmentPurchase]:
        stmt = (
            select(InstallmentPurchase)
            .options(selectinload(InstallmentPurchase.payments))
            .order_by(InstallmentPurchase.start_date.desc(), InstallmentPurchase.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, purchase_id: int) -> InstallmentPurchase:
        stmt = (
            select(InstallmentPurchase)
            .options(selectinload(InstallmentPurchase.payments))
            .where(InstallmentPurchase.id == purchase_id)
        )
        purchase = self.session.scalar(stmt)
        if not purchase:
            raise NotFound("Installment purchase not found")
        return purchase

    def payments(self, purchase_id: int) -> list[InstallmentPayment]:
        return list(self.get(purchase_id).payments)

    def create(self, data: InstallmentPurchaseIn) -> InstallmentPurchase:
        description = _clean_name(data.description, "Description")
        amounts = split_installments(data.total_amount_cents, data.installments_count)
        self.transactions._check_references(
            data.account_id, data.category_id, TransactionType.expense
        )

        purchase = InstallmentPurchase(
            description=description,
            total_amount_cents=data.total_amount_cents,
            installments_count=data.installments_count,
            installment_amount_cents=amounts[0],
            start_date=data.start_date,
            account_id=data.account_id,
            category_id=data.category_id,
            status=InstallmentStatus.active,
        )
        purchase.payments = [
            InstallmentPayment(
                installment_number=i + 1,
                amount_cents=amount,
                due_date=add_months(data.start_date, i),
            )
            for i, amount in enumerate(amounts)
        ]
        self.session.add(purchase)
        self.session.commit()
        self.session.refresh(purchase)
        return purchase

    def pay(
        self, purchase_id: int, payment_id: int, paid_date: date
    ) -> InstallmentPayment:
        purchase = self.get(purchase_id)
        payment = next((p for p in purchase.payments if p.id == payment_id), None)
        if payment is None:
            raise NotFound("Installment payment not found")
        if payment.paid_date is not None:
            raise AlreadyPaid(
                f"Installment {payment.installment_number} is already paid"
            )

        txn = self.transactions.record(
            account_id=purchase.account_id,
            category_id=purchase.category_id,
            txn_type=TransactionType.expense,
            amount_cents=payment.amount_cents,
            description=(
                f"{purchase.description} "
                f"({payment.installment_number}/{purchase.installments_count})"
            ),
            txn_date=paid_date,
        )
        payment.paid_date = paid_date
        payment.transaction_id = txn.id
        if all(p.paid_date is not None for p in purchase.payments):
            purchase.status = InstallmentStatus.completed

        self.session.commit()
        return payment

    def delete(
        self,
        purchase_id: int,
        policy: Optional[InstallmentDeletePolicy] = None,
    ) -> None:
        """Delete a purchase and its schedule.

        Under ``preserve_history`` the expense transactions already posted by
        payments stay in the ledger; ``strict_cascade`` removes them and
        reverses their balance effect in the same commit.
        """
        if policy is None:
            policy = InstallmentDeletePolicy(get_settings().installment_delete_policy)
        purchase = self.get(purchase_id)

        reversed_count = 0
        if policy == InstallmentDeletePolicy.strict_cascade:
            for payment in purchase.payments:
                if payment.transaction_id is None:
                    continue
                txn = self.session.get(Transaction, payment.transaction_id)
                payment.transaction_id = None
                if txn is None:
                    continue
                self.transactions.balances.reverse(txn)
                self.session.delete(txn)
                reversed_count += 1

        self.session.delete(purchase)
        self.session.commit()
        logger.info(
            f"installment_delete: purchase_id={purchase_id} policy={policy.value} "
            f"transactions_reversed={reversed_count}"
        )


@dataclass(frozen=True)
class SaleResult:
    sell_value_cents: int
    cost_of_sold_cents: int
    realized_pl_cents: int
    realized_pl_percent: Optional[float]
    transaction_id: int
    remaining_quantity: Decimal
    position_closed: bool


class InvestmentService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionService(session)

    def list_all(self) -> list[InvestmentPosition]:
        stmt = select(InvestmentPosition).order_by(
            InvestmentPosition.created_at.desc(), InvestmentPosition.id.desc()
        )
        return self.session.scalars(stmt).all()

    def get(self, position_id: int) -> InvestmentPosition:
        position = self.session.get(InvestmentPosition, position_id)
        if not position:
            raise NotFound("Investment position not found")
        return position

    def _apply_fields(self, position: InvestmentPosition, data: PositionIn) -> None:
        ticker = _clean_name(data.ticker, "Ticker").upper()
        name = _clean_name(data.name, "Name")
        position_type = _clean_name(data.type, "Type")
        quantity_micros = quantity_to_micros(data.quantity)
        if quantity_micros <= 0:
            raise ValidationError("Quantity must be greater than zero")
        if data.average_price_cents < 0:
            raise ValidationError("Average price cannot be negative")
        if data.current_price_cents is not None and data.current_price_cents < 0:
            raise ValidationError("Price cannot be negative")

        # Nothing is assigned until every field has passed validation.
        position.ticker = ticker
        position.name = name
        position.type = position_type
        position.quantity_micros = quantity_micros
        position.average_price_cents = data.average_price_cents
        position.notes = data.notes
        if data.current_price_cents is not None:
            position.current_price_cents = data.current_price_cents
            position.price_updated_at = datetime.utcnow()

    def record_position(self, data: PositionIn) -> InvestmentPosition:
        """Create the position for ``data.ticker`` or overwrite the existing one."""
        ticker = _clean_name(data.ticker, "Ticker").upper()
        position = self.session.scalar(
            select(InvestmentPosition).where(InvestmentPosition.ticker == ticker)
        )
        candidate = position or InvestmentPosition()
        self._apply_fields(candidate, data)
        if position is None:
            self.session.add(candidate)
        self.session.commit()
        self.session.refresh(candidate)
        return candidate

    def update_position(self, position_id: int, data: PositionIn) -> InvestmentPosition:
        position = self.get(position_id)
        ticker = _clean_name(data.ticker, "Ticker").upper()
        clash = self.session.scalar(
            select(InvestmentPosition).where(
                InvestmentPosition.ticker == ticker,
                InvestmentPosition.id != position_id,
            )
        )
        if clash:
            raise ValidationError("Another position already uses this ticker")
        self._apply_fields(position, data)
        self.session.commit()
        self.session.refresh(position)
        return position

    def delete_position(self, position_id: int) -> None:
        position = self.get(position_id)
        self.session.delete(position)
        self.session.commit()

    def apply_price_update(
        self, position_id: int, current_price_cents: int
    ) -> InvestmentPosition:
        if current_price_cents < 0:
            raise ValidationError("Price cannot be negative")
        position = self.get(position_id)
        position.current_price_cents = current_price_cents
        position.price_updated_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(position)
        return position

    def refresh_price(
        self, position_id: int, quotes: PriceQuoteService
    ) -> InvestmentPosition:
        position = self.get(position_id)
        quote = quotes.quote(position.ticker)
        return self.apply_price_update(position.id, quote.price_cents)

    def refresh_all_prices(self, quotes: PriceQuoteService) -> dict[str, object]:
        updated = 0
        failed: list[str] = []
        for position in self.list_all():
            try:
                self.refresh_price(position.id, quotes)
            except ExternalServiceError as exc:
                logger.warning(f"price_refresh_failed: ticker={position.ticker} {exc}")
                failed.append(position.ticker)
                continue
            updated += 1
        logger.info(f"price_refresh: updated={updated} failed={len(failed)}")
        return {"updated": updated, "failed": failed}

    def sell(
        self, position_id: int, data: SellIn, *, today: Optional[date] = None
    ) -> SaleResult:
        position = self.get(position_id)
        quantity_micros = quantity_to_micros(data.quantity)
        if quantity_micros <= 0:
            raise ValidationError("Quantity must be greater than zero")
        if data.sell_price_cents <= 0:
            raise ValidationError("Sell price must be greater than zero")
        if quantity_micros > position.quantity_micros:
            raise InsufficientQuantity(
                f"Cannot sell {data.quantity} of {position.ticker}; "
                f"holding {position.quantity}"
            )
        self.transactions._check_references(
            data.account_id, data.category_id, TransactionType.income
        )

        sell_value = micros_times_cents(quantity_micros, data.sell_price_cents)
        if sell_value <= 0:
            raise ValidationError("Sale value rounds to zero")
        cost_of_sold = micros_times_cents(quantity_micros, position.average_price_cents)
        realized = sell_value - cost_of_sold
        realized_percent = (realized / cost_of_sold * 100) if cost_of_sold else None

        txn = self.transactions.record(
            account_id=data.account_id,
            category_id=data.category_id,
            txn_type=TransactionType.income,
            amount_cents=sell_value,
            description=f"Sale: {position.ticker} ({position.name})",
            txn_date=data.date or today or local_today(),
        )

        remaining = position.quantity_micros - quantity_micros
        closed = remaining == 0
        if closed:
            self.session.delete(position)
        else:
            position.quantity_micros = remaining

        self.session.commit()
        return SaleResult(
            sell_value_cents=sell_value,
            cost_of_sold_cents=cost_of_sold,
            realized_pl_cents=realized,
            realized_pl_percent=realized_percent,
            transaction_id=txn.id,
            remaining_quantity=Decimal(remaining) / MICROS_PER_UNIT,
            position_closed=closed,
        )

    def summary(self) -> dict[str, object]:
        positions = self.list_all()
        total_invested = sum(p.total_invested_cents for p in positions)
        priced = [p for p in positions if p.current_price_cents is not None]
        total_value = sum(p.current_value_cents or 0 for p in priced)
        total_pl = sum(p.profit_loss_cents or 0 for p in priced)
        return {
            "count": len(positions),
            "total_invested_cents": total_invested,
            "total_current_value_cents": total_value,
            "total_profit_loss_cents": total_pl,
            "total_profit_loss_percent": (
                total_pl / total_invested * 100 if total_invested else None
            ),
        }


class SalaryService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionService(session)

    def get_config(self) -> Optional[SalaryConfig]:
        return self.session.scalar(select(SalaryConfig).order_by(SalaryConfig.id).limit(1))

    def save_config(self, data: SalaryConfigIn) -> SalaryConfig:
        if data.amount_cents <= 0:
            raise ValidationError("Salary amount must be greater than zero")
        self.transactions._check_references(
            data.account_id, data.category_id, TransactionType.income
        )
        config = self.get_config()
        if config is None:
            config = SalaryConfig()
            self.session.add(config)
        config.amount_cents = data.amount_cents
        config.account_id = data.account_id
        config.category_id = data.category_id
        self.session.commit()
        self.session.refresh(config)
        return config

    def process(self, today: Optional[date] = None) -> Transaction:
        today = today or local_today()
        config = self.get_config()
        if config is None:
            raise NotFound("Salary configuration not found")
        month = year_month(today)
        if config.last_paid_month == month:
            raise AlreadyProcessed(f"Salary for {month} was already processed")

        txn = self.transactions.record(
            account_id=config.account_id,
            category_id=config.category_id,
            txn_type=TransactionType.income,
            amount_cents=config.amount_cents,
            description=SALARY_DESCRIPTION,
            txn_date=today,
        )
        config.last_paid_month = month
        self.session.commit()
        logger.info(
            f"salary_processed: month={month} account_id={config.account_id} "
            f"amount_cents={config.amount_cents}"
        )
        return txn

    def auto_process(self, today: Optional[date] = None) -> Optional[Transaction]:
        """Post this month's salary once the first business day has arrived."""
        today = today or local_today()
        config = self.get_config()
        if config is None or config.last_paid_month == year_month(today):
            return None
        if today < first_business_day(today.year, today.month):
            return None
        return self.process(today)
