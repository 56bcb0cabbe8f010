from datetime import date

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidReference, NotFound, ValidationError
from models import Account, AccountType, Category, Transaction, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn
from services import (
    AccountService,
    CategoryService,
    StatisticsService,
    TransactionFilters,
    TransactionService,
    seed_default_categories,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _setup(session, initial_balance_cents=0):
    account = AccountService(session).create(
        AccountIn(name="Checking", initial_balance_cents=initial_balance_cents)
    )
    income = CategoryService(session).create(
        CategoryIn(name="Salary", type=TransactionType.income)
    )
    expense = CategoryService(session).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    return account, income, expense


def _balance(session, account_id):
    return session.execute(
        select(Account.balance_cents).where(Account.id == account_id)
    ).scalar_one()


def test_balance_follows_creates_and_deletes() -> None:
    session = make_session()
    account, income, expense = _setup(session, initial_balance_cents=10_000)
    txns = TransactionService(session)

    first = txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=expense.id,
            type=TransactionType.expense,
            amount_cents=2_500,
            date=date(2024, 3, 1),
        )
    )
    txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=income.id,
            type=TransactionType.income,
            amount_cents=7_000,
            date=date(2024, 3, 2),
        )
    )
    assert _balance(session, account.id) == 14_500

    txns.delete(first.id)
    assert _balance(session, account.id) == 17_000
    assert AccountService(session).balance_drift() == []


def test_update_moves_balance_between_accounts() -> None:
    session = make_session()
    checking, income, expense = _setup(session)
    savings = AccountService(session).create(
        AccountIn(name="Savings", type=AccountType.savings, initial_balance_cents=500)
    )
    txns = TransactionService(session)
    txn = txns.create(
        TransactionIn(
            account_id=checking.id,
            category_id=expense.id,
            type=TransactionType.expense,
            amount_cents=1_000,
            date=date(2024, 3, 5),
        )
    )
    assert _balance(session, checking.id) == -1_000

    txns.update(
        txn.id,
        TransactionIn(
            account_id=savings.id,
            category_id=income.id,
            type=TransactionType.income,
            amount_cents=300,
            date=date(2024, 3, 6),
        ),
    )

    assert _balance(session, checking.id) == 0
    assert _balance(session, savings.id) == 800


def test_update_round_trip_restores_balance() -> None:
    session = make_session()
    account, _, expense = _setup(session, initial_balance_cents=1_000)
    txns = TransactionService(session)
    original = TransactionIn(
        account_id=account.id,
        category_id=expense.id,
        type=TransactionType.expense,
        amount_cents=400,
        description="Lunch",
        date=date(2024, 3, 5),
    )
    txn = txns.create(original)
    before = _balance(session, account.id)

    txns.update(
        txn.id,
        TransactionIn(
            account_id=account.id,
            category_id=expense.id,
            type=TransactionType.expense,
            amount_cents=950,
            description="Dinner",
            date=date(2024, 3, 5),
        ),
    )
    assert _balance(session, account.id) == 50
    txns.update(txn.id, original)

    assert _balance(session, account.id) == before == 600


def test_rejects_invalid_transactions_without_side_effects() -> None:
    session = make_session()
    account, income, expense = _setup(session, initial_balance_cents=100)
    txns = TransactionService(session)

    with pytest.raises(ValidationError):
        txns.create(
            TransactionIn(
                account_id=account.id,
                type=TransactionType.expense,
                amount_cents=0,
                date=date(2024, 3, 1),
            )
        )
    with pytest.raises(InvalidReference, match="Category type mismatch"):
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=income.id,
                type=TransactionType.expense,
                amount_cents=100,
                date=date(2024, 3, 1),
            )
        )
    with pytest.raises(NotFound):
        txns.create(
            TransactionIn(
                account_id=999,
                category_id=expense.id,
                type=TransactionType.expense,
                amount_cents=100,
                date=date(2024, 3, 1),
            )
        )
    with pytest.raises(NotFound):
        txns.delete(12345)

    assert txns.list() == []
    assert _balance(session, account.id) == 100


def test_delete_account_cascades_transactions() -> None:
    session = make_session()
    account, _, expense = _setup(session)
    txns = TransactionService(session)
    for amount in (100, 200, 300):
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=expense.id,
                type=TransactionType.expense,
                amount_cents=amount,
                date=date(2024, 3, 1),
            )
        )

    removed = AccountService(session).delete(account.id)

    assert removed == 3
    assert session.scalars(select(Transaction)).all() == []
    stats = StatisticsService(session)
    assert stats.top_expenses(limit=10) == []
    assert stats.period_stats(date(2024, 3, 1), date(2024, 3, 31))["expenses_cents"] == 0
    with pytest.raises(NotFound):
        AccountService(session).get(account.id)


def test_account_initial_balance_change_shifts_balance() -> None:
    session = make_session()
    account, _, expense = _setup(session, initial_balance_cents=1_000)
    TransactionService(session).create(
        TransactionIn(
            account_id=account.id,
            category_id=expense.id,
            type=TransactionType.expense,
            amount_cents=250,
            date=date(2024, 3, 1),
        )
    )

    updated = AccountService(session).update(
        account.id, AccountIn(name="Main", initial_balance_cents=2_000)
    )

    assert updated.name == "Main"
    assert updated.balance_cents == 1_750


def test_list_filters_and_ordering() -> None:
    session = make_session()
    account, income, expense = _setup(session)
    txns = TransactionService(session)
    groceries = txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=expense.id,
            type=TransactionType.expense,
            amount_cents=4_000,
            description="Weekly groceries",
            date=date(2024, 3, 10),
        )
    )
    pay = txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=income.id,
            type=TransactionType.income,
            amount_cents=500_000,
            description="March pay",
            date=date(2024, 3, 1),
        )
    )
    txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=expense.id,
            type=TransactionType.expense,
            amount_cents=1_500,
            description="Bakery",
            date=date(2024, 2, 20),
        )
    )

    everything = txns.list()
    assert [t.date for t in everything] == [
        date(2024, 3, 10),
        date(2024, 3, 1),
        date(2024, 2, 20),
    ]

    march = txns.list(TransactionFilters(start=date(2024, 3, 1), end=date(2024, 3, 31)))
    assert {t.id for t in march} == {groceries.id, pay.id}

    only_income = txns.list(TransactionFilters(type=TransactionType.income))
    assert [t.id for t in only_income] == [pay.id]

    search = txns.list(TransactionFilters(query="GROCER"))
    assert [t.id for t in search] == [groceries.id]

    assert len(txns.list(limit=1, offset=1)) == 1


def test_clear_all_reverses_every_balance() -> None:
    session = make_session()
    account, income, expense = _setup(session, initial_balance_cents=3_000)
    txns = TransactionService(session)
    txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=income.id,
            type=TransactionType.income,
            amount_cents=10_000,
            date=date(2024, 3, 1),
        )
    )
    txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=expense.id,
            type=TransactionType.expense,
            amount_cents=4_000,
            date=date(2024, 3, 2),
        )
    )

    assert txns.clear_all() == 2
    assert txns.list() == []
    assert _balance(session, account.id) == 3_000


def test_rebuild_balances_repairs_drift() -> None:
    session = make_session()
    account, income, _ = _setup(session, initial_balance_cents=500)
    TransactionService(session).create(
        TransactionIn(
            account_id=account.id,
            category_id=income.id,
            type=TransactionType.income,
            amount_cents=1_000,
            date=date(2024, 3, 1),
        )
    )
    session.execute(
        update(Account).where(Account.id == account.id).values(balance_cents=42)
    )
    session.commit()

    accounts = AccountService(session)
    assert accounts.balance_drift() == [
        {"account_id": account.id, "stored_cents": 42, "expected_cents": 1_500}
    ]
    assert accounts.rebuild_balances() == 1
    assert _balance(session, account.id) == 1_500
    assert accounts.balance_drift() == []


def test_categories_are_unique_and_seeded_once() -> None:
    session = make_session()
    assert seed_default_categories(session) > 0
    assert seed_default_categories(session) == 0

    categories = CategoryService(session)
    with pytest.raises(ValidationError):
        categories.create(CategoryIn(name="food", type=TransactionType.expense))

    expense_only = categories.list_all(TransactionType.expense)
    assert expense_only
    assert all(c.type == TransactionType.expense for c in expense_only)
    assert session.scalar(select(Category).where(Category.name == "Salary")) is not None
