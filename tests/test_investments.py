from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ExternalServiceError, InsufficientQuantity, NotFound, ValidationError
from models import Account, InvestmentPosition, Transaction, TransactionType
from quotes import PriceQuote
from schemas import AccountIn, PositionIn, SellIn
from services import AccountService, InvestmentService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class StubQuotes:
    def __init__(self, prices, failing=()):
        self.prices = prices
        self.failing = set(failing)
        self.calls = []

    def quote(self, ticker):
        self.calls.append(ticker)
        if ticker in self.failing:
            raise ExternalServiceError(f"Failed to fetch price for {ticker}")
        return PriceQuote(
            provider="stub",
            ticker=ticker,
            symbol=ticker,
            price=Decimal(self.prices[ticker]),
            fetched_at=None,
        )


def _position(service, ticker="PETR4", quantity="10", average_price_cents=2_000, **extra):
    return service.record_position(
        PositionIn(
            ticker=ticker,
            name=f"{ticker} holding",
            quantity=Decimal(quantity),
            average_price_cents=average_price_cents,
            **extra,
        )
    )


def test_price_update_recomputes_valuation() -> None:
    session = make_session()
    service = InvestmentService(session)
    position = _position(service)

    assert position.total_invested_cents == 20_000
    assert position.current_value_cents is None
    assert position.profit_loss_percent is None

    updated = service.apply_price_update(position.id, 2_500)

    assert updated.current_value_cents == 25_000
    assert updated.profit_loss_cents == 5_000
    assert updated.profit_loss_percent == pytest.approx(25.0)
    assert updated.price_updated_at is not None

    with pytest.raises(ValidationError):
        service.apply_price_update(position.id, -1)


def test_zero_cost_position_has_no_percentage() -> None:
    session = make_session()
    service = InvestmentService(session)
    position = _position(service, ticker="GIFT", average_price_cents=0)

    updated = service.apply_price_update(position.id, 1_000)

    assert updated.profit_loss_cents == 10_000
    assert updated.profit_loss_percent is None


def test_record_position_overwrites_same_ticker() -> None:
    session = make_session()
    service = InvestmentService(session)
    first = _position(service, ticker="vale3", current_price_cents=7_000)
    second = _position(service, ticker="VALE3", quantity="2.5", average_price_cents=6_000)

    assert first.id == second.id
    assert second.ticker == "VALE3"
    assert second.quantity == Decimal("2.5")
    assert second.current_price_cents == 7_000
    assert len(service.list_all()) == 1

    with pytest.raises(ValidationError):
        _position(service, ticker="ZERO", quantity="0")


def test_partial_sale_realizes_profit() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Broker"))
    service = InvestmentService(session)
    position = _position(service, quantity="10", average_price_cents=2_000)

    result = service.sell(
        position.id,
        SellIn(
            quantity=Decimal("4"),
            sell_price_cents=2_550,
            account_id=account.id,
            date=date(2024, 4, 2),
        ),
    )

    assert result.sell_value_cents == 10_200
    assert result.cost_of_sold_cents == 8_000
    assert result.realized_pl_cents == 2_200
    assert result.realized_pl_percent == pytest.approx(27.5)
    assert result.remaining_quantity == Decimal("6")
    assert result.position_closed is False

    txn = session.get(Transaction, result.transaction_id)
    assert txn.type == TransactionType.income
    assert txn.amount_cents == 10_200
    assert txn.date == date(2024, 4, 2)
    assert session.execute(
        select(Account.balance_cents).where(Account.id == account.id)
    ).scalar_one() == 10_200
    assert service.get(position.id).quantity == Decimal("6")


def test_selling_everything_closes_position() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Broker"))
    service = InvestmentService(session)
    position = _position(service, quantity="0.5", average_price_cents=10_000)

    result = service.sell(
        position.id,
        SellIn(quantity=Decimal("0.5"), sell_price_cents=8_000, account_id=account.id),
        today=date(2024, 5, 1),
    )

    assert result.position_closed is True
    assert result.realized_pl_cents == -1_000
    assert session.scalars(select(InvestmentPosition)).all() == []
    with pytest.raises(NotFound):
        service.get(position.id)


def test_oversell_is_rejected_without_changes() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Broker"))
    service = InvestmentService(session)
    position = _position(service, quantity="3")

    with pytest.raises(InsufficientQuantity):
        service.sell(
            position.id,
            SellIn(quantity=Decimal("3.000001"), sell_price_cents=100, account_id=account.id),
        )

    assert service.get(position.id).quantity == Decimal("3")
    assert session.scalars(select(Transaction)).all() == []


def test_summary_totals_only_priced_positions() -> None:
    session = make_session()
    service = InvestmentService(session)
    priced = _position(service, ticker="AAA", quantity="10", average_price_cents=1_000)
    _position(service, ticker="BBB", quantity="5", average_price_cents=2_000)
    service.apply_price_update(priced.id, 1_500)

    summary = service.summary()

    assert summary["count"] == 2
    assert summary["total_invested_cents"] == 20_000
    assert summary["total_current_value_cents"] == 15_000
    assert summary["total_profit_loss_cents"] == 5_000
    assert summary["total_profit_loss_percent"] == pytest.approx(25.0)


def test_refresh_all_prices_skips_failures() -> None:
    session = make_session()
    service = InvestmentService(session)
    ok = _position(service, ticker="GOOD")
    bad = _position(service, ticker="BAD", current_price_cents=1_234)
    quotes = StubQuotes({"GOOD": "21.505"}, failing={"BAD"})

    result = service.refresh_all_prices(quotes)

    assert result == {"updated": 1, "failed": ["BAD"]}
    assert service.get(ok.id).current_price_cents == 2_151
    assert service.get(bad.id).current_price_cents == 1_234

    with pytest.raises(ExternalServiceError):
        service.refresh_price(bad.id, quotes)
    assert service.get(bad.id).current_price_cents == 1_234


def test_update_position_changes_fields_and_rejects_ticker_clash() -> None:
    session = make_session()
    service = InvestmentService(session)
    petr = _position(service, ticker="PETR4", quantity="10", average_price_cents=3_000)
    _position(service, ticker="VALE3")

    updated = service.update_position(
        petr.id,
        PositionIn(
            ticker="petr3",
            name="Petrobras ON",
            quantity=Decimal("12"),
            average_price_cents=2_900,
        ),
    )
    assert updated.ticker == "PETR3"
    assert updated.name == "Petrobras ON"
    assert updated.quantity == Decimal("12")
    assert updated.total_invested_cents == 34_800

    with pytest.raises(ValidationError, match="already uses this ticker"):
        service.update_position(
            petr.id,
            PositionIn(
                ticker="VALE3",
                name="Clash",
                quantity=Decimal("1"),
                average_price_cents=100,
            ),
        )
    assert service.get(petr.id).ticker == "PETR3"

    with pytest.raises(NotFound):
        service.update_position(
            999,
            PositionIn(ticker="NONE", name="x", quantity=Decimal("1"), average_price_cents=1),
        )


def test_rejected_update_leaves_position_untouched() -> None:
    session = make_session()
    service = InvestmentService(session)
    position = _position(service, ticker="PETR4", quantity="10")

    with pytest.raises(ValidationError):
        service.update_position(
            position.id,
            PositionIn(
                ticker="VALE3",
                name="   ",
                quantity=Decimal("10"),
                average_price_cents=2_000,
            ),
        )
    service.apply_price_update(position.id, 500)

    row = session.execute(
        select(InvestmentPosition.ticker, InvestmentPosition.quantity_micros).where(
            InvestmentPosition.id == position.id
        )
    ).one()
    assert tuple(row) == ("PETR4", 10_000_000)


def test_delete_position_removes_it() -> None:
    session = make_session()
    service = InvestmentService(session)
    position = _position(service, ticker="BBDC4")
    keep = _position(service, ticker="ITSA4")

    service.delete_position(position.id)

    assert [p.id for p in service.list_all()] == [keep.id]
    with pytest.raises(NotFound):
        service.delete_position(position.id)
