import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import (
    AlreadyPaid,
    AlreadyProcessed,
    ExternalServiceError,
    InsufficientQuantity,
    LedgerError,
    NotFound,
)
from models import TransactionType
from periods import Period, resolve_period
from quotes import PriceQuoteService
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    CategoryIn,
    CategoryOut,
    InstallmentPayIn,
    InstallmentPaymentOut,
    InstallmentPurchaseIn,
    InstallmentPurchaseOut,
    PositionIn,
    PositionOut,
    PriceUpdateIn,
    SalaryConfigIn,
    SalaryConfigOut,
    SellIn,
    TransactionIn,
    TransactionOut,
)
from services import (
    AccountService,
    CategoryService,
    InstallmentDeletePolicy,
    InstallmentService,
    InvestmentService,
    SalaryService,
    StatisticsService,
    TransactionFilters,
    TransactionService,
    seed_default_categories,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_quotes() -> PriceQuoteService:
    return PriceQuoteService(get_settings())


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    db = SessionLocal()
    try:
        seed_default_categories(db)
    finally:
        db.close()
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFound):
        status = 404
    elif isinstance(exc, (AlreadyPaid, AlreadyProcessed, InsufficientQuantity)):
        status = 409
    elif isinstance(exc, ExternalServiceError):
        status = 502
    else:
        status = 400
    return HTTPException(status_code=status, detail=str(exc))


def period_from_request(request: Request) -> Optional[Period]:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    if not period_slug:
        if not start and not end:
            return None
        period_slug = "custom"
    try:
        return resolve_period(period_slug, start, end)
    except LedgerError as exc:
        raise _http_error(exc) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    txn_type = params.get("type")
    try:
        type_value = TransactionType(txn_type) if txn_type else None
        category_id = int(params["category_id"]) if params.get("category_id") else None
        account_id = int(params["account_id"]) if params.get("account_id") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    period = period_from_request(request)
    return TransactionFilters(
        start=period.start if period else None,
        end=period.end if period else None,
        type=type_value,
        category_id=category_id,
        account_id=account_id,
        query=(params.get("q") or "").strip() or None,
    )


@app.get("/api/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/accounts", response_model=list[AccountOut])
def api_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_all()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def api_create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def api_update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).update(account_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/accounts/{account_id}")
def api_delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        removed = AccountService(db).delete(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"deleted": account_id, "transactions_removed": removed}


@app.post("/api/accounts/rebuild-balances")
def api_rebuild_balances(db: Session = Depends(get_db)):
    service = AccountService(db)
    drift = service.balance_drift()
    changed = service.rebuild_balances()
    return {"accounts_changed": changed, "drift": drift}


@app.get("/api/categories", response_model=list[CategoryOut])
def api_categories(type: Optional[TransactionType] = None, db: Session = Depends(get_db)):
    return CategoryService(db).list_all(type)


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    try:
        limit = int(request.query_params.get("limit", "50"))
        offset = int(request.query_params.get("offset", "0"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    limit = min(max(limit, 1), 500)
    offset = max(offset, 0)
    items = TransactionService(db).list(filters, limit=limit + 1, offset=offset)
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [
            {
                **TransactionOut.model_validate(txn).model_dump(mode="json"),
                "category": txn.category.name if txn.category else None,
                "category_icon": txn.category.icon if txn.category else None,
            }
            for txn in items
        ],
        "limit": limit,
        "offset": offset,
        "has_more": has_more,
    }


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    try:
        return TransactionService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_update_transaction(
    transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        return TransactionService(db).update(transaction_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"deleted": transaction_id}


@app.delete("/api/transactions")
def api_clear_transactions(db: Session = Depends(get_db)):
    removed = TransactionService(db).clear_all()
    return {"deleted": removed}


@app.get("/api/stats")
def api_stats(today: Optional[date] = None, db: Session = Depends(get_db)):
    return StatisticsService(db).current_stats(today)


@app.get("/api/stats/period")
def api_stats_period(start: date, end: date, db: Session = Depends(get_db)):
    try:
        return StatisticsService(db).period_stats(start, end)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/stats/comparison")
def api_stats_comparison(today: Optional[date] = None, db: Session = Depends(get_db)):
    return StatisticsService(db).monthly_comparison(today)


@app.get("/api/stats/top-expenses")
def api_top_expenses(
    limit: int = 10,
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        return StatisticsService(db).top_expenses(limit, start, end)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/stats/balance-history")
def api_balance_history(
    months: int = 6, today: Optional[date] = None, db: Session = Depends(get_db)
):
    try:
        return StatisticsService(db).balance_history(months, today)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/stats/expenses-by-category")
def api_expenses_by_category(
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        return StatisticsService(db).expenses_by_category(start, end)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/installments", response_model=list[InstallmentPurchaseOut])
def api_installments(db: Session = Depends(get_db)):
    return InstallmentService(db).list_all()


@app.post("/api/installments", response_model=InstallmentPurchaseOut, status_code=201)
def api_create_installment(data: InstallmentPurchaseIn, db: Session = Depends(get_db)):
    try:
        return InstallmentService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get(
    "/api/installments/{purchase_id}/payments",
    response_model=list[InstallmentPaymentOut],
)
def api_installment_payments(purchase_id: int, db: Session = Depends(get_db)):
    try:
        return InstallmentService(db).payments(purchase_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/installments/{purchase_id}/pay", response_model=InstallmentPaymentOut)
def api_pay_installment(
    purchase_id: int, data: InstallmentPayIn, db: Session = Depends(get_db)
):
    try:
        return InstallmentService(db).pay(purchase_id, data.payment_id, data.date)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/installments/{purchase_id}")
def api_delete_installment(
    purchase_id: int,
    policy: Optional[InstallmentDeletePolicy] = None,
    db: Session = Depends(get_db),
):
    try:
        InstallmentService(db).delete(purchase_id, policy)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"deleted": purchase_id}


@app.get("/api/investments", response_model=list[PositionOut])
def api_investments(db: Session = Depends(get_db)):
    return InvestmentService(db).list_all()


@app.get("/api/investments/summary")
def api_investments_summary(db: Session = Depends(get_db)):
    return InvestmentService(db).summary()


@app.post("/api/investments", response_model=PositionOut, status_code=201)
def api_record_position(data: PositionIn, db: Session = Depends(get_db)):
    try:
        return InvestmentService(db).record_position(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/investments/update-all-prices")
def api_update_all_prices(
    db: Session = Depends(get_db), quotes: PriceQuoteService = Depends(get_quotes)
):
    return InvestmentService(db).refresh_all_prices(quotes)


@app.put("/api/investments/{position_id}", response_model=PositionOut)
def api_update_position(
    position_id: int, data: PositionIn, db: Session = Depends(get_db)
):
    try:
        return InvestmentService(db).update_position(position_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/investments/{position_id}")
def api_delete_position(position_id: int, db: Session = Depends(get_db)):
    try:
        InvestmentService(db).delete_position(position_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"deleted": position_id}


@app.post("/api/investments/{position_id}/price", response_model=PositionOut)
def api_set_price(
    position_id: int, data: PriceUpdateIn, db: Session = Depends(get_db)
):
    try:
        return InvestmentService(db).apply_price_update(
            position_id, data.current_price_cents
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/investments/{position_id}/update-price", response_model=PositionOut)
def api_refresh_price(
    position_id: int,
    db: Session = Depends(get_db),
    quotes: PriceQuoteService = Depends(get_quotes),
):
    try:
        return InvestmentService(db).refresh_price(position_id, quotes)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/investments/{position_id}/sell")
def api_sell_position(position_id: int, data: SellIn, db: Session = Depends(get_db)):
    try:
        result = InvestmentService(db).sell(position_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return asdict(result)


@app.get("/api/salary", response_model=Optional[SalaryConfigOut])
def api_salary(db: Session = Depends(get_db)):
    return SalaryService(db).get_config()


@app.post("/api/salary", response_model=SalaryConfigOut)
def api_save_salary(data: SalaryConfigIn, db: Session = Depends(get_db)):
    try:
        return SalaryService(db).save_config(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/salary/process", response_model=TransactionOut)
def api_process_salary(today: Optional[date] = None, db: Session = Depends(get_db)):
    try:
        return SalaryService(db).process(today)
    except LedgerError as exc:
        raise _http_error(exc) from exc
