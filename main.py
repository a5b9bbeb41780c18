import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import user_from_header
from config import get_settings
from database import SessionLocal
from errors import (
    AuthError,
    ConflictError,
    LedgerError,
    LinkFailure,
    NotFoundError,
    StoreError,
    ValidationError,
)
from models import Account, Budget, Category, Transaction, TransactionStatus, TransactionType
from periods import local_today
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    CategoryPatch,
    MarkManyPaidIn,
    MarkPaidIn,
    TransactionIn,
    TransactionPatch,
    TransferIn,
)
from services import (
    AccountService,
    AccountWithProjection,
    BudgetService,
    BudgetWithUsage,
    CategoryService,
    DashboardService,
    TransactionFilters,
    TransactionService,
    TransferCoordinator,
    TransferLegs,
    require_user,
    sort_transactions,
)
from status import classify_transaction
from store import LedgerStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store(db: Session = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db)


def current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    user_id = user_from_header(authorization)
    if user_id is None:
        user_id = get_settings().default_user_id
    return require_user(user_id)


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def status_code_for(exc: LedgerError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, (LinkFailure, StoreError)):
        return 502
    return 500


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    content: dict[str, object] = {"detail": str(exc)}
    if isinstance(exc, ValidationError):
        content["code"] = exc.code
    if isinstance(exc, LinkFailure) and exc.transaction_id is not None:
        content["transaction_id"] = exc.transaction_id
    return JSONResponse(status_code=status_code, content=content)


def account_json(item: AccountWithProjection) -> dict:
    account: Account = item.account
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "currency": account.currency,
        "initial_balance_cents": account.initial_balance_cents,
        "current_balance_cents": account.current_balance_cents,
        "projected_balance_cents": item.projected_balance_cents,
        "is_active": account.is_active,
    }


def category_json(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
        "icon": category.icon,
        "parent_category_id": category.parent_category_id,
    }


def transaction_json(txn: Transaction, today: date) -> dict:
    account = txn.account
    return {
        "id": txn.id,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "due_date": txn.due_date.isoformat() if txn.due_date else None,
        "payment_date": txn.payment_date.isoformat() if txn.payment_date else None,
        "status": txn.status.value,
        "display_status": classify_transaction(txn, today).value,
        "category": category_json(txn.category) if txn.category else None,
        "account": {"id": account.id, "name": account.name} if account else None,
        "tags": list(txn.tags or []),
        "is_recurring": txn.is_recurring,
        "recurrence_config": txn.recurrence_config,
        "transfer_id": txn.transfer_id,
    }


def transfer_json(legs: TransferLegs, today: date) -> dict:
    return {
        "transfer_id": legs.transfer_id,
        "complete": legs.is_complete,
        "expense": transaction_json(legs.expense, today) if legs.expense else None,
        "income": transaction_json(legs.income, today) if legs.income else None,
    }


def budget_json(item: BudgetWithUsage) -> dict:
    budget: Budget = item.budget
    usage = item.usage
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "category": budget.category.name if budget.category else None,
        "amount_cents": budget.amount_cents,
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat() if budget.end_date else None,
        "spent_cents": usage.spent_cents,
        "percentage": round(usage.percentage, 2),
        "days_remaining": usage.days_remaining,
        "window_start": usage.window.start.isoformat(),
        "window_end": usage.window.end.isoformat(),
    }


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        txn_type = TransactionType(params["type"]) if params.get("type") else None
        status = TransactionStatus(params["status"]) if params.get("status") else None
        category_id = int(params["category_id"]) if params.get("category_id") else None
        account_id = int(params["account_id"]) if params.get("account_id") else None
        start = date.fromisoformat(params["start"]) if params.get("start") else None
        end = date.fromisoformat(params["end"]) if params.get("end") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionFilters(
        type=txn_type,
        status=status,
        category_id=category_id,
        account_id=account_id,
        start_date=start,
        end_date=end,
        search=params.get("q") or None,
    )


@app.get("/api/health")
def api_health():
    return {"status": "ok"}


# accounts


@app.get("/api/accounts")
def api_accounts(
    active_only: bool = False,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    items = AccountService(store, user_id).list_all(active_only=active_only)
    return [account_json(item) for item in items]


@app.post("/api/accounts", status_code=201)
def api_create_account(
    payload: AccountIn,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    service = AccountService(store, user_id)
    account = service.create(payload)
    return account_json(service.get_with_projection(account.id))


@app.post("/api/accounts/recalculate")
def api_recalculate_accounts(
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return {"recalculated": AccountService(store, user_id).recalculate_all()}


@app.get("/api/accounts/{account_id}")
def api_account(
    account_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return account_json(AccountService(store, user_id).get_with_projection(account_id))


@app.patch("/api/accounts/{account_id}")
def api_update_account(
    account_id: int,
    payload: AccountPatch,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    service = AccountService(store, user_id)
    service.update(account_id, payload)
    return account_json(service.get_with_projection(account_id))


@app.delete("/api/accounts/{account_id}")
def api_delete_account(
    account_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    removed = AccountService(store, user_id).delete(account_id)
    return {"deleted": removed, "archived": not removed}


@app.post("/api/accounts/{account_id}/recalculate")
def api_recalculate_account(
    account_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    balance = AccountService(store, user_id).recalculate(account_id)
    return {"id": account_id, "current_balance_cents": balance}


# categories


@app.get("/api/categories")
def api_categories(
    type: Optional[TransactionType] = None,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    service = CategoryService(store, user_id)
    categories = service.eligible_for(type) if type else service.list_all()
    return [category_json(category) for category in categories]


@app.post("/api/categories", status_code=201)
def api_create_category(
    payload: CategoryIn,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return category_json(CategoryService(store, user_id).create(payload))


@app.post("/api/categories/defaults")
def api_default_categories(
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return {"created": CategoryService(store, user_id).create_defaults()}


@app.patch("/api/categories/{category_id}")
def api_update_category(
    category_id: int,
    payload: CategoryPatch,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return category_json(CategoryService(store, user_id).update(category_id, payload))


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(
    category_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    CategoryService(store, user_id).delete(category_id)


# transactions


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    sort: Optional[str] = None,
    desc: bool = False,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    today = local_today()
    filters = filters_from_request(request)
    items = TransactionService(store, user_id).list(filters, today=today)
    if sort:
        items = sort_transactions(items, sort, descending=desc)
    return [transaction_json(txn, today) for txn in items]


@app.get("/api/transactions/recent")
def api_recent_transactions(
    limit: int = 5,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    today = local_today()
    limit = min(max(limit, 1), 50)
    items = TransactionService(store, user_id).recent(limit)
    return [transaction_json(txn, today) for txn in items]


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    payload: TransactionIn,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    today = local_today()
    txn = TransactionService(store, user_id).create(payload, today=today)
    return transaction_json(txn, today)


@app.post("/api/transactions/pay")
def api_pay_transactions(
    payload: MarkManyPaidIn,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    result = TransactionService(store, user_id).mark_many_as_paid(
        payload.ids, payload.payment_date
    )
    return {
        "paid": result.paid,
        "failed": {str(k): v for k, v in result.failed.items()},
        "ok": result.ok,
    }


@app.get("/api/transactions/{transaction_id}")
def api_transaction(
    transaction_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(store, user_id).get(transaction_id)
    return transaction_json(txn, local_today())


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    today = local_today()
    txn = TransactionService(store, user_id).update(transaction_id, payload, today=today)
    return transaction_json(txn, today)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    TransactionService(store, user_id).delete(transaction_id)


@app.post("/api/transactions/{transaction_id}/pay")
def api_pay_transaction(
    transaction_id: int,
    payload: MarkPaidIn,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    today = local_today()
    txn = TransactionService(store, user_id).mark_as_paid(
        transaction_id, payload.payment_date, today=today
    )
    return transaction_json(txn, today)


@app.post("/api/transactions/{transaction_id}/cancel")
def api_cancel_transaction(
    transaction_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    txn = TransactionService(store, user_id).cancel(transaction_id)
    return transaction_json(txn, local_today())


@app.get("/api/transactions/{transaction_id}/occurrences")
def api_transaction_occurrences(
    transaction_id: int,
    horizon: Optional[date] = None,
    limit: int = 12,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    if horizon is None:
        today = local_today()
        horizon = date(today.year + 1, today.month, 1)
    dates = TransactionService(store, user_id).upcoming_occurrences(
        transaction_id, horizon, limit=min(max(limit, 1), 100)
    )
    return [d.isoformat() for d in dates]


@app.get("/api/bills")
def api_bills(
    status: str = "all",
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    if status not in ("all", "pending", "overdue"):
        raise HTTPException(status_code=400, detail="Unknown bill status filter")
    today = local_today()
    items = TransactionService(store, user_id).bills(status, today=today)
    return [transaction_json(txn, today) for txn in items]


# transfers


@app.post("/api/transfers", status_code=201)
def api_create_transfer(
    payload: TransferIn,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    today = local_today()
    legs = TransferCoordinator(store, user_id).create_transfer(
        payload.from_account_id,
        payload.to_account_id,
        payload.amount_cents,
        payload.date,
        payload.description,
        payload.status,
        payload.due_date,
        today=today,
    )
    return transfer_json(legs, today)


@app.get("/api/transfers/{transfer_id}")
def api_transfer(
    transfer_id: str,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    legs = TransferCoordinator(store, user_id).legs(transfer_id)
    return transfer_json(legs, local_today())


@app.delete("/api/transfers/{transfer_id}", status_code=204)
def api_delete_transfer(
    transfer_id: str,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    TransferCoordinator(store, user_id).delete_transfer(transfer_id)


# budgets


@app.get("/api/budgets")
def api_budgets(
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return [budget_json(item) for item in BudgetService(store, user_id).list_all()]


@app.post("/api/budgets", status_code=201)
def api_create_budget(
    payload: BudgetIn,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(store, user_id)
    budget = service.create(payload)
    return budget_json(service.get(budget.id))


@app.get("/api/budgets/{budget_id}")
def api_budget(
    budget_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return budget_json(BudgetService(store, user_id).get(budget_id))


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    payload: BudgetPatch,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    service = BudgetService(store, user_id)
    service.update(budget_id, payload)
    return budget_json(service.get(budget_id))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: int,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    BudgetService(store, user_id).delete(budget_id)


# dashboard


@app.get("/api/dashboard/summary")
def api_dashboard_summary(
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    return DashboardService(store, user_id).summary()


@app.get("/api/dashboard/evolution")
def api_dashboard_evolution(
    months: int = 6,
    store: LedgerStore = Depends(get_store),
    user_id: int = Depends(current_user_id),
):
    months = min(max(months, 1), 24)
    return DashboardService(store, user_id).monthly_evolution(months)
