from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from itertools import islice
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import joinedload

from config import get_settings
from errors import (
    AuthError,
    ConflictError,
    LedgerError,
    LinkFailure,
    NotFoundError,
    StoreError,
    ValidationError,
)
from models import (
    Account,
    AccountTransaction,
    Budget,
    BudgetPeriod,
    Category,
    CategoryType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from periods import Period, add_months, budget_window, local_today, month_end, month_start
from procedures import BatchResult
from recurrence import iter_occurrences
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    CategoryPatch,
    RecurrenceConfig,
    TransactionIn,
    TransactionPatch,
)
from status import UNSETTLED, can_transition, classify_transaction
from store import LedgerStore

logger = logging.getLogger(__name__)

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")

TRANSFER_TAG = "transfer"
TRANSFER_PREFIX = "Transfer: "
TRANSFER_COLOR = "#64748b"
TRANSFER_ICON = "arrow-right-left"

DEFAULT_CATEGORIES: list[tuple[str, CategoryType, str, str]] = [
    ("Food", CategoryType.expense, "utensils", "#ef4444"),
    ("Transport", CategoryType.expense, "car", "#3b82f6"),
    ("Health", CategoryType.expense, "heart", "#ec4899"),
    ("Education", CategoryType.expense, "book", "#06b6d4"),
    ("Leisure", CategoryType.expense, "smile", "#f59e0b"),
    ("Clothing", CategoryType.expense, "shirt", "#10b981"),
    ("Fixed Bills", CategoryType.expense, "file-text", "#6366f1"),
    ("Other", CategoryType.expense, "more-horizontal", "#64748b"),
    ("Salary", CategoryType.income, "briefcase", "#22c55e"),
    ("Investments", CategoryType.income, "trending-up", "#14b8a6"),
]


def get_current_user_id() -> Optional[int]:
    return get_settings().default_user_id


def require_user(user_id: Optional[int]) -> int:
    if user_id is None:
        raise AuthError("User not authenticated")
    return user_id


def category_accepts(category: Category, txn_type: TransactionType) -> bool:
    """Subcategories take their eligibility from the parent's type."""
    source = category.parent or category
    return source.type == CategoryType.both or source.type.value == txn_type.value


def _clean_name(name: Optional[str], low: int, high: int) -> str:
    clean = (name or "").strip()
    if not clean:
        raise ValidationError("Name is required", code="missing_fields")
    if len(clean) < low or len(clean) > high:
        raise ValidationError(
            f"Name must be between {low} and {high} characters", code="invalid_name"
        )
    return clean


def _check_color(color: Optional[str]) -> None:
    if not color or not HEX_COLOR.match(color):
        raise ValidationError(
            "Color must be a hex value in the form #RRGGBB", code="invalid_color"
        )


def validate_transaction_values(
    values: dict[str, Any], today: date, *, partial: bool = False
) -> None:
    """Field rules shared by create (all fields) and update (fields present)."""
    if not partial:
        missing = [
            key
            for key in ("type", "amount_cents", "description", "date")
            if values.get(key) is None
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", code="missing_fields"
            )
    if "amount_cents" in values:
        amount = values["amount_cents"]
        if amount is None or amount <= 0:
            raise ValidationError(
                "Amount must be greater than zero", code="non_positive_amount"
            )
    if "description" in values:
        description = (values["description"] or "").strip()
        if len(description) < 3 or len(description) > 200:
            raise ValidationError(
                "Description must be between 3 and 200 characters",
                code="invalid_description",
            )
    status = values.get("status")
    if status == TransactionStatus.paid and values.get("payment_date") is None:
        raise ValidationError(
            "Payment date is required for paid transactions",
            code="payment_date_required",
        )
    if status == TransactionStatus.pending and values.get("due_date") is None:
        raise ValidationError(
            "Due date is required for pending transactions", code="due_date_required"
        )
    payment_date = values.get("payment_date")
    if payment_date is not None and payment_date > today + timedelta(days=1):
        raise ValidationError(
            "Payment date cannot be more than one day in the future",
            code="payment_date_in_future",
        )
    if values.get("is_recurring") and values.get("recurrence_config") is None:
        if not partial or "recurrence_config" in values:
            raise ValidationError(
                "Recurring transactions need a recurrence rule",
                code="recurrence_required",
            )
    config = values.get("recurrence_config")
    start = values.get("date")
    if config is not None and config.end_date is not None and start is not None:
        if config.end_date < start:
            raise ValidationError(
                "Recurrence end date must not be before the transaction date",
                code="invalid_recurrence",
            )


class CategoryService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def list_all(self) -> list[Category]:
        user_id = require_user(self.user_id)
        stmt = (
            select(Category)
            .options(joinedload(Category.parent))
            .where(Category.user_id == user_id)
            .order_by(Category.name)
        )
        return self.store.scalars(stmt)

    def get(self, category_id: int) -> Category:
        user_id = require_user(self.user_id)
        category = self.store.get(Category, category_id)
        if not category or category.user_id != user_id:
            raise NotFoundError("Category not found")
        return category

    def eligible_for(self, txn_type: TransactionType) -> list[Category]:
        return [c for c in self.list_all() if category_accepts(c, txn_type)]

    def _find_by_name(self, user_id: int, name: str) -> Optional[Category]:
        return self.store.scalar(
            select(Category).where(
                Category.user_id == user_id,
                func.lower(Category.name) == name.lower(),
            )
        )

    def create(self, data: CategoryIn) -> Category:
        name = _clean_name(data.name, 2, 50)
        _check_color(data.color)
        if not (data.icon or "").strip():
            raise ValidationError("Icon is required", code="missing_fields")
        user_id = require_user(self.user_id)
        if data.parent_category_id is not None:
            parent = self.get(data.parent_category_id)
            if parent.type != data.type and parent.type != CategoryType.both:
                raise ValidationError(
                    'Parent category must have the same type or type "both"',
                    code="parent_type_mismatch",
                )
        if self._find_by_name(user_id, name):
            raise ConflictError("A category with this name already exists")
        category = Category(
            user_id=user_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon.strip(),
            parent_category_id=data.parent_category_id,
        )
        return self.store.insert(category)

    def update(self, category_id: int, data: CategoryPatch) -> Category:
        values = data.model_dump(exclude_unset=True)
        if "name" in values:
            values["name"] = _clean_name(values["name"], 2, 50)
        if "color" in values:
            _check_color(values["color"])
        parent_id = values.get("parent_category_id")
        if parent_id is not None and parent_id == category_id:
            raise ValidationError(
                "A category cannot be its own parent", code="self_parent"
            )
        category = self.get(category_id)
        new_type = values.get("type") or category.type
        if "parent_category_id" in values:
            effective_parent_id = parent_id
        else:
            effective_parent_id = category.parent_category_id
        if effective_parent_id is not None and (
            parent_id is not None or "type" in values
        ):
            parent = self.get(effective_parent_id)
            if parent_id is not None and parent.parent_category_id == category_id:
                raise ValidationError(
                    "Category hierarchy cannot contain loops", code="category_loop"
                )
            if parent.type != new_type and parent.type != CategoryType.both:
                raise ValidationError(
                    'Parent category must have the same type or type "both"',
                    code="parent_type_mismatch",
                )
        if "type" in values and new_type != CategoryType.both:
            children = self.store.scalars(
                select(Category).where(Category.parent_category_id == category.id)
            )
            if any(child.type != new_type for child in children):
                raise ValidationError(
                    "Subcategories must keep the same type as their parent",
                    code="child_type_mismatch",
                )
        if "name" in values:
            existing = self._find_by_name(category.user_id, values["name"])
            if existing and existing.id != category.id:
                raise ConflictError("A category with this name already exists")
        return self.store.update(category, values)

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        children = self.store.scalars(
            select(Category).where(Category.parent_category_id == category.id)
        )
        for child in children:
            self.store.update(child, {"parent_category_id": None})
        transactions = self.store.scalars(
            select(Transaction).where(Transaction.category_id == category.id)
        )
        for txn in transactions:
            self.store.update(txn, {"category_id": None})
        budgets = self.store.scalars(
            select(Budget).where(Budget.category_id == category.id)
        )
        for budget in budgets:
            self.store.delete(budget)
        self.store.delete(category)

    def create_defaults(self) -> int:
        user_id = require_user(self.user_id)
        created = 0
        for name, category_type, icon, color in DEFAULT_CATEGORIES:
            if self._find_by_name(user_id, name):
                continue
            try:
                self.store.insert(
                    Category(
                        user_id=user_id,
                        name=name,
                        type=category_type,
                        icon=icon,
                        color=color,
                    )
                )
            except ConflictError:
                continue
            created += 1
        return created


@dataclass(frozen=True)
class Projection:
    account_id: int
    balance_cents: int = 0
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BalanceProjector:
    """Current balance plus the net of pending and overdue transactions.

    ``try_projected_balance`` never raises for store failures and reports them
    on the returned ``Projection``. ``projected_balance`` applies the
    ``fail_soft`` policy: when enabled a failed account lookup reads as 0 so
    list pages still render; when disabled the error is raised.
    """

    def __init__(
        self,
        store: LedgerStore,
        user_id: Optional[int] = None,
        *,
        fail_soft: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id if user_id is not None else get_current_user_id()
        if fail_soft is None:
            fail_soft = get_settings().projection_fail_soft
        self.fail_soft = fail_soft

    def try_projected_balance(self, account_id: int) -> Projection:
        user_id = require_user(self.user_id)
        try:
            account = self.store.get(Account, account_id)
        except StoreError as exc:
            return Projection(account_id, 0, exc)
        if account is None or account.user_id != user_id:
            return Projection(account_id, 0, NotFoundError("Account not found"))

        current = account.current_balance_cents
        try:
            transaction_ids = self.store.scalars(
                select(AccountTransaction.transaction_id).where(
                    AccountTransaction.account_id == account_id
                )
            )
            if not transaction_ids:
                return Projection(account_id, current)
            rows = self.store.rows(
                select(Transaction.type, Transaction.amount_cents).where(
                    Transaction.id.in_(transaction_ids),
                    Transaction.status.in_(list(UNSETTLED)),
                )
            )
        except StoreError as exc:
            return Projection(account_id, current, exc)

        pending_income = 0
        pending_expense = 0
        for row in rows:
            if row.type == TransactionType.income:
                pending_income += row.amount_cents
            else:
                pending_expense += row.amount_cents
        return Projection(account_id, current + pending_income - pending_expense)

    def projected_balance(self, account_id: int) -> int:
        projection = self.try_projected_balance(account_id)
        if projection.ok:
            return projection.balance_cents
        if not self.fail_soft:
            raise projection.error
        logger.warning(
            f"projection_failed: account_id={account_id} error={projection.error} "
            f"fallback={projection.balance_cents}"
        )
        return projection.balance_cents


@dataclass
class AccountWithProjection:
    account: Account
    projected_balance_cents: int


class AccountService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def _projector(self) -> BalanceProjector:
        return BalanceProjector(self.store, self.user_id)

    def list_all(self, active_only: bool = False) -> list[AccountWithProjection]:
        user_id = require_user(self.user_id)
        stmt = select(Account).where(Account.user_id == user_id).order_by(Account.name)
        if active_only:
            stmt = stmt.where(Account.is_active.is_(True))
        projector = self._projector()
        return [
            AccountWithProjection(account, projector.projected_balance(account.id))
            for account in self.store.scalars(stmt)
        ]

    def get(self, account_id: int) -> Account:
        user_id = require_user(self.user_id)
        account = self.store.get(Account, account_id)
        if not account or account.user_id != user_id:
            raise NotFoundError("Account not found")
        return account

    def get_with_projection(self, account_id: int) -> AccountWithProjection:
        account = self.get(account_id)
        return AccountWithProjection(
            account, self._projector().projected_balance(account.id)
        )

    def _name_taken(self, user_id: int, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Account.id).where(
            Account.user_id == user_id, func.lower(Account.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        return self.store.scalar(stmt) is not None

    def create(self, data: AccountIn) -> Account:
        name = _clean_name(data.name, 2, 100)
        user_id = require_user(self.user_id)
        if self._name_taken(user_id, name):
            raise ConflictError("An account with this name already exists")
        account = Account(
            user_id=user_id,
            name=name,
            type=data.type,
            initial_balance_cents=data.initial_balance_cents,
            current_balance_cents=data.initial_balance_cents,
            currency=(data.currency or get_settings().default_currency).upper(),
            is_active=data.is_active,
        )
        return self.store.insert(account)

    def update(self, account_id: int, data: AccountPatch) -> Account:
        values = data.model_dump(exclude_unset=True)
        if "name" in values:
            values["name"] = _clean_name(values["name"], 2, 100)
        if values.get("currency"):
            values["currency"] = values["currency"].upper()
        account = self.get(account_id)
        if "name" in values and self._name_taken(
            account.user_id, values["name"], exclude_id=account.id
        ):
            raise ConflictError("An account with this name already exists")
        return self.store.update(account, values)

    def delete(self, account_id: int) -> bool:
        """Archive accounts with history, remove empty ones. True when removed."""
        account = self.get(account_id)
        has_links = self.store.scalar(
            select(AccountTransaction.id)
            .where(AccountTransaction.account_id == account.id)
            .limit(1)
        )
        if has_links is not None:
            self.store.update(account, {"is_active": False})
            logger.info(f"account_archived: account_id={account.id}")
            return False
        self.store.delete(account)
        logger.info(f"account_deleted: account_id={account_id}")
        return True

    def recalculate(self, account_id: int) -> int:
        account = self.get(account_id)
        return self.store.call("recalculate_account_balance", account_id=account.id)

    def recalculate_all(self) -> int:
        user_id = require_user(self.user_id)
        return self.store.call("recalculate_all_account_balances", user_id=user_id)


@dataclass
class TransferLegs:
    transfer_id: str
    expense: Optional[Transaction]
    income: Optional[Transaction]

    @property
    def is_complete(self) -> bool:
        return self.expense is not None and self.income is not None


class TransferCoordinator:
    """Moves money between two accounts as a linked expense/income pair.

    Each step is its own store round trip. A failure linking the source leg
    removes that leg. By default a failure on the destination side leaves the
    source leg in place, matching the behaviour existing data was written
    with; ``full_compensation=True`` removes every leg written so far instead.
    """

    def __init__(
        self,
        store: LedgerStore,
        user_id: Optional[int] = None,
        *,
        full_compensation: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id if user_id is not None else get_current_user_id()
        if full_compensation is None:
            full_compensation = get_settings().transfer_full_compensation
        self.full_compensation = full_compensation

    @staticmethod
    def validate(
        from_account_id: Optional[int],
        to_account_id: Optional[int],
        amount_cents: Optional[int],
        transfer_date: Optional[date],
        description: Optional[str],
        status: TransactionStatus,
        due_date: Optional[date],
    ) -> None:
        if (
            from_account_id is None
            or to_account_id is None
            or amount_cents is None
            or transfer_date is None
            or not (description or "").strip()
        ):
            raise ValidationError(
                "Missing required transfer fields", code="missing_fields"
            )
        if from_account_id == to_account_id:
            raise ValidationError(
                "Cannot transfer to the same account", code="same_account"
            )
        if amount_cents <= 0:
            raise ValidationError(
                "Amount must be greater than zero", code="non_positive_amount"
            )
        if status not in (TransactionStatus.paid, TransactionStatus.pending):
            raise ValidationError(
                "Transfers are either paid or pending", code="invalid_status"
            )
        if status == TransactionStatus.pending and due_date is None:
            raise ValidationError(
                "Due date is required for pending transfers", code="due_date_required"
            )

    def create_transfer(
        self,
        from_account_id: Optional[int],
        to_account_id: Optional[int],
        amount_cents: Optional[int],
        transfer_date: Optional[date],
        description: Optional[str],
        status: TransactionStatus | str = TransactionStatus.paid,
        due_date: Optional[date] = None,
        *,
        today: Optional[date] = None,
    ) -> TransferLegs:
        status = TransactionStatus(status)
        self.validate(
            from_account_id,
            to_account_id,
            amount_cents,
            transfer_date,
            description,
            status,
            due_date,
        )
        user_id = require_user(self.user_id)
        for account_id in (from_account_id, to_account_id):
            account = self.store.get(Account, account_id)
            if account is None or account.user_id != user_id:
                raise NotFoundError(f"Account {account_id} not found")

        transfer_id = str(uuid.uuid4())
        category = self._transfer_category(user_id)
        today = today or local_today()

        expense = self.store.insert(
            self._leg(
                TransactionType.expense,
                user_id,
                amount_cents,
                category,
                description,
                transfer_date,
                status,
                due_date,
                transfer_id,
                today,
            )
        )
        try:
            self.store.insert(
                AccountTransaction(transaction_id=expense.id, account_id=from_account_id)
            )
        except LedgerError as exc:
            self._compensate([expense], transfer_id)
            raise LinkFailure(
                f"Failed to link the source account: {exc}", expense.id
            ) from exc

        try:
            income = self.store.insert(
                self._leg(
                    TransactionType.income,
                    user_id,
                    amount_cents,
                    category,
                    description,
                    transfer_date,
                    status,
                    due_date,
                    transfer_id,
                    today,
                )
            )
        except LedgerError:
            if self.full_compensation:
                self._compensate([expense], transfer_id)
            else:
                logger.error(
                    f"transfer_incomplete: transfer_id={transfer_id} "
                    f"expense_id={expense.id} step=insert_income"
                )
            raise

        try:
            self.store.insert(
                AccountTransaction(transaction_id=income.id, account_id=to_account_id)
            )
        except LedgerError as exc:
            if self.full_compensation:
                self._compensate([income, expense], transfer_id)
            else:
                logger.error(
                    f"transfer_incomplete: transfer_id={transfer_id} "
                    f"expense_id={expense.id} income_id={income.id} step=link_income"
                )
            raise LinkFailure(
                f"Failed to link the destination account: {exc}", income.id
            ) from exc

        logger.info(
            f"transfer_created: transfer_id={transfer_id} from={from_account_id} "
            f"to={to_account_id} amount_cents={amount_cents} status={status.value}"
        )
        return TransferLegs(transfer_id, expense, income)

    def legs(self, transfer_id: str) -> TransferLegs:
        user_id = require_user(self.user_id)
        rows = self.store.scalars(
            select(Transaction)
            .options(
                joinedload(Transaction.account_links).joinedload(
                    AccountTransaction.account
                )
            )
            .where(Transaction.user_id == user_id, Transaction.transfer_id == transfer_id)
            .order_by(Transaction.id)
        )
        if not rows:
            raise NotFoundError("Transfer not found")
        expense = next((t for t in rows if t.type == TransactionType.expense), None)
        income = next((t for t in rows if t.type == TransactionType.income), None)
        return TransferLegs(transfer_id, expense, income)

    def delete_transfer(self, transfer_id: str) -> None:
        legs = self.legs(transfer_id)
        for leg in (legs.income, legs.expense):
            if leg is not None:
                self.store.delete(leg)
        logger.info(f"transfer_deleted: transfer_id={transfer_id}")

    def _transfer_category(self, user_id: int) -> Category:
        name = get_settings().transfer_category
        stmt = select(Category).where(Category.user_id == user_id, Category.name == name)
        existing = self.store.scalar(stmt)
        if existing:
            return existing
        try:
            return self.store.insert(
                Category(
                    user_id=user_id,
                    name=name,
                    type=CategoryType.both,
                    color=TRANSFER_COLOR,
                    icon=TRANSFER_ICON,
                    parent_category_id=None,
                )
            )
        except ConflictError:
            # created concurrently by another transfer
            existing = self.store.scalar(stmt)
            if existing is None:
                raise
            return existing

    @staticmethod
    def _leg(
        txn_type: TransactionType,
        user_id: int,
        amount_cents: int,
        category: Category,
        description: str,
        transfer_date: date,
        status: TransactionStatus,
        due_date: Optional[date],
        transfer_id: str,
        today: date,
    ) -> Transaction:
        paid = status == TransactionStatus.paid
        return Transaction(
            user_id=user_id,
            type=txn_type,
            amount_cents=amount_cents,
            category_id=category.id,
            description=f"{TRANSFER_PREFIX}{description.strip()}",
            date=transfer_date if paid else today,
            due_date=None if paid else due_date,
            status=status,
            payment_date=transfer_date if paid else None,
            tags=[TRANSFER_TAG],
            is_recurring=False,
            recurrence_config=None,
            transfer_id=transfer_id,
        )

    def _compensate(self, legs: list[Transaction], transfer_id: str) -> None:
        for leg in legs:
            try:
                self.store.delete(leg)
            except LedgerError:
                logger.exception(
                    f"compensation_failed: transfer_id={transfer_id} transaction_id={leg.id}"
                )
            else:
                logger.warning(
                    f"compensated: transfer_id={transfer_id} transaction_id={leg.id}"
                )


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _sort_value(txn: Transaction, key: str) -> Any:
    value: Any = txn
    for part in key.split("."):
        value = getattr(value, part, None)
        if value is None:
            return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        return value.lower()
    return value


def sort_transactions(
    rows: list[Transaction], key: str, *, descending: bool = False
) -> list[Transaction]:
    """Re-sort by any column; rows missing the value go last either way."""
    present = [row for row in rows if _sort_value(row, key) is not None]
    missing = [row for row in rows if _sort_value(row, key) is None]
    present.sort(key=lambda row: _sort_value(row, key), reverse=descending)
    return present + missing


class TransactionService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def _base_query(self, user_id: int):
        return (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.account_links).joinedload(
                    AccountTransaction.account
                ),
            )
            .where(Transaction.user_id == user_id)
        )

    def get(self, transaction_id: int) -> Transaction:
        user_id = require_user(self.user_id)
        txn = self.store.scalar(
            self._base_query(user_id).where(Transaction.id == transaction_id)
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self, filters: Optional[TransactionFilters] = None, *, today: Optional[date] = None
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        user_id = require_user(self.user_id)
        stmt = self._base_query(user_id).order_by(
            Transaction.date.desc(), Transaction.id.desc()
        )
        if filters.account_id is not None:
            linked = self.store.scalars(
                select(AccountTransaction.transaction_id).where(
                    AccountTransaction.account_id == filters.account_id
                )
            )
            if not linked:
                return []
            stmt = stmt.where(Transaction.id.in_(linked))
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start_date:
            stmt = stmt.where(Transaction.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Transaction.date <= filters.end_date)
        if filters.search:
            like = f"%{_escape_like(filters.search.lower())}%"
            stmt = stmt.where(
                func.lower(Transaction.description).like(like, escape="\\")
            )

        reclassify = filters.status in UNSETTLED
        if reclassify:
            stmt = stmt.where(Transaction.status.in_(list(UNSETTLED)))
        elif filters.status:
            stmt = stmt.where(Transaction.status == filters.status)

        rows = self.store.scalars(stmt)
        if reclassify:
            today = today or local_today()
            rows = [r for r in rows if classify_transaction(r, today) == filters.status]
        return rows

    def recent(self, limit: int = 5) -> list[Transaction]:
        user_id = require_user(self.user_id)
        stmt = (
            self._base_query(user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.store.scalars(stmt)

    def bills(
        self, status: str = "all", *, today: Optional[date] = None
    ) -> list[Transaction]:
        """Unsettled transactions ordered by due date, optionally by display status."""
        user_id = require_user(self.user_id)
        today = today or local_today()
        rows = self.store.scalars(
            self._base_query(user_id).where(Transaction.status.in_(list(UNSETTLED)))
        )
        if status != "all":
            wanted = TransactionStatus(status)
            rows = [r for r in rows if classify_transaction(r, today) == wanted]
        return sort_transactions(rows, "due_date")

    def _category_for(self, category_id: int, txn_type: TransactionType) -> Category:
        user_id = require_user(self.user_id)
        category = self.store.get(Category, category_id)
        if not category or category.user_id != user_id:
            raise NotFoundError("Category not found")
        if not category_accepts(category, txn_type):
            raise ValidationError(
                "Category type mismatch", code="category_type_mismatch"
            )
        return category

    def _account_for(self, account_id: int) -> Account:
        user_id = require_user(self.user_id)
        account = self.store.get(Account, account_id)
        if not account or account.user_id != user_id:
            raise NotFoundError("Account not found")
        return account

    def create(self, data: TransactionIn, *, today: Optional[date] = None) -> Transaction:
        today = today or local_today()
        values = data.model_dump()
        values["recurrence_config"] = data.recurrence_config
        validate_transaction_values(values, today)
        user_id = require_user(self.user_id)
        if data.category_id is not None:
            self._category_for(data.category_id, data.type)
        if data.account_id is not None:
            self._account_for(data.account_id)

        txn = self.store.insert(
            Transaction(
                user_id=user_id,
                type=data.type,
                amount_cents=data.amount_cents,
                description=data.description.strip(),
                category_id=data.category_id,
                date=data.date,
                due_date=data.due_date,
                payment_date=data.payment_date,
                status=data.status,
                tags=list(data.tags),
                is_recurring=data.is_recurring,
                recurrence_config=(
                    data.recurrence_config.model_dump(mode="json")
                    if data.recurrence_config
                    else None
                ),
            )
        )
        if data.account_id is not None:
            try:
                self.store.insert(
                    AccountTransaction(transaction_id=txn.id, account_id=data.account_id)
                )
            except LedgerError as exc:
                try:
                    self.store.delete(txn)
                except LedgerError:
                    logger.exception(
                        f"compensation_failed: transaction_id={txn.id} step=link"
                    )
                raise LinkFailure(
                    f"Failed to link the transaction to its account: {exc}", txn.id
                ) from exc
        return self.get(txn.id)

    def update(
        self,
        transaction_id: int,
        data: TransactionPatch,
        *,
        today: Optional[date] = None,
    ) -> Transaction:
        today = today or local_today()
        values = data.model_dump(exclude_unset=True)
        if "recurrence_config" in values:
            values["recurrence_config"] = data.recurrence_config
        txn = self.get(transaction_id)

        # status rules look at the stored row for whatever the patch leaves out
        checked = dict(values)
        if {"status", "payment_date", "due_date"} & values.keys():
            checked.setdefault("status", txn.status)
            checked.setdefault("payment_date", txn.payment_date)
            checked.setdefault("due_date", txn.due_date)
        if values.get("recurrence_config") is not None:
            checked.setdefault("date", txn.date)
        validate_transaction_values(checked, today, partial=True)

        if txn.transfer_id and {"type", "amount_cents", "account_id"} & values.keys():
            raise ValidationError(
                "Transfer legs cannot change type, amount or account",
                code="transfer_leg_locked",
            )
        category_id = values.get("category_id", txn.category_id)
        if category_id is not None and {"category_id", "type"} & values.keys():
            self._category_for(category_id, values.get("type") or txn.type)
        relink = "account_id" in values
        account_id = values.pop("account_id", None)
        if account_id is not None:
            self._account_for(account_id)
        if "description" in values:
            values["description"] = values["description"].strip()
        if values.get("recurrence_config") is not None:
            values["recurrence_config"] = values["recurrence_config"].model_dump(
                mode="json"
            )

        if values:
            self.store.update(txn, values)
        if relink:
            self._relink(txn, account_id)
        return self.get(transaction_id)

    def _relink(self, txn: Transaction, account_id: Optional[int]) -> None:
        """Point the transaction at another account with one in-place write."""
        link = self.store.scalar(
            select(AccountTransaction).where(AccountTransaction.transaction_id == txn.id)
        )
        try:
            if account_id is None:
                if link is not None:
                    self.store.delete(link)
            elif link is None:
                self.store.insert(
                    AccountTransaction(transaction_id=txn.id, account_id=account_id)
                )
            elif link.account_id != account_id:
                self.store.update(link, {"account_id": account_id})
        except LedgerError as exc:
            raise LinkFailure(
                f"Failed to move the transaction to another account: {exc}", txn.id
            ) from exc

    def mark_as_paid(
        self,
        transaction_id: int,
        payment_date: Optional[date] = None,
        *,
        today: Optional[date] = None,
    ) -> Transaction:
        today = today or local_today()
        payment_date = payment_date or today
        validate_transaction_values({"payment_date": payment_date}, today, partial=True)
        user_id = require_user(self.user_id)
        self.store.call(
            "mark_transaction_as_paid",
            transaction_id=transaction_id,
            payment_date=payment_date,
            user_id=user_id,
        )
        return self.get(transaction_id)

    def mark_many_as_paid(
        self,
        transaction_ids: list[int],
        payment_date: Optional[date] = None,
        *,
        today: Optional[date] = None,
    ) -> BatchResult:
        if not transaction_ids:
            raise ValidationError("No transactions selected", code="missing_fields")
        today = today or local_today()
        payment_date = payment_date or today
        validate_transaction_values({"payment_date": payment_date}, today, partial=True)
        user_id = require_user(self.user_id)
        result = self.store.call(
            "mark_transactions_as_paid",
            transaction_ids=list(dict.fromkeys(transaction_ids)),
            payment_date=payment_date,
            user_id=user_id,
        )
        if result.failed:
            logger.warning(
                f"mark_many_partial: paid={len(result.paid)} failed={len(result.failed)}"
            )
        return result

    def _with_siblings(self, txn: Transaction) -> list[Transaction]:
        if not txn.transfer_id:
            return [txn]
        return self.store.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == txn.user_id,
                Transaction.transfer_id == txn.transfer_id,
            )
            .order_by(Transaction.id)
        )

    def cancel(self, transaction_id: int) -> Transaction:
        txn = self.get(transaction_id)
        legs = self._with_siblings(txn)
        for leg in legs:
            if not can_transition(leg.status, TransactionStatus.cancelled):
                raise ValidationError(
                    f"Cannot cancel a {leg.status.value} transaction",
                    code="invalid_transition",
                )
        for leg in legs:
            self.store.update(leg, {"status": TransactionStatus.cancelled})
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        for leg in self._with_siblings(txn):
            self.store.delete(leg)
        logger.info(
            f"transaction_deleted: transaction_id={transaction_id} "
            f"transfer_id={txn.transfer_id}"
        )

    def upcoming_occurrences(
        self, transaction_id: int, horizon: date, limit: int = 50
    ) -> list[date]:
        txn = self.get(transaction_id)
        if not txn.is_recurring or not txn.recurrence_config:
            return []
        config = RecurrenceConfig.model_validate(txn.recurrence_config)
        anchor = txn.due_date or txn.date
        return list(
            islice(iter_occurrences(anchor, config, horizon=horizon, after=anchor), limit)
        )


@dataclass(frozen=True)
class BudgetUsage:
    spent_cents: int
    percentage: float
    days_remaining: int
    window: Period


@dataclass
class BudgetWithUsage:
    budget: Budget
    usage: BudgetUsage


class BudgetService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def _get(self, budget_id: int) -> Budget:
        user_id = require_user(self.user_id)
        budget = self.store.get(Budget, budget_id)
        if not budget or budget.user_id != user_id:
            raise NotFoundError("Budget not found")
        return budget

    def usage(self, budget_id: int, *, today: Optional[date] = None) -> BudgetUsage:
        return self.usage_for(self._get(budget_id), today=today)

    def usage_for(self, budget: Budget, *, today: Optional[date] = None) -> BudgetUsage:
        today = today or local_today()
        window = budget_window(
            budget.period, budget.start_date, budget.end_date, today=today
        )
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == budget.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.status == TransactionStatus.paid,
            Transaction.date.between(window.start, window.end),
        )
        if budget.category_id is not None:
            stmt = stmt.where(Transaction.category_id == budget.category_id)
        spent = int(self.store.scalar(stmt) or 0)
        percentage = (
            spent * 100 / budget.amount_cents if budget.amount_cents > 0 else 0.0
        )
        return BudgetUsage(
            spent_cents=spent,
            percentage=percentage,
            days_remaining=max(0, (window.end - today).days),
            window=window,
        )

    def list_all(self, *, today: Optional[date] = None) -> list[BudgetWithUsage]:
        user_id = require_user(self.user_id)
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        return [
            BudgetWithUsage(budget, self.usage_for(budget, today=today))
            for budget in self.store.scalars(stmt)
        ]

    def get(self, budget_id: int, *, today: Optional[date] = None) -> BudgetWithUsage:
        budget = self._get(budget_id)
        return BudgetWithUsage(budget, self.usage_for(budget, today=today))

    def _validate(
        self,
        amount_cents: int,
        period: BudgetPeriod,
        start_date: date,
        end_date: Optional[date],
    ) -> None:
        if amount_cents <= 0:
            raise ValidationError(
                "Amount must be greater than zero", code="non_positive_amount"
            )
        if period == BudgetPeriod.custom and end_date is None:
            raise ValidationError(
                "Custom budgets need an end date", code="end_date_required"
            )
        if end_date is not None and end_date < start_date:
            raise ValidationError(
                "End date must not be before the start date", code="invalid_window"
            )

    def _check_category(self, category_id: int) -> None:
        user_id = require_user(self.user_id)
        category = self.store.get(Category, category_id)
        if not category or category.user_id != user_id:
            raise NotFoundError("Category not found")
        if not category_accepts(category, TransactionType.expense):
            raise ValidationError(
                "Budgets can only be set for expense categories",
                code="category_type_mismatch",
            )

    def create(self, data: BudgetIn) -> Budget:
        self._validate(data.amount_cents, data.period, data.start_date, data.end_date)
        user_id = require_user(self.user_id)
        if data.category_id is not None:
            self._check_category(data.category_id)
        budget = Budget(
            user_id=user_id,
            category_id=data.category_id,
            amount_cents=data.amount_cents,
            period=data.period,
            start_date=data.start_date,
            end_date=data.end_date,
        )
        return self.store.insert(budget)

    def update(self, budget_id: int, data: BudgetPatch) -> Budget:
        values = data.model_dump(exclude_unset=True)
        budget = self._get(budget_id)
        self._validate(
            values.get("amount_cents", budget.amount_cents),
            values.get("period") or budget.period,
            values.get("start_date") or budget.start_date,
            values["end_date"] if "end_date" in values else budget.end_date,
        )
        if values.get("category_id") is not None:
            self._check_category(values["category_id"])
        return self.store.update(budget, values)

    def delete(self, budget_id: int) -> None:
        self.store.delete(self._get(budget_id))


class DashboardService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id if user_id is not None else get_current_user_id()

    def monthly_evolution(
        self, months: int = 6, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        user_id = require_user(self.user_id)
        today = today or local_today()
        months = max(months, 1)
        first = add_months(month_start(today), -(months - 1))
        last = month_end(today)

        buckets: dict[str, dict[str, object]] = {}
        for offset in range(months):
            d = add_months(first, offset)
            buckets[d.strftime("%Y-%m")] = {
                "month": d.strftime("%Y-%m"),
                "label": d.strftime("%b/%y"),
                "income_cents": 0,
                "expense_cents": 0,
            }

        rows = self.store.rows(
            select(Transaction.date, Transaction.type, Transaction.amount_cents).where(
                Transaction.user_id == user_id,
                Transaction.status == TransactionStatus.paid,
                Transaction.date.between(first, last),
            )
        )
        for row in rows:
            entry = buckets.get(row.date.strftime("%Y-%m"))
            if entry is None:
                continue
            key = "income_cents" if row.type == TransactionType.income else "expense_cents"
            entry[key] = int(entry[key]) + row.amount_cents
        return list(buckets.values())

    def summary(self, *, today: Optional[date] = None) -> dict[str, int]:
        user_id = require_user(self.user_id)
        today = today or local_today()
        accounts = AccountService(self.store, user_id).list_all(active_only=True)

        pending_income = 0
        pending_expense = 0
        overdue = 0
        unsettled = self.store.scalars(
            select(Transaction).where(
                Transaction.user_id == user_id,
                Transaction.status.in_(list(UNSETTLED)),
            )
        )
        for txn in unsettled:
            if txn.type == TransactionType.income:
                pending_income += txn.amount_cents
            else:
                pending_expense += txn.amount_cents
            if classify_transaction(txn, today) == TransactionStatus.overdue:
                overdue += 1

        return {
            "balance_cents": sum(a.account.current_balance_cents for a in accounts),
            "projected_balance_cents": sum(a.projected_balance_cents for a in accounts),
            "pending_income_cents": pending_income,
            "pending_expense_cents": pending_expense,
            "overdue_count": overdue,
        }
