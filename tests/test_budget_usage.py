from datetime import date

import pytest
from sqlalchemy.orm import Session

from database import Base, make_engine
from errors import NotFoundError, ValidationError
from models import BudgetPeriod, CategoryType, TransactionStatus, TransactionType
from periods import budget_window
from schemas import BudgetIn, BudgetPatch, CategoryIn, TransactionIn
from services import BudgetService, CategoryService, TransactionService
from store import LedgerStore


def _food(store: LedgerStore):
    return CategoryService(store, user_id=1).create(
        CategoryIn(name="Food", type=CategoryType.expense, color="#ef4444", icon="utensils")
    )


def _spend(store: LedgerStore, category_id, amount: int, on: date, **extra) -> None:
    payload = {
        "type": TransactionType.expense,
        "amount_cents": amount,
        "description": "Lunch out",
        "category_id": category_id,
        "date": on,
        "status": TransactionStatus.paid,
        "payment_date": on,
    }
    payload.update(extra)
    TransactionService(store, user_id=1).create(TransactionIn(**payload), today=on)


def test_monthly_window_ends_day_before_next_start() -> None:
    window = budget_window(BudgetPeriod.monthly, date(2024, 3, 5))
    assert (window.start, window.end) == (date(2024, 3, 5), date(2024, 4, 4))


def test_monthly_window_clamps_to_short_month() -> None:
    window = budget_window(BudgetPeriod.monthly, date(2024, 1, 31))
    assert window.end == date(2024, 2, 28)


def test_yearly_and_custom_windows() -> None:
    yearly = budget_window(BudgetPeriod.yearly, date(2024, 2, 29))
    assert yearly.end == date(2025, 2, 27)

    custom = budget_window(BudgetPeriod.custom, date(2024, 1, 1), date(2024, 1, 20))
    assert custom.end == date(2024, 1, 20)

    open_ended = budget_window(
        BudgetPeriod.custom, date(2024, 1, 1), today=date(2024, 2, 2)
    )
    assert open_ended.end == date(2024, 2, 2)


def test_weekly_budget_counts_only_window() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        food = _food(store)
        budgets = BudgetService(store, user_id=1)
        budget = budgets.create(
            BudgetIn(
                category_id=food.id,
                amount_cents=500,
                period=BudgetPeriod.weekly,
                start_date=date(2024, 1, 1),
            )
        )
        _spend(store, food.id, 100, date(2024, 1, 2))
        _spend(store, food.id, 150, date(2024, 1, 5))
        _spend(store, food.id, 900, date(2024, 1, 10))

        usage = budgets.usage(budget.id, today=date(2024, 1, 3))
        assert usage.window.end == date(2024, 1, 7)
        assert usage.spent_cents == 250
        assert usage.percentage == 50
        assert usage.days_remaining == 4

        after = budgets.usage(budget.id, today=date(2024, 2, 1))
        assert after.days_remaining == 0


def test_percentage_and_filters() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        food = _food(store)
        budgets = BudgetService(store, user_id=1)
        budget = budgets.create(
            BudgetIn(
                category_id=food.id,
                amount_cents=1000,
                period=BudgetPeriod.monthly,
                start_date=date(2024, 3, 1),
            )
        )
        _spend(store, food.id, 450, date(2024, 3, 3))
        # pending, uncategorised and income rows never count
        _spend(
            store,
            food.id,
            999,
            date(2024, 3, 4),
            status=TransactionStatus.pending,
            payment_date=None,
            due_date=date(2024, 3, 20),
        )
        _spend(store, None, 300, date(2024, 3, 4))

        usage = budgets.usage(budget.id, today=date(2024, 3, 10))
        assert usage.spent_cents == 450
        assert usage.percentage == 45.0


def test_overall_budget_counts_every_category() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        food = _food(store)
        budgets = BudgetService(store, user_id=1)
        budget = budgets.create(
            BudgetIn(
                amount_cents=2000,
                period=BudgetPeriod.custom,
                start_date=date(2024, 3, 1),
                end_date=date(2024, 3, 31),
            )
        )
        _spend(store, food.id, 450, date(2024, 3, 3))
        _spend(store, None, 300, date(2024, 3, 4))

        listed = budgets.list_all(today=date(2024, 3, 10))
        assert [item.budget.id for item in listed] == [budget.id]
        assert listed[0].usage.spent_cents == 750


def test_budget_validation_and_lookup() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        budgets = BudgetService(store, user_id=1)
        salary = CategoryService(store, user_id=1).create(
            CategoryIn(name="Salary", type=CategoryType.income, color="#22c55e", icon="briefcase")
        )

        with pytest.raises(ValidationError) as exc_info:
            budgets.create(
                BudgetIn(amount_cents=0, period=BudgetPeriod.monthly, start_date=date(2024, 1, 1))
            )
        assert exc_info.value.code == "non_positive_amount"

        with pytest.raises(ValidationError) as exc_info:
            budgets.create(
                BudgetIn(amount_cents=10, period=BudgetPeriod.custom, start_date=date(2024, 1, 1))
            )
        assert exc_info.value.code == "end_date_required"

        with pytest.raises(ValidationError) as exc_info:
            budgets.create(
                BudgetIn(
                    category_id=salary.id,
                    amount_cents=10,
                    period=BudgetPeriod.monthly,
                    start_date=date(2024, 1, 1),
                )
            )
        assert exc_info.value.code == "category_type_mismatch"

        with pytest.raises(NotFoundError):
            budgets.usage(12345)


def test_budget_update_and_delete() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        budgets = BudgetService(store, user_id=1)
        budget = budgets.create(
            BudgetIn(amount_cents=100, period=BudgetPeriod.monthly, start_date=date(2024, 1, 1))
        )
        updated = budgets.update(budget.id, BudgetPatch(amount_cents=250))
        assert updated.amount_cents == 250

        with pytest.raises(ValidationError):
            budgets.update(
                budget.id, BudgetPatch(period=BudgetPeriod.custom, end_date=date(2023, 1, 1))
            )

        budgets.delete(budget.id)
        with pytest.raises(NotFoundError):
            budgets.get(budget.id)
