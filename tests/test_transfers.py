from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import Base, make_engine
from errors import AuthError, LinkFailure, StoreError, ValidationError
from models import (
    Account,
    AccountTransaction,
    AccountType,
    Category,
    CategoryType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from schemas import AccountIn, TransactionIn, TransactionPatch
from services import AccountService, TransactionService, TransferCoordinator
from store import LedgerStore

TODAY = date(2024, 3, 10)


class FailingLinkStore(LedgerStore):
    """Rejects account links pointing at one account."""

    def __init__(self, session: Session, failing_account_id: int) -> None:
        super().__init__(session)
        self.failing_account_id = failing_account_id

    def insert(self, row):
        if (
            isinstance(row, AccountTransaction)
            and row.account_id == self.failing_account_id
        ):
            raise StoreError("link rejected")
        return super().insert(row)


def _accounts(store: LedgerStore) -> tuple[Account, Account]:
    service = AccountService(store, user_id=1)
    checking = service.create(
        AccountIn(name="Checking", type=AccountType.checking, initial_balance_cents=1000)
    )
    savings = service.create(AccountIn(name="Savings", type=AccountType.savings))
    TransactionService(store, user_id=1).create(
        TransactionIn(
            type=TransactionType.expense,
            amount_cents=200,
            description="Groceries",
            date=date(2024, 3, 1),
            status=TransactionStatus.paid,
            payment_date=date(2024, 3, 1),
            account_id=checking.id,
        ),
        today=TODAY,
    )
    return checking, savings


def _count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(Transaction))


def test_paid_transfer_moves_balances() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        checking, savings = _accounts(store)
        session.refresh(checking)
        assert checking.current_balance_cents == 800

        legs = TransferCoordinator(store, user_id=1).create_transfer(
            checking.id, savings.id, 300, date(2024, 3, 8), "Monthly savings", today=TODAY
        )

        assert legs.is_complete
        assert legs.expense.transfer_id == legs.income.transfer_id == legs.transfer_id
        assert legs.expense.amount_cents == legs.income.amount_cents == 300
        assert legs.expense.description == "Transfer: Monthly savings"
        assert legs.expense.tags == ["transfer"]
        assert legs.expense.payment_date == date(2024, 3, 8)
        assert legs.expense.due_date is None

        session.refresh(checking)
        session.refresh(savings)
        assert checking.current_balance_cents == 500
        assert savings.current_balance_cents == 300

        stored = TransferCoordinator(store, user_id=1).legs(legs.transfer_id)
        assert stored.expense.account_id == checking.id
        assert stored.income.account_id == savings.id


def test_transfer_category_created_once() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        checking, savings = _accounts(store)
        coordinator = TransferCoordinator(store, user_id=1)
        first = coordinator.create_transfer(
            checking.id, savings.id, 10, date(2024, 3, 8), "One", today=TODAY
        )
        second = coordinator.create_transfer(
            savings.id, checking.id, 5, date(2024, 3, 9), "Two", today=TODAY
        )
        assert first.transfer_id != second.transfer_id

        categories = session.scalars(
            select(Category).where(Category.name == "Transfer")
        ).all()
        assert len(categories) == 1
        assert categories[0].type == CategoryType.both
        assert categories[0].color == "#64748b"


def test_pending_transfer_uses_due_date() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        checking, savings = _accounts(store)
        legs = TransferCoordinator(store, user_id=1).create_transfer(
            checking.id,
            savings.id,
            100,
            date(2024, 3, 15),
            "Scheduled",
            status="pending",
            due_date=date(2024, 3, 15),
            today=TODAY,
        )
        assert legs.expense.status == TransactionStatus.pending
        assert legs.expense.date == TODAY
        assert legs.expense.due_date == date(2024, 3, 15)
        assert legs.expense.payment_date is None

        session.refresh(checking)
        assert checking.current_balance_cents == 800


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"from_account_id": None}, "missing_fields"),
        ({"description": "  "}, "missing_fields"),
        ({"to_account_id": "same"}, "same_account"),
        ({"amount_cents": 0}, "non_positive_amount"),
        ({"amount_cents": -5}, "non_positive_amount"),
        ({"status": "pending"}, "due_date_required"),
    ],
)
def test_transfer_validation_writes_nothing(kwargs, code) -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        checking, savings = _accounts(store)
        args = {
            "from_account_id": checking.id,
            "to_account_id": savings.id,
            "amount_cents": 100,
            "transfer_date": date(2024, 3, 8),
            "description": "Move",
        }
        args.update(kwargs)
        if args["to_account_id"] == "same":
            args["to_account_id"] = args["from_account_id"]
        before = _count(session)

        with pytest.raises(ValidationError) as exc_info:
            TransferCoordinator(store, user_id=1).create_transfer(**args, today=TODAY)
        assert exc_info.value.code == code
        assert _count(session) == before


def test_transfer_requires_user(monkeypatch) -> None:
    monkeypatch.setattr("services.get_current_user_id", lambda: None)
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        with pytest.raises(AuthError):
            TransferCoordinator(store).create_transfer(
                1, 2, 100, date(2024, 3, 8), "Move", today=TODAY
            )


def test_source_link_failure_removes_first_leg() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        checking, savings = _accounts(LedgerStore(session))
        before = _count(session)
        store = FailingLinkStore(session, failing_account_id=checking.id)

        with pytest.raises(LinkFailure):
            TransferCoordinator(store, user_id=1).create_transfer(
                checking.id, savings.id, 300, date(2024, 3, 8), "Move", today=TODAY
            )

        assert _count(session) == before
        session.refresh(checking)
        assert checking.current_balance_cents == 800


def test_destination_link_failure_keeps_first_leg_by_default() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        checking, savings = _accounts(LedgerStore(session))
        before = _count(session)
        store = FailingLinkStore(session, failing_account_id=savings.id)

        with pytest.raises(LinkFailure) as exc_info:
            TransferCoordinator(
                store, user_id=1, full_compensation=False
            ).create_transfer(
                checking.id, savings.id, 300, date(2024, 3, 8), "Move", today=TODAY
            )

        assert _count(session) == before + 2
        income = session.get(Transaction, exc_info.value.transaction_id)
        assert income.type == TransactionType.income
        assert income.account_links == []
        legs = TransferCoordinator(store, user_id=1).legs(income.transfer_id)
        assert legs.expense.account_id == checking.id

        session.refresh(checking)
        session.refresh(savings)
        assert checking.current_balance_cents == 500
        assert savings.current_balance_cents == 0


def test_destination_link_failure_with_full_compensation() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        checking, savings = _accounts(LedgerStore(session))
        before = _count(session)
        store = FailingLinkStore(session, failing_account_id=savings.id)

        with pytest.raises(LinkFailure):
            TransferCoordinator(
                store, user_id=1, full_compensation=True
            ).create_transfer(
                checking.id, savings.id, 300, date(2024, 3, 8), "Move", today=TODAY
            )

        assert _count(session) == before
        session.refresh(checking)
        assert checking.current_balance_cents == 800


def test_transfer_leg_edits_and_deletes_keep_pair_symmetric() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        checking, savings = _accounts(store)
        legs = TransferCoordinator(store, user_id=1).create_transfer(
            checking.id, savings.id, 300, date(2024, 3, 8), "Move", today=TODAY
        )
        txns = TransactionService(store, user_id=1)

        with pytest.raises(ValidationError) as exc_info:
            txns.update(legs.income.id, TransactionPatch(amount_cents=10), today=TODAY)
        assert exc_info.value.code == "transfer_leg_locked"

        txns.update(
            legs.income.id,
            TransactionPatch(description="Transfer: renamed"),
            today=TODAY,
        )

        txns.delete(legs.expense.id)
        remaining = session.scalars(
            select(Transaction).where(Transaction.transfer_id == legs.transfer_id)
        ).all()
        assert remaining == []
        session.refresh(checking)
        session.refresh(savings)
        assert checking.current_balance_cents == 800
        assert savings.current_balance_cents == 0


def test_delete_transfer_by_id() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        store = LedgerStore(session)
        checking, savings = _accounts(store)
        coordinator = TransferCoordinator(store, user_id=1)
        legs = coordinator.create_transfer(
            checking.id, savings.id, 300, date(2024, 3, 8), "Move", today=TODAY
        )
        coordinator.delete_transfer(legs.transfer_id)
        session.refresh(savings)
        assert savings.current_balance_cents == 0
