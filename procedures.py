"""Backend procedures of the ledger store.

These run inside the store's session and own the one piece of shared state the
services never write themselves: ``accounts.current_balance_cents``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from errors import LedgerError, NotFoundError, ValidationError
from models import (
    Account,
    AccountTransaction,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from status import can_transition, classify_transaction

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    paid: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def linked_account_ids(session: Session, transaction_ids: Iterable[int]) -> set[int]:
    ids = list(transaction_ids)
    if not ids:
        return set()
    stmt = select(AccountTransaction.account_id).where(
        AccountTransaction.transaction_id.in_(ids)
    )
    return set(session.scalars(stmt).all())


def paid_total_for_account(session: Session, account_id: int) -> int:
    signed = case(
        (Transaction.type == TransactionType.income, Transaction.amount_cents),
        else_=-Transaction.amount_cents,
    )
    stmt = (
        select(func.coalesce(func.sum(signed), 0))
        .select_from(AccountTransaction)
        .join(Transaction, Transaction.id == AccountTransaction.transaction_id)
        .where(
            AccountTransaction.account_id == account_id,
            Transaction.status == TransactionStatus.paid,
        )
    )
    return int(session.execute(stmt).scalar_one() or 0)


def recalculate_account_balance(session: Session, account_id: int) -> int:
    account = session.get(Account, account_id)
    if account is None:
        raise NotFoundError("Account not found")
    session.flush()
    account.current_balance_cents = account.initial_balance_cents + (
        paid_total_for_account(session, account_id)
    )
    session.flush()
    return account.current_balance_cents


def recalculate_all_account_balances(
    session: Session, user_id: Optional[int] = None
) -> int:
    stmt = select(Account.id)
    if user_id is not None:
        stmt = stmt.where(Account.user_id == user_id)
    account_ids = session.scalars(stmt).all()
    for account_id in account_ids:
        recalculate_account_balance(session, account_id)
    return len(account_ids)


def _mark_one(
    session: Session, transaction_id: int, payment_date: date, user_id: Optional[int]
) -> Transaction:
    txn = session.get(Transaction, transaction_id)
    if txn is None or (user_id is not None and txn.user_id != user_id):
        raise NotFoundError("Transaction not found")
    if not can_transition(txn.status, TransactionStatus.paid):
        raise ValidationError(
            f"Cannot mark a {txn.status.value} transaction as paid",
            code="invalid_transition",
        )
    # all checks are done above, so these writes land together or not at all
    txn.status = TransactionStatus.paid
    txn.payment_date = payment_date
    return txn


def mark_transaction_as_paid(
    session: Session,
    transaction_id: int,
    payment_date: date,
    user_id: Optional[int] = None,
) -> Transaction:
    txn = _mark_one(session, transaction_id, payment_date, user_id)
    session.flush()
    for account_id in linked_account_ids(session, [txn.id]):
        recalculate_account_balance(session, account_id)
    return txn


def mark_transactions_as_paid(
    session: Session,
    transaction_ids: list[int],
    payment_date: date,
    user_id: Optional[int] = None,
) -> BatchResult:
    result = BatchResult()
    for transaction_id in transaction_ids:
        try:
            _mark_one(session, transaction_id, payment_date, user_id)
        except LedgerError as exc:
            logger.warning(
                f"mark_paid_failed: transaction_id={transaction_id} error={exc}"
            )
            result.failed[transaction_id] = str(exc)
            continue
        result.paid.append(transaction_id)
    session.flush()
    for account_id in linked_account_ids(session, result.paid):
        recalculate_account_balance(session, account_id)
    return result


def refresh_overdue_statuses(
    session: Session, today: date, user_id: Optional[int] = None
) -> int:
    stmt = select(Transaction).where(
        Transaction.status == TransactionStatus.pending,
        Transaction.due_date.isnot(None),
        Transaction.due_date < today,
    )
    if user_id is not None:
        stmt = stmt.where(Transaction.user_id == user_id)
    count = 0
    for txn in session.scalars(stmt).all():
        status = classify_transaction(txn, today)
        if status != txn.status:
            txn.status = status
            count += 1
    session.flush()
    return count


PROCEDURES = {
    "mark_transaction_as_paid": mark_transaction_as_paid,
    "mark_transactions_as_paid": mark_transactions_as_paid,
    "recalculate_account_balance": recalculate_account_balance,
    "recalculate_all_account_balances": recalculate_all_account_balances,
    "refresh_overdue_statuses": refresh_overdue_statuses,
}
