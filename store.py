"""Ledger store client.

Every service receives a ``LedgerStore`` instead of reaching for a global
session. The store offers the primitives the services are allowed to use
(reads, insert, update, delete and named procedures), commits each write as its
own round trip, and keeps ``accounts.current_balance_cents`` in sync the way a
database trigger would.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import ConflictError, LedgerError, StoreError
from models import Account, AccountTransaction, Transaction
from procedures import PROCEDURES, linked_account_ids, recalculate_account_balance

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerStore:
    def __init__(self, session: Session, *, balance_triggers: bool = True) -> None:
        self.session = session
        self.balance_triggers = balance_triggers

    # reads

    def get(self, model: type[T], row_id: Any) -> Optional[T]:
        try:
            return self.session.get(model, row_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load {model.__name__}: {exc}") from exc

    def scalars(self, stmt) -> list:
        try:
            return list(self.session.scalars(stmt).unique().all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Query failed: {exc}") from exc

    def scalar(self, stmt):
        try:
            return self.session.scalar(stmt)
        except SQLAlchemyError as exc:
            raise StoreError(f"Query failed: {exc}") from exc

    def rows(self, stmt) -> list:
        try:
            return list(self.session.execute(stmt).all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Query failed: {exc}") from exc

    # writes

    def insert(self, row: T) -> T:
        def write() -> set[int]:
            self.session.add(row)
            self.session.flush()
            return self._affected_accounts(row)

        self._write(write, f"insert {type(row).__name__}")
        self.session.refresh(row)
        return row

    def update(self, row: T, values: dict[str, Any]) -> T:
        def write() -> set[int]:
            before = self._affected_accounts(row)
            for key, value in values.items():
                if not hasattr(type(row), key):
                    raise StoreError(f"{type(row).__name__} has no column {key}")
                setattr(row, key, value)
            self.session.flush()
            return before | self._affected_accounts(row)

        self._write(write, f"update {type(row).__name__}")
        self.session.refresh(row)
        return row

    def delete(self, row: Any) -> None:
        def write() -> set[int]:
            affected = self._affected_accounts(row)
            if isinstance(row, Account):
                affected.discard(row.id)
            self.session.delete(row)
            self.session.flush()
            return affected

        self._write(write, f"delete {type(row).__name__}")

    def call(self, procedure: str, **params: Any) -> Any:
        func = PROCEDURES.get(procedure)
        if func is None:
            raise StoreError(f"Unknown procedure: {procedure}")
        result: list[Any] = []

        def write() -> set[int]:
            result.append(func(self.session, **params))
            return set()

        self._write(write, procedure)
        return result[0]

    # internals

    def _write(self, operation, label: str) -> None:
        try:
            affected = operation()
            if self.balance_triggers:
                for account_id in affected:
                    if self.session.get(Account, account_id) is not None:
                        recalculate_account_balance(self.session, account_id)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(f"{label} violates a uniqueness rule") from exc
        except LedgerError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(f"store_write_failed: op={label} error={exc}")
            raise StoreError(f"Failed to {label}: {exc}") from exc

    def _affected_accounts(self, row: Any) -> set[int]:
        if isinstance(row, AccountTransaction):
            return {row.account_id} if row.account_id is not None else set()
        if isinstance(row, Transaction):
            if row.id is None:
                return set()
            return linked_account_ids(self.session, [row.id])
        if isinstance(row, Account) and row.id is not None:
            return {row.id}
        return set()
