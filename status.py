from datetime import date
from typing import Optional

from models import Transaction, TransactionStatus

UNSETTLED = frozenset({TransactionStatus.pending, TransactionStatus.overdue})

# stored transitions; pending -> overdue is also written by the nightly refresh
TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.pending: frozenset(
        {
            TransactionStatus.paid,
            TransactionStatus.overdue,
            TransactionStatus.cancelled,
        }
    ),
    TransactionStatus.overdue: frozenset(
        {TransactionStatus.paid, TransactionStatus.cancelled}
    ),
    TransactionStatus.paid: frozenset(),
    TransactionStatus.cancelled: frozenset(),
}


def classify(
    status: TransactionStatus, due_date: Optional[date], today: date
) -> TransactionStatus:
    """Display status: a pending row whose due date has passed reads as overdue."""
    if status == TransactionStatus.pending and due_date is not None:
        if due_date < today:
            return TransactionStatus.overdue
    return status


def classify_transaction(txn: Transaction, today: date) -> TransactionStatus:
    return classify(txn.status, txn.due_date, today)


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in TRANSITIONS[current]


def is_unsettled(status: TransactionStatus) -> bool:
    return status in UNSETTLED
