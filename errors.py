from typing import Optional


class LedgerError(Exception):
    """Base class for every failure raised by the ledger services."""


class ValidationError(LedgerError, ValueError):
    """A payload field is missing or out of range. Raised before any write."""

    def __init__(self, message: str, code: str = "invalid") -> None:
        super().__init__(message)
        self.code = code


class ConflictError(LedgerError, ValueError):
    """A uniqueness rule was violated (duplicate account or category name)."""


class NotFoundError(LedgerError, ValueError):
    """A referenced row does not exist or is owned by another user."""


class LinkFailure(LedgerError):
    """Writing the account link failed after the primary row was stored."""

    def __init__(self, message: str, transaction_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id


class AuthError(LedgerError):
    """No authenticated user is available for the operation."""


class StoreError(LedgerError):
    """The ledger store rejected or failed a read, write or procedure call."""
