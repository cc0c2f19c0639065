"""Ledger error taxonomy.

Every failure the engine reports to its callers is a LedgerError subclass.
Database errors other than write conflicts propagate unchanged.
"""
from decimal import Decimal


class LedgerError(Exception):
    """Base class for all ledger errors."""


class NotFound(LedgerError):
    """Unknown account, asset, currency, holding or rate."""

    def __init__(self, kind: str, key: str, candidates: list[str] | None = None):
        self.kind = kind
        self.key = key
        self.candidates = candidates or []
        message = f"{kind} not found: {key}"
        if self.candidates:
            message += f" (valid: {', '.join(self.candidates)})"
        super().__init__(message)


class AlreadyExists(LedgerError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} already exists: {key}")


class InvalidInput(LedgerError):
    """Non-positive quantity or price, malformed identifier, and similar."""


class InsufficientHoldings(LedgerError):
    def __init__(self, account_id: str, asset: str, available: Decimal, required: Decimal):
        self.account_id = account_id
        self.asset = asset
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient {asset} in account {account_id}: have {available}, need {required}"
        )


class LedgerArithmeticError(LedgerError, ArithmeticError):
    """Division by zero while deriving an implied rate or price."""


class RateUnavailable(LedgerError):
    def __init__(self, from_currency: str, to_currency: str, reason: str = "no rate recorded"):
        self.from_currency = from_currency
        self.to_currency = to_currency
        super().__init__(f"Exchange rate {from_currency}/{to_currency} unavailable: {reason}")


class Conflict(LedgerError):
    """A concurrent writer modified the same rows; the caller should retry."""


class PriceUnavailable(LedgerError):
    def __init__(self, asset: str):
        self.asset = asset
        super().__init__(f"No current price for {asset}")
