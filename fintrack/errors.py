from __future__ import annotations


class LedgerError(Exception):
    """Base class for failures raised by the ledger core."""


class ValidationError(LedgerError, ValueError):
    """Malformed or missing input, rejected before the store is touched."""


class InvalidAmount(ValidationError):
    pass


class InsufficientBalance(LedgerError):
    def __init__(self, currency: str, available: int, required: int) -> None:
        super().__init__(f"Insufficient {currency} balance.")
        self.currency = currency
        self.available = available
        self.required = required


class NotFound(LedgerError):
    def __init__(self, entity: str) -> None:
        super().__init__(f"{entity} not found.")
        self.entity = entity


class WalletMissing(LedgerError, RuntimeError):
    def __init__(self, currency: str) -> None:
        super().__init__(f"{currency} wallet is missing.")
        self.currency = currency
