"""Shared exception types for the exit engine, ledger and order managers."""

from typing import Optional


class TradingCoreError(Exception):
    """Base class for every error raised by the trading core."""


class NotFound(TradingCoreError, KeyError):
    """Unknown position, order or pending-sell id/key."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class InvalidState(TradingCoreError):
    """Operation is not valid for the entity's current status."""


class ValidationError(TradingCoreError, ValueError):
    """Bad input at creation time (bounds, sizes, intervals)."""


class ExternalFailure(TradingCoreError):
    """Raised when the price feed or swap executor fails."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class PersistenceFailure(TradingCoreError):
    """Durable write failed after the in-memory mutation was already applied."""

    def __init__(self, collection: str, key: str, original: Optional[Exception] = None):
        super().__init__(f"failed to persist {collection}/{key}: {original}")
        self.collection = collection
        self.key = key
        self.original = original
