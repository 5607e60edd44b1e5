"""
Capability interfaces consumed by the trading core.

Implementations live outside core/ (see infra/) or are injected by the
embedding application: price feeds, swap execution, durable storage and
the clock.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

SOL_MINT = "So11111111111111111111111111111111111111112"


class PriceFeed(ABC):
    """USD price source. May serve cached or stale values."""

    @abstractmethod
    def get_price(self, mint: str) -> Optional[float]:
        """Return the USD price for ``mint`` or None if not found."""

    def get_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        """
        Return a mint -> price map, omitting mints with no price.

        Default implementation fans out to get_price(); adapters with a
        batch endpoint should override it.
        """
        prices: Dict[str, float] = {}
        for mint in dict.fromkeys(mints):
            price = self.get_price(mint)
            if price is not None:
                prices[mint] = price
        return prices


@dataclass
class SwapQuote:
    """Route quote returned by a SwapExecutor."""
    input_mint: str
    output_mint: str
    in_amount: float
    out_amount: float
    slippage_bps: int
    price: Optional[float] = None  # USD price per output token at quote time
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "slippage_bps": self.slippage_bps,
            "price": self.price,
        }


class SwapExecutor(ABC):
    """Swap quoting and submission. May fail transiently or permanently."""

    @abstractmethod
    def quote(self, input_mint: str, output_mint: str, amount: float, slippage_bps: int) -> SwapQuote:
        """Quote swapping ``amount`` of ``input_mint`` into ``output_mint``."""

    @abstractmethod
    def build_and_submit(self, quote: SwapQuote, signer_key: str) -> str:
        """Sign with ``signer_key``, broadcast and return the transaction signature."""

    @abstractmethod
    def prepare_unsigned(self, quote: SwapQuote, wallet_key: str) -> str:
        """Return a serialized unsigned transaction for a user to co-sign."""


class LedgerStore(ABC):
    """Durable key-value store for ledger and order records."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Point read; None if absent."""

    @abstractmethod
    def put(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        """Point write (idempotent by key)."""

    @abstractmethod
    def delete(self, collection: str, key: str) -> None:
        """Remove a record; missing keys are ignored."""

    @abstractmethod
    def scan(self, collection: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """All records in ``collection``, optionally filtered by ``status``."""


class Clock(ABC):
    """Injectable time source."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
