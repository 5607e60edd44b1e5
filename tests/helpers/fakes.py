"""
Fakes for the capability interfaces.

Use these instead of mocks so tests exercise the real adapter contracts
(``PriceFeed``, ``SwapExecutor``, ``LedgerStore``).
"""

from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from core.exceptions import ExternalFailure
from core.interfaces import SOL_MINT, PriceFeed, SwapExecutor, SwapQuote
from infra.state_store import InMemoryLedgerStore

SOL_PRICE_USD = 100.0

WALLET = "wallet_A"
MINT = "MintAAAA1111111111111111111111111111111111"
OTHER_MINT = "MintBBBB2222222222222222222222222222222222"


class FakePriceFeed(PriceFeed):
    """Price map keyed by mint. SOL is priced at $100 unless overridden."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = {SOL_MINT: SOL_PRICE_USD}
        self.prices.update(prices or {})
        self.calls: List[Tuple[str, ...]] = []
        self.fail = False

    def set_price(self, mint: str, price: Optional[float]) -> None:
        if price is None:
            self.prices.pop(mint, None)
        else:
            self.prices[mint] = price

    def get_price(self, mint: str) -> Optional[float]:
        if self.fail:
            raise ExternalFailure("fake-feed: unavailable")
        return self.prices.get(mint)

    def get_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        mints = tuple(mints)
        self.calls.append(mints)
        if self.fail:
            raise ExternalFailure("fake-feed: unavailable")
        return {m: self.prices[m] for m in mints if m in self.prices}


class FakeSwapExecutor(SwapExecutor):
    """
    Converts at the feed's USD prices with no slippage, so expected amounts
    are exact. Set ``fail_quote`` / ``fail_submit`` / ``fail_prepare`` to
    simulate adapter outages.
    """

    def __init__(self, feed: FakePriceFeed):
        self.feed = feed
        self.fail_quote = False
        self.fail_submit = False
        self.fail_prepare = False
        # Called with (quote, signer_key) before a submission is accepted
        self.on_submit: Optional[Callable[[SwapQuote, str], None]] = None
        self.quotes: List[SwapQuote] = []
        self.submitted: List[Tuple[SwapQuote, str]] = []
        self.prepared: List[Tuple[SwapQuote, str]] = []
        self._counter = 0

    def quote(self, input_mint: str, output_mint: str, amount: float, slippage_bps: int) -> SwapQuote:
        if self.fail_quote:
            raise RuntimeError("quote endpoint down")
        in_price = self.feed.prices[input_mint]
        out_price = self.feed.prices[output_mint]
        token_price = out_price if input_mint == SOL_MINT else in_price
        quote = SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=amount * in_price / out_price,
            slippage_bps=slippage_bps,
            price=token_price,
        )
        self.quotes.append(quote)
        return quote

    def build_and_submit(self, quote: SwapQuote, signer_key: str) -> str:
        if self.fail_submit:
            raise RuntimeError("rpc timeout")
        if self.on_submit is not None:
            self.on_submit(quote, signer_key)
        self._counter += 1
        self.submitted.append((quote, signer_key))
        return f"sig-{self._counter}"

    def prepare_unsigned(self, quote: SwapQuote, wallet_key: str) -> str:
        if self.fail_prepare:
            raise RuntimeError("cannot build transaction")
        self._counter += 1
        self.prepared.append((quote, wallet_key))
        return f"unsigned-tx-{self._counter}"


class FailingStore(InMemoryLedgerStore):
    """In-memory store whose writes can be made to fail per collection."""

    def __init__(self):
        super().__init__()
        self.failing: Set[str] = set()
        self.failed_puts = 0

    def fail(self, *collections: str) -> None:
        self.failing.update(collections)

    def recover(self) -> None:
        self.failing.clear()

    def put(self, collection, key, record):
        if collection in self.failing:
            self.failed_puts += 1
            raise OSError(f"disk full writing {collection}/{key}")
        super().put(collection, key, record)

    def delete(self, collection, key):
        if collection in self.failing:
            raise OSError(f"disk full deleting {collection}/{key}")
        super().delete(collection, key)
