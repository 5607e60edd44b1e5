"""
Paper swap executor for DRY_RUN and PAPER modes.

Quotes are derived from the price feed (token USD price vs SOL USD price)
with slippage applied against the trader; submissions return synthetic
signatures and never touch a chain.
"""

import base64
import json
import logging
import uuid
from typing import List, Optional

from core.exceptions import ExternalFailure
from core.interfaces import SOL_MINT, PriceFeed, SwapExecutor, SwapQuote

logger = logging.getLogger(__name__)


class PaperSwapExecutor(SwapExecutor):
    """Simulated swaps priced off a PriceFeed."""

    def __init__(self, price_feed: PriceFeed, signature_prefix: str = "paper"):
        self.price_feed = price_feed
        self.signature_prefix = signature_prefix
        self.submitted: List[SwapQuote] = []

    def _usd_price(self, mint: str) -> float:
        price = self.price_feed.get_price(mint)
        if price is None or price <= 0:
            raise ExternalFailure(f"paper-swap: no price for {mint}")
        return price

    def quote(self, input_mint: str, output_mint: str, amount: float, slippage_bps: int) -> SwapQuote:
        if amount <= 0:
            raise ExternalFailure("paper-swap: amount must be positive")
        in_price = self._usd_price(input_mint)
        out_price = self._usd_price(output_mint)
        worst_case = 1 - slippage_bps / 10_000.0
        out_amount = amount * in_price / out_price * worst_case
        token_mint: Optional[str] = output_mint if input_mint == SOL_MINT else input_mint
        token_price = out_price if token_mint == output_mint else in_price
        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=out_amount,
            slippage_bps=slippage_bps,
            price=token_price,
            raw={"in_price_usd": in_price, "out_price_usd": out_price, "simulated": True},
        )

    def build_and_submit(self, quote: SwapQuote, signer_key: str) -> str:
        signature = f"{self.signature_prefix}-{uuid.uuid4().hex}"
        self.submitted.append(quote)
        logger.info(
            f"[PAPER] {quote.in_amount:.6f} {quote.input_mint[:8]} -> "
            f"{quote.out_amount:.6f} {quote.output_mint[:8]} for {signer_key[:8]} ({signature})"
        )
        return signature

    def prepare_unsigned(self, quote: SwapQuote, wallet_key: str) -> str:
        payload = {"wallet": wallet_key, "quote": quote.to_dict(), "simulated": True}
        return base64.b64encode(json.dumps(payload, sort_keys=True).encode("utf-8")).decode("ascii")
