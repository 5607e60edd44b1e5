"""
Runner: Limit Order Executor

Groups pending limit orders by mint so each mint is priced once per tick.
An order only moves to EXECUTING once its quote succeeds; a failed
submission leaves it EXECUTING with the error recorded, since the swap may
or may not have reached the chain. BUY fills open or merge into a position
under the order's exit strategy, SELL fills reduce the matching position.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from core.exceptions import ExternalFailure, InvalidState, PersistenceFailure, TradingCoreError
from core.interfaces import SOL_MINT, Clock, PriceFeed, SwapExecutor, SwapQuote
from core.limit_orders import LimitOrder, LimitOrderManager, LimitOrderSide
from core.position_ledger import PositionLedger
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from runner.executor_base import BaseExecutor

logger = logging.getLogger(__name__)


class LimitOrderExecutor(BaseExecutor):
    name = "limit_orders"

    def __init__(
        self,
        orders: LimitOrderManager,
        ledger: PositionLedger,
        price_feed: PriceFeed,
        swap_executor: SwapExecutor,
        clock: Clock,
        retention_days: float = 7.0,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
    ):
        super().__init__(price_feed, swap_executor, clock, metrics, alerts)
        self.orders = orders
        self.ledger = ledger
        self.retention_days = retention_days

    def tick(self) -> int:
        by_mint: Dict[str, List[LimitOrder]] = defaultdict(list)
        for order in self.orders.pending_orders():
            by_mint[order.mint].append(order)

        filled = 0
        if by_mint:
            prices = self._fetch_prices(by_mint.keys())
            for mint in by_mint:
                price = prices.get(mint)
                if price is None:
                    logger.debug(f"[{self.name}] no price for {mint[:8]}, skipping {len(by_mint[mint])} order(s)")
                    continue
                for order in self.orders.get_ready(mint, price):
                    try:
                        if self.execute(order, price):
                            filled += 1
                    except TradingCoreError as e:
                        logger.warning(f"[{self.name}] order {order.id} skipped this tick: {e}")
                    except Exception as e:
                        logger.exception(f"[{self.name}] unexpected error on order {order.id}: {e}")

        if self._cleanup_due():
            self.orders.cleanup(self.retention_days)
        if self.metrics is not None:
            self.metrics.set_standing_orders("limit", self.orders.statistics())
        return filled

    def execute(self, order: LimitOrder, current_price: float) -> bool:
        """Fill one ready order. Returns True once the swap was submitted."""
        if not self.orders.is_ready(order.id, current_price):
            return False

        buying = order.side == LimitOrderSide.BUY.value
        input_mint, output_mint = (SOL_MINT, order.mint) if buying else (order.mint, SOL_MINT)
        try:
            quote = self._external(
                "swap_quote", self.swap_executor.quote,
                input_mint, output_mint, order.amount, order.slippage_bps,
            )
        except ExternalFailure as e:
            logger.warning(f"Quote failed for limit order {order.id}: {e}; order stays pending")
            self._record_failure("limit", "quote")
            return False

        try:
            self.orders.mark_executing(order.id)
        except InvalidState as e:
            # Cancelled or expired between the readiness check and now
            logger.info(f"Limit order {order.id} no longer executable: {e}")
            return False

        signer = order.execution_wallet_key or order.wallet_key
        try:
            signature = self._external("swap_submit", self.swap_executor.build_and_submit, quote, signer)
        except ExternalFailure as e:
            logger.error(f"Swap submission failed for limit order {order.id}: {e}; left executing")
            self._record_failure("limit", "submit")
            self.orders.record_error(order.id, str(e))
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Limit order submission failed",
                f"{order.id} ({order.side} {order.token_symbol or order.mint[:8]}): {e}",
                {"order_id": order.id, "requires": "verify on chain, then requeue"},
            )
            return False

        try:
            self.orders.mark_filled(order.id, signature, resulting_mint=order.mint)
            self._apply_fill(order, quote, current_price)
        except (PersistenceFailure, InvalidState) as e:
            self._report_partial_execution(
                "limit", order.id, signature, e,
                {"side": order.side, "mint": order.mint, "amount": order.amount},
            )
            return True

        kind = "limit_buy" if buying else "limit_sell"
        self._record_fill(kind)
        logger.info(
            f"✅ Limit {order.side} {order.id} filled at ${current_price:.8f} "
            f"(target ${order.target_price:.8f}): {signature}"
        )
        return True

    def _apply_fill(self, order: LimitOrder, quote: SwapQuote, current_price: float) -> None:
        if order.side == LimitOrderSide.BUY.value:
            tokens = quote.out_amount
            if tokens <= 0:
                logger.warning(f"Limit BUY {order.id} filled with no tokens; ledger unchanged")
                return
            self.ledger.record_buy(
                wallet_key=order.wallet_key,
                mint=order.mint,
                tokens=tokens,
                cost=tokens * current_price,
                execution_price=current_price,
                strategy_name=order.exit_strategy,
                token_symbol=order.token_symbol,
                is_private=order.is_private,
                execution_wallet_key=order.execution_wallet_key,
                sol_spent=order.amount,
            )
            return

        if self.ledger.get_position(order.wallet_key, order.mint) is None:
            logger.info(f"Limit SELL {order.id} filled with no tracked position for {order.mint[:8]}")
            return
        self.ledger.record_sale(order.wallet_key, order.mint, order.amount)
