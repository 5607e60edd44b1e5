"""
Runner: DCA Executor

Executes due DCA buys. Each tick prices every mint with a due order once,
re-checks the order is still due under its lock, sizes the buy, swaps SOL
for the token and records the execution. The bought tokens are folded into
the position ledger under the order's exit strategy.
"""

import logging
from typing import Optional

from core.dca_orders import BuyExecution, DCAOrder, DCAOrderManager
from core.exceptions import ExternalFailure, InvalidState, PersistenceFailure, TradingCoreError
from core.interfaces import SOL_MINT, Clock, PriceFeed, SwapExecutor
from core.position_ledger import PositionLedger
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from runner.executor_base import BaseExecutor

logger = logging.getLogger(__name__)


class DCAExecutor(BaseExecutor):
    name = "dca"

    def __init__(
        self,
        orders: DCAOrderManager,
        ledger: PositionLedger,
        price_feed: PriceFeed,
        swap_executor: SwapExecutor,
        clock: Clock,
        retention_days: float = 30.0,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
    ):
        super().__init__(price_feed, swap_executor, clock, metrics, alerts)
        self.orders = orders
        self.ledger = ledger
        self.retention_days = retention_days

    def tick(self) -> int:
        ready = self.orders.get_ready_for_buy(self.clock.now())
        executed = 0
        if ready:
            prices = self._fetch_prices(o.mint for o in ready)
            for order in ready:
                try:
                    if self.execute(order, prices.get(order.mint)):
                        executed += 1
                except TradingCoreError as e:
                    logger.warning(f"[{self.name}] DCA order {order.id} skipped this tick: {e}")
                except Exception as e:
                    logger.exception(f"[{self.name}] unexpected error on DCA order {order.id}: {e}")

        if self._cleanup_due():
            self.orders.cleanup(self.retention_days)
        if self.metrics is not None:
            self.metrics.set_standing_orders("dca", self.orders.statistics())
        return executed

    def execute(self, order: DCAOrder, current_price: Optional[float]) -> bool:
        """Run the next buy of ``order``. Returns True once the swap was submitted."""
        if not self.orders.is_due(order.id):
            return False
        order = self.orders.get(order.id)
        signer = order.signer_key

        amount = self.orders.calculate_next_buy_amount(order, current_price)
        if amount <= 0:
            logger.warning(f"DCA order {order.id} is due but has no budget left")
            return False

        try:
            quote = self._external(
                "swap_quote", self.swap_executor.quote,
                SOL_MINT, order.mint, amount, order.slippage_bps,
            )
        except ExternalFailure as e:
            logger.warning(f"Quote failed for DCA order {order.id}: {e}; retrying next tick")
            self._record_failure("dca", "quote")
            return False

        try:
            signature = self._external(
                "swap_submit", self.swap_executor.build_and_submit, quote, signer,
            )
        except ExternalFailure as e:
            logger.error(f"Swap submission failed for DCA order {order.id}: {e}")
            self._record_failure("dca", "submit")
            self.alerts.notify(
                AlertSeverity.WARNING,
                "DCA buy submission failed",
                f"{order.id} buy {order.current_buy_index + 1}/{order.number_of_buys}: {e}",
                {"order_id": order.id, "mint": order.mint},
            )
            return False

        price = quote.price or current_price or 0.0
        execution = BuyExecution(
            index=order.current_buy_index + 1,
            timestamp=self.clock.now(),
            spent=amount,
            received=quote.out_amount,
            price=price,
            tx_ref=signature,
            execution_wallet_key=signer,
        )
        try:
            self.orders.record_buy_execution(order.id, execution)
            if quote.out_amount > 0 and price > 0:
                self.ledger.record_buy(
                    wallet_key=order.wallet_key,
                    mint=order.mint,
                    tokens=quote.out_amount,
                    cost=quote.out_amount * price,
                    execution_price=price,
                    strategy_name=order.exit_strategy,
                    token_symbol=order.token_symbol,
                    is_private=order.is_private,
                    execution_wallet_key=order.execution_wallet_key if order.is_private else None,
                    sol_spent=amount,
                )
        except (PersistenceFailure, InvalidState) as e:
            self._report_partial_execution(
                "dca", order.id, signature, e,
                {"buy_index": execution.index, "spent": amount, "received": quote.out_amount},
            )
            return True

        self._record_fill("dca_buy")
        logger.info(
            f"✅ DCA {order.id} buy {execution.index}/{order.number_of_buys}: "
            f"{amount:.6f} SOL -> {quote.out_amount:.6f} {order.token_symbol or order.mint[:8]} ({signature})"
        )
        return True
