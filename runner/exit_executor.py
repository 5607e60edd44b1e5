"""
Runner: Exit Executor (price tick loop)

Each tick:
1. Fetch one price per mint with an active position
2. Update the ledger (current price, profit, watermark)
3. Ask the exit engine whether the position should exit
4. On a trigger, either execute directly (bot-custodied wallet) or queue a
   PendingSell with a prepared unsigned transaction for the user to sign
5. Expire overdue pending sells
6. Report positions stuck in CLOSING past ``closing_timeout_seconds``

A direct exit holds the position's ledger lock from quote to record, and
the ledger is updated with the tokens the swap actually sold. Stage
percentages are shares of the holding the stages started from, so a full
run of stages sells the whole position.

A pending sell's prepared transaction is only valid for a short time, so a
pending entry older than ``prepared_tx_lifetime_seconds`` is cancelled and
rebuilt while the exit condition still holds.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import FrozenSet, Iterable, Optional

from core.exceptions import ExternalFailure, InvalidState, NotFound, PersistenceFailure, TradingCoreError
from core.exit_engine import ExitDecision, evaluate_exit, tokens_to_sell
from core.interfaces import SOL_MINT, Clock, PriceFeed, SwapExecutor
from core.pending_sells import PendingSell, PendingSellQueue, PendingSellStatus
from core.position_ledger import Position, PositionLedger, PositionStatus
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from runner.executor_base import BaseExecutor
from strategy.exit_strategies import StrategyConfig, StrategyTable

logger = logging.getLogger(__name__)


@dataclass
class ExitSettings:
    custodied_wallets: FrozenSet[str] = field(default_factory=frozenset)
    auto_execute_private: bool = True
    slippage_bps: int = 300
    pending_sell_expiry_minutes: float = 30.0
    prepared_tx_lifetime_seconds: float = 90.0
    pending_sell_retention_days: float = 7.0
    closing_timeout_seconds: float = 300.0

    @classmethod
    def from_config(cls, raw: Optional[dict], pending: Optional[dict] = None) -> "ExitSettings":
        """Build from the ``exits`` and ``pending_sells`` sections of app.yaml."""
        raw = raw or {}
        pending = pending or {}
        return cls(
            custodied_wallets=frozenset(raw.get("custodied_wallets") or []),
            auto_execute_private=bool(raw.get("auto_execute_private", True)),
            slippage_bps=int(raw.get("slippage_bps", 300)),
            pending_sell_expiry_minutes=float(pending.get("expiry_minutes", 30)),
            prepared_tx_lifetime_seconds=float(raw.get("prepared_tx_lifetime_seconds", 90)),
            pending_sell_retention_days=float(pending.get("retention_days", 7)),
            closing_timeout_seconds=float(raw.get("closing_timeout_seconds", 300)),
        )


class ExitExecutor(BaseExecutor):
    name = "price_tick"

    def __init__(
        self,
        ledger: PositionLedger,
        pending_sells: PendingSellQueue,
        strategies: StrategyTable,
        price_feed: PriceFeed,
        swap_executor: SwapExecutor,
        clock: Clock,
        settings: Optional[ExitSettings] = None,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
    ):
        super().__init__(price_feed, swap_executor, clock, metrics, alerts)
        self.ledger = ledger
        self.pending_sells = pending_sells
        self.strategies = strategies
        self.settings = settings or ExitSettings()

    def tick(self) -> int:
        positions = self.ledger.active_positions()
        acted = 0
        if positions:
            prices = self._fetch_prices(p.mint for p in positions)
            for position in positions:
                price = prices.get(position.mint)
                if price is None:
                    continue
                try:
                    if self.process_position(position, price):
                        acted += 1
                except TradingCoreError as e:
                    logger.warning(f"[{self.name}] position {position.id} skipped this tick: {e}")
                except Exception as e:
                    logger.exception(f"[{self.name}] unexpected error on position {position.id}: {e}")

        self.pending_sells.expire_stale()
        self.report_stale_closing()
        if self._cleanup_due():
            self.pending_sells.cleanup(self.settings.pending_sell_retention_days)
        if self.metrics is not None:
            self.metrics.set_open_positions(len(self.ledger.open_positions()))
            self.metrics.set_standing_orders("pending_sell", self.pending_sells.statistics())
        return acted

    def process_position(self, position: Position, price: float) -> bool:
        """Update one position's price and act on any exit trigger. Returns True if it acted."""
        updated = self.ledger.update_price(position.wallet_key, position.mint, price)
        if updated.status != PositionStatus.ACTIVE.value:
            return False
        try:
            strategy = self.strategies.get_strategy(updated.strategy_name)
        except NotFound:
            logger.error(f"Position {updated.id} uses unknown strategy '{updated.strategy_name}'")
            return False

        decision = evaluate_exit(updated, price, strategy, self.clock.now())
        if not decision.should_exit:
            return False

        custodied = self.is_custodied(updated)
        if not custodied and self._has_fresh_pending(updated):
            return False
        route = "auto" if custodied else "approval"
        logger.info(
            f"Exit triggered for {updated.token_symbol or updated.mint[:8]} ({updated.id}): "
            f"{decision.reason}, sell {decision.sell_percentage:g}% [{route}] {decision.detail}"
        )
        if self.metrics is not None:
            self.metrics.record_exit(decision.reason, route)

        if custodied:
            return self.execute_exit(updated, decision, strategy)
        return self.queue_pending_sell(updated, decision, strategy) is not None

    def is_custodied(self, position: Position) -> bool:
        """True when the bot holds a signing key for the position's wallet."""
        if position.wallet_key in self.settings.custodied_wallets:
            return True
        return bool(
            self.settings.auto_execute_private
            and position.is_private
            and position.execution_wallet_key
        )

    def _pending_age_seconds(self, sell: PendingSell) -> float:
        return (self.clock.now() - sell.created_at).total_seconds()

    def _has_fresh_pending(self, position: Position) -> bool:
        """An entry the user is signing, or one whose prepared transaction is still usable."""
        existing = self.pending_sells.find_in_flight(position.wallet_key, position.mint)
        if existing is None:
            return False
        if existing.status != PendingSellStatus.PENDING.value:
            return True
        return self._pending_age_seconds(existing) < self.settings.prepared_tx_lifetime_seconds

    def report_stale_closing(self) -> int:
        """
        Alert on positions stuck in CLOSING past the closing timeout.

        A closing position is skipped by the exit loop, so one left behind by
        a crash or a failed reactivate needs an operator: check the chain,
        then ``ledger.reactivate`` or ``ledger.close`` it.
        """
        timeout = timedelta(seconds=self.settings.closing_timeout_seconds)
        stale = self.ledger.stale_closing(timeout)
        if self.metrics is not None:
            self.metrics.set_stuck_closing(len(stale))
        for position in stale:
            since = position.closing_since or position.updated_at
            logger.error(
                f"Position {position.id} ({position.wallet_key}/{position.mint}) has been closing "
                f"since {since.isoformat() if since else 'unknown'}; manual reconciliation required"
            )
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Position stuck closing",
                f"{position.id} closing since {since.isoformat() if since else 'unknown'}",
                {"position_id": position.id, "wallet": position.wallet_key, "mint": position.mint},
            )
        return len(stale)

    # ----- bot-custodied flow -----

    def execute_exit(self, position: Position, decision: ExitDecision, strategy: StrategyConfig) -> bool:
        """
        Quote, submit and record an exit while holding the pair's ledger lock.

        Skipped if the position changed (merged, staged or closed) between
        the decision and taking the lock; the next tick re-evaluates it.
        """
        with self.ledger.exit_guard(position.wallet_key, position.mint):
            current = self.ledger.get_position(position.wallet_key, position.mint)
            if (
                current is None
                or current.status != PositionStatus.ACTIVE.value
                or current.exit_stages_completed != position.exit_stages_completed
                or current.merged_buys != position.merged_buys
            ):
                logger.info(f"Position {position.id} changed before its exit ran; re-evaluating next tick")
                return False
            return self._execute_locked(current, decision, strategy)

    def _execute_locked(self, position: Position, decision: ExitDecision, strategy: StrategyConfig) -> bool:
        tokens = tokens_to_sell(position, decision, strategy)
        if tokens <= 0:
            return False
        signer = position.execution_wallet_key or position.wallet_key
        full_exit = tokens >= position.token_amount
        if full_exit:
            self.ledger.mark_closing(position.wallet_key, position.mint)

        try:
            quote = self._external(
                "swap_quote", self.swap_executor.quote,
                position.mint, SOL_MINT, tokens, self.settings.slippage_bps,
            )
        except ExternalFailure as e:
            logger.warning(f"Exit quote failed for {position.id}: {e}; retrying next tick")
            self._record_failure("exit", "quote")
            if full_exit:
                self.ledger.reactivate(position.wallet_key, position.mint)
            return False

        try:
            signature = self._external("swap_submit", self.swap_executor.build_and_submit, quote, signer)
        except ExternalFailure as e:
            logger.error(f"Exit submission failed for {position.id}: {e}")
            self._record_failure("exit", "submit")
            if full_exit:
                self.ledger.reactivate(position.wallet_key, position.mint)
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Exit submission failed",
                f"{position.id} {decision.reason}: {e}",
                {"position_id": position.id, "mint": position.mint},
            )
            return False

        sold = quote.in_amount or tokens
        try:
            self.ledger.apply_exit(
                position.wallet_key, position.mint, sold,
                stage_index=decision.stage_index, merged_buys=position.merged_buys,
            )
        except (PersistenceFailure, NotFound) as e:
            self._report_partial_execution(
                "exit", position.id, signature, e,
                {"mint": position.mint, "tokens_sold": sold, "reason": decision.reason},
            )
            return True

        self._record_fill("exit")
        logger.info(
            f"✅ Exit executed for {position.id}: {sold:.6f} tokens -> "
            f"{quote.out_amount:.6f} SOL ({signature})"
        )
        return True

    # ----- approval flow -----

    def queue_pending_sell(
        self, position: Position, decision: ExitDecision, strategy: StrategyConfig,
    ) -> Optional[PendingSell]:
        existing = self.pending_sells.find_in_flight(position.wallet_key, position.mint)
        if existing is not None:
            if existing.status != PendingSellStatus.PENDING.value:
                return None
            age = self._pending_age_seconds(existing)
            if age < self.settings.prepared_tx_lifetime_seconds:
                return None
            logger.info(f"Refreshing pending sell {existing.id} (prepared transaction {age:.0f}s old)")
            if not self.pending_sells.cancel(existing.id):
                return None

        tokens = tokens_to_sell(position, decision, strategy)
        if tokens <= 0:
            return None
        try:
            quote = self._external(
                "swap_quote", self.swap_executor.quote,
                position.mint, SOL_MINT, tokens, self.settings.slippage_bps,
            )
            prepared = self._external(
                "swap_prepare", self.swap_executor.prepare_unsigned, quote, position.wallet_key,
            )
        except ExternalFailure as e:
            logger.warning(f"Could not prepare exit for {position.id}: {e}; retrying next tick")
            self._record_failure("exit", "prepare")
            return None

        try:
            sell = self.pending_sells.create(
                wallet_key=position.wallet_key,
                mint=position.mint,
                token_symbol=position.token_symbol,
                position_id=position.id,
                sell_percentage=min(decision.sell_percentage, 100.0),
                token_amount=quote.in_amount or tokens,
                current_price=position.current_price or 0.0,
                entry_price=position.entry_price,
                current_profit_percent=decision.profit_percent,
                estimated_sol_received=quote.out_amount,
                reason=decision.reason,
                strategy_name=position.strategy_name,
                slippage_bps=self.settings.slippage_bps,
                prepared_transaction=prepared,
                expires_in_minutes=self.settings.pending_sell_expiry_minutes,
                stage_index=decision.stage_index,
                merged_buys=position.merged_buys,
            )
        except InvalidState as e:
            logger.debug(f"Pending sell not queued for {position.id}: {e}")
            return None
        self.alerts.notify(
            AlertSeverity.INFO,
            "Exit awaiting approval",
            f"{position.token_symbol or position.mint[:8]}: sell {sell.sell_percentage:g}% ({sell.reason})",
            {"pending_sell_id": sell.id, "wallet": position.wallet_key},
        )
        return sell

    def begin_pending_sell(self, sell_id: str) -> PendingSell:
        """Claim a pending sell for signing; returns it with its prepared transaction."""
        return self.pending_sells.mark_executing(sell_id)

    def confirm_pending_sell(self, sell_id: str, signature: str) -> Position:
        """
        Record a user-signed exit: mark the entry executed and apply the
        tokens its transaction sold to the ledger.

        Returns:
            The updated position (closed when nothing remains)

        Raises:
            PersistenceFailure, NotFound: The exit is on chain but could not
                be fully recorded (reported for manual reconciliation, then
                re-raised)
        """
        sell = self.pending_sells.mark_executed(sell_id, signature)
        try:
            position = self.ledger.apply_exit(
                sell.wallet_key, sell.mint, sell.token_amount,
                stage_index=sell.stage_index, merged_buys=sell.merged_buys,
            )
        except (PersistenceFailure, NotFound) as e:
            self._report_partial_execution(
                "pending_sell", sell.id, signature, e,
                {"position_id": sell.position_id, "tokens_sold": sell.token_amount},
            )
            raise
        self._record_fill("exit")
        return position

    def pending_for_wallet(self, wallet_key: str) -> Iterable[PendingSell]:
        return self.pending_sells.list_for_wallet(wallet_key, status="pending")
