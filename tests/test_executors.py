"""
Tests for the exit, limit-order and DCA executors driven by fake adapters.
"""

import logging
import threading

import pytest

from core.exceptions import InvalidState, NotFound
from core.position_ledger import Position
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from runner.dca_executor import DCAExecutor
from runner.exit_executor import ExitExecutor, ExitSettings
from runner.limit_order_executor import LimitOrderExecutor
from strategy.exit_strategies import DEFAULT_STRATEGIES
from tests.helpers import MINT, WALLET


@pytest.fixture
def alerts():
    return AlertService(
        AlertConfig(enabled=True, webhook_url=None, min_severity=AlertSeverity.INFO, dry_run=True, dedupe_seconds=0)
    )


def open_position(ledger, clock, tokens=100.0, cost=100.0, strategy="moderate", **kwargs):
    return ledger.open(
        Position(
            wallet_key=WALLET,
            mint=MINT,
            entry_time=clock.now(),
            entry_price=cost / tokens,
            token_amount=tokens,
            total_cost_basis=cost,
            strategy_name=strategy,
            **kwargs,
        )
    )


def make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=()):
    return ExitExecutor(
        ledger=ledger,
        pending_sells=pending_sells,
        strategies=DEFAULT_STRATEGIES,
        price_feed=feed,
        swap_executor=swaps,
        clock=clock,
        settings=ExitSettings(custodied_wallets=frozenset(custodied)),
        metrics=metrics,
        alerts=alerts,
    )


class TestExitSettings:
    def test_from_config(self):
        settings = ExitSettings.from_config(
            {
                "custodied_wallets": ["w1"], "slippage_bps": 250,
                "prepared_tx_lifetime_seconds": 60, "closing_timeout_seconds": 120,
            },
            {"expiry_minutes": 15, "retention_days": 3},
        )
        assert settings.custodied_wallets == frozenset({"w1"})
        assert settings.slippage_bps == 250
        assert settings.prepared_tx_lifetime_seconds == 60
        assert settings.pending_sell_expiry_minutes == 15
        assert settings.pending_sell_retention_days == 3
        assert settings.closing_timeout_seconds == 120

    def test_defaults(self):
        settings = ExitSettings.from_config(None)
        assert settings.slippage_bps == 300
        assert settings.pending_sell_expiry_minutes == 30
        assert settings.prepared_tx_lifetime_seconds == 90
        assert settings.closing_timeout_seconds == 300


class TestAutoExit:
    """Wallets the bot can sign for exit directly"""

    def test_stage_exit_executes_and_advances(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)

        assert executor.tick() == 1

        position = ledger.get_position(WALLET, MINT)
        assert position.token_amount == pytest.approx(75.0)
        assert position.exit_stages_completed == 1
        quote, signer = swaps.submitted[0]
        assert quote.in_amount == pytest.approx(25.0)
        assert signer == WALLET
        assert metrics.sample("autotrader_exit_decisions_total", {"reason": "stage 1", "route": "auto"}) == 1.0
        assert metrics.sample("autotrader_order_fills_total", {"kind": "exit"}) == 1.0
        assert pending_sells.list_pending() == []

    def test_no_exit_holds(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        feed.set_price(MINT, 1.1)
        assert executor.tick() == 0
        assert swaps.submitted == []
        assert ledger.get_position(WALLET, MINT).current_price == 1.1

    def test_stop_loss_closes(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        feed.set_price(MINT, 0.6)
        assert executor.tick() == 1
        assert ledger.get_position(WALLET, MINT) is None
        assert swaps.submitted[0][0].in_amount == pytest.approx(100.0)

    def test_private_position_signs_with_execution_wallet(
        self, ledger, pending_sells, feed, swaps, clock, metrics, alerts
    ):
        open_position(ledger, clock, is_private=True, execution_wallet_key="exec_wallet")
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        feed.set_price(MINT, 0.6)
        assert executor.tick() == 1
        assert swaps.submitted[0][1] == "exec_wallet"

    def test_submit_failure_reactivates(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        swaps.fail_submit = True
        feed.set_price(MINT, 0.6)

        assert executor.tick() == 0
        position = ledger.get_position(WALLET, MINT)
        assert position.status == "active"
        assert position.token_amount == 100.0
        assert metrics.sample("autotrader_execution_failures_total", {"kind": "exit", "stage": "submit"}) == 1.0
        assert alerts.sent_count == 1

    def test_quote_failure_retries_next_tick(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        swaps.fail_quote = True
        feed.set_price(MINT, 0.6)
        assert executor.tick() == 0
        assert ledger.get_position(WALLET, MINT).status == "active"

        swaps.fail_quote = False
        assert executor.tick() == 1
        assert ledger.get_position(WALLET, MINT) is None

    def test_partial_execution_is_reported(
        self, ledger, pending_sells, feed, swaps, clock, metrics, alerts, store, caplog
    ):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)
        store.fail("positions")

        with caplog.at_level(logging.CRITICAL, logger="runner.executor_base"):
            assert executor.tick() == 1

        assert len(swaps.submitted) == 1
        assert metrics.sample("autotrader_partial_executions_total", {"kind": "exit"}) == 1.0
        assert metrics.sample("autotrader_order_fills_total", {"kind": "exit"}) is None
        assert alerts.sent_count == 1
        assert any("PARTIAL EXECUTION" in r.getMessage() for r in caplog.records)

    def test_feed_outage_skips_tick(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        feed.fail = True
        assert executor.tick() == 0
        assert metrics.sample("autotrader_execution_failures_total", {"kind": "price_feed", "stage": "fetch"}) == 1.0

    def test_full_stage_run_sells_whole_position(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        position = open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])

        for price in (1.6, 2.1, 3.1, 4.1):
            clock.advance(minutes=5)
            feed.set_price(MINT, price)
            assert executor.tick() == 1

        sold = [quote.in_amount for quote, _ in swaps.submitted]
        assert sold == pytest.approx([25.0, 25.0, 25.0, 25.0])
        assert ledger.get_position(WALLET, MINT) is None
        assert ledger.all_positions(status="closed")[0].id == position.id

    def test_buy_merged_while_submitting_is_kept(
        self, ledger, pending_sells, feed, swaps, clock, metrics, alerts
    ):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)

        def merge_during_submit(quote, signer):
            swaps.on_submit = None
            ledger.merge_buy(WALLET, MINT, 100.0, 160.0, 1.6)

        swaps.on_submit = merge_during_submit
        assert executor.tick() == 1

        position = ledger.get_position(WALLET, MINT)
        assert position.token_amount == pytest.approx(175.0)
        assert position.exit_stages_completed == 0
        assert position.stage_base_tokens == pytest.approx(200.0)

    def test_concurrent_buy_waits_for_exit_to_be_recorded(
        self, ledger, pending_sells, feed, swaps, clock, metrics, alerts
    ):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)
        merged = threading.Event()
        blocked_while_submitting = []

        def buy_loop():
            ledger.merge_buy(WALLET, MINT, 100.0, 160.0, 1.6)
            merged.set()

        worker = threading.Thread(target=buy_loop)

        def start_buy(quote, signer):
            swaps.on_submit = None
            worker.start()
            blocked_while_submitting.append(not merged.wait(timeout=0.2))

        swaps.on_submit = start_buy
        assert executor.tick() == 1
        worker.join(timeout=5)

        assert blocked_while_submitting == [True]
        assert merged.is_set()
        position = ledger.get_position(WALLET, MINT)
        assert position.token_amount == pytest.approx(175.0)
        assert position.exit_stages_completed == 0
        assert position.merged_buys == 1

    def test_stuck_closing_position_is_alerted(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts, custodied=[WALLET])
        # left closing by an interrupted exit
        ledger.mark_closing(WALLET, MINT)
        feed.set_price(MINT, 0.6)

        assert executor.tick() == 0
        assert metrics.sample("autotrader_stuck_closing_positions") == 0.0
        assert alerts.sent_count == 0

        clock.advance(minutes=6)
        assert executor.tick() == 0
        assert metrics.sample("autotrader_stuck_closing_positions") == 1.0
        assert alerts.sent_count == 1
        assert swaps.submitted == []
        assert ledger.get_position(WALLET, MINT).status == "closing"

        ledger.reactivate(WALLET, MINT)
        assert executor.tick() == 1
        assert ledger.get_position(WALLET, MINT) is None
        assert metrics.sample("autotrader_stuck_closing_positions") == 0.0


class TestApprovalExit:
    """Wallets without a bot key get a pending sell"""

    def test_trigger_queues_pending_sell(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        position = open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)

        assert executor.tick() == 1

        sell = pending_sells.find_pending(WALLET, MINT)
        assert sell.position_id == position.id
        assert sell.sell_percentage == 25
        assert sell.token_amount == pytest.approx(25.0)
        assert sell.estimated_sol_received == pytest.approx(0.4)
        assert sell.prepared_transaction == "unsigned-tx-1"
        assert sell.reason == "stage 1"
        assert swaps.submitted == []
        # position untouched until the user signs
        assert ledger.get_position(WALLET, MINT).token_amount == 100.0
        assert metrics.sample("autotrader_exit_decisions_total", {"reason": "stage 1", "route": "approval"}) == 1.0

    def test_fresh_entry_not_duplicated(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)
        executor.tick()
        clock.advance(seconds=30)

        assert executor.tick() == 0
        assert len(pending_sells.list_for_wallet(WALLET)) == 1
        assert len(swaps.prepared) == 1

    def test_stale_prepared_transaction_is_refreshed(
        self, ledger, pending_sells, feed, swaps, clock, metrics, alerts
    ):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)
        executor.tick()
        first = pending_sells.find_pending(WALLET, MINT)
        clock.advance(seconds=91)

        assert executor.tick() == 1

        assert pending_sells.get(first.id).status == "cancelled"
        refreshed = pending_sells.find_pending(WALLET, MINT)
        assert refreshed.id != first.id
        assert refreshed.prepared_transaction == "unsigned-tx-2"

    def test_executing_entry_is_not_refreshed(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)
        executor.tick()
        sell = pending_sells.find_pending(WALLET, MINT)
        executor.begin_pending_sell(sell.id)
        clock.advance(seconds=120)

        assert executor.tick() == 0
        assert len(pending_sells.list_for_wallet(WALLET)) == 1

    def test_confirm_applies_exit(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)
        executor.tick()
        sell = pending_sells.find_pending(WALLET, MINT)

        claimed = executor.begin_pending_sell(sell.id)
        assert claimed.prepared_transaction == "unsigned-tx-1"
        position = executor.confirm_pending_sell(sell.id, "user-sig")

        assert position.token_amount == pytest.approx(75.0)
        assert position.exit_stages_completed == 1
        assert pending_sells.get(sell.id).signature == "user-sig"
        assert list(executor.pending_for_wallet(WALLET)) == []

    def test_confirm_requires_claim(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        feed.set_price(MINT, 0.6)
        executor.tick()
        sell = pending_sells.find_pending(WALLET, MINT)
        with pytest.raises(InvalidState):
            executor.confirm_pending_sell(sell.id, "user-sig")

    def test_prepare_failure_queues_nothing(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        swaps.fail_prepare = True
        feed.set_price(MINT, 0.6)
        assert executor.tick() == 0
        assert pending_sells.list_pending() == []
        assert metrics.sample("autotrader_execution_failures_total", {"kind": "exit", "stage": "prepare"}) == 1.0

    def test_overdue_entries_expire_on_tick(self, ledger, pending_sells, feed, swaps, clock, metrics, alerts):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        feed.set_price(MINT, 0.6)
        executor.tick()
        sell = pending_sells.find_pending(WALLET, MINT)

        # position closed elsewhere; nothing re-triggers the exit
        ledger.close(WALLET, MINT)
        clock.advance(minutes=31)
        executor.tick()
        assert pending_sells.get(sell.id).status == "expired"

    def test_confirm_after_merge_keeps_merged_tokens(
        self, ledger, pending_sells, feed, swaps, clock, metrics, alerts
    ):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        clock.advance(minutes=5)
        feed.set_price(MINT, 1.6)
        executor.tick()
        sell = pending_sells.find_pending(WALLET, MINT)
        assert sell.stage_index == 0

        ledger.merge_buy(WALLET, MINT, 100.0, 160.0, 1.6)
        executor.begin_pending_sell(sell.id)
        position = executor.confirm_pending_sell(sell.id, "user-sig")

        assert position.token_amount == pytest.approx(175.0)
        assert position.exit_stages_completed == 0

    def test_confirm_without_position_is_partial_execution(
        self, ledger, pending_sells, feed, swaps, clock, metrics, alerts, caplog
    ):
        open_position(ledger, clock)
        executor = make_exit_executor(ledger, pending_sells, feed, swaps, clock, metrics, alerts)
        feed.set_price(MINT, 0.6)
        executor.tick()
        sell = pending_sells.find_pending(WALLET, MINT)
        executor.begin_pending_sell(sell.id)
        ledger.close(WALLET, MINT)

        with caplog.at_level(logging.CRITICAL, logger="runner.executor_base"):
            with pytest.raises(NotFound):
                executor.confirm_pending_sell(sell.id, "user-sig")

        assert pending_sells.get(sell.id).status == "executed"
        assert metrics.sample("autotrader_partial_executions_total", {"kind": "pending_sell"}) == 1.0
        assert any("PARTIAL EXECUTION" in r.getMessage() for r in caplog.records)


class TestLimitOrderExecutor:
    @pytest.fixture
    def executor(self, limit_orders, ledger, feed, swaps, clock, metrics, alerts):
        return LimitOrderExecutor(limit_orders, ledger, feed, swaps, clock, metrics=metrics, alerts=alerts)

    def test_buy_waits_for_target(self, executor, limit_orders):
        order = limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0)
        assert executor.tick() == 0
        assert limit_orders.get(order.id).status == "pending"

    def test_buy_fill_opens_position(self, executor, limit_orders, ledger, feed, metrics):
        order = limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0, exit_strategy="swing")
        feed.set_price(MINT, 0.5)

        assert executor.tick() == 1

        filled = limit_orders.get(order.id)
        assert filled.status == "filled"
        assert filled.signature == "sig-1"
        position = ledger.get_position(WALLET, MINT)
        assert position.token_amount == pytest.approx(200.0)
        assert position.total_cost_basis == pytest.approx(100.0)
        assert position.entry_price == pytest.approx(0.5)
        assert position.strategy_name == "swing"
        assert position.sol_spent == pytest.approx(1.0)
        assert metrics.sample("autotrader_order_fills_total", {"kind": "limit_buy"}) == 1.0

    def test_buy_fill_merges_into_position(self, executor, limit_orders, ledger, clock, feed):
        open_position(ledger, clock, tokens=100.0, cost=100.0)
        limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0)
        feed.set_price(MINT, 0.5)
        executor.tick()
        position = ledger.get_position(WALLET, MINT)
        assert position.token_amount == pytest.approx(300.0)
        assert position.total_cost_basis == pytest.approx(200.0)

    def test_sell_fill_reduces_position(self, executor, limit_orders, ledger, clock, feed, metrics):
        open_position(ledger, clock, tokens=100.0, cost=100.0)
        order = limit_orders.create(WALLET, MINT, target_price=2.0, amount=40.0, side="SELL")
        feed.set_price(MINT, 2.0)

        assert executor.tick() == 1

        assert limit_orders.get(order.id).status == "filled"
        position = ledger.get_position(WALLET, MINT)
        assert position.token_amount == pytest.approx(60.0)
        assert position.entry_price == pytest.approx(1.0)
        assert metrics.sample("autotrader_order_fills_total", {"kind": "limit_sell"}) == 1.0

    def test_sell_without_position_still_fills(self, executor, limit_orders, ledger, feed):
        order = limit_orders.create(WALLET, MINT, target_price=2.0, amount=40.0, side="SELL")
        feed.set_price(MINT, 2.5)
        assert executor.tick() == 1
        assert limit_orders.get(order.id).status == "filled"
        assert ledger.get_position(WALLET, MINT) is None

    def test_quote_failure_keeps_order_pending(self, executor, limit_orders, swaps, feed):
        order = limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0)
        feed.set_price(MINT, 0.4)
        swaps.fail_quote = True
        assert executor.tick() == 0
        assert limit_orders.get(order.id).status == "pending"

    def test_submit_failure_leaves_order_executing(self, executor, limit_orders, swaps, feed, alerts):
        order = limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0)
        feed.set_price(MINT, 0.4)
        swaps.fail_submit = True

        assert executor.tick() == 0

        stuck = limit_orders.get(order.id)
        assert stuck.status == "executing"
        assert "rpc timeout" in stuck.error
        assert alerts.sent_count == 1
        # never picked up again until an operator requeues it
        swaps.fail_submit = False
        assert executor.tick() == 0
        limit_orders.requeue(order.id, reason="not on chain")
        assert executor.tick() == 1

    def test_expired_order_never_fills(self, executor, limit_orders, feed, clock):
        order = limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0, expires_in_minutes=10)
        clock.advance(minutes=11)
        feed.set_price(MINT, 0.1)
        assert executor.tick() == 0
        assert limit_orders.get(order.id).status == "expired"

    def test_fill_into_closing_position_is_partial_execution(
        self, executor, limit_orders, ledger, clock, feed, metrics
    ):
        open_position(ledger, clock)
        ledger.mark_closing(WALLET, MINT)
        order = limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0)
        feed.set_price(MINT, 0.5)

        assert executor.tick() == 1

        assert limit_orders.get(order.id).status == "filled"
        assert metrics.sample("autotrader_partial_executions_total", {"kind": "limit"}) == 1.0

    def test_one_price_lookup_per_mint(self, executor, limit_orders, feed):
        limit_orders.create(WALLET, MINT, target_price=0.5, amount=1.0)
        limit_orders.create("wallet_B", MINT, target_price=0.6, amount=1.0)
        executor.tick()
        assert feed.calls == [(MINT,)]


class TestDCAExecutor:
    @pytest.fixture
    def executor(self, dca_orders, ledger, feed, swaps, clock, metrics, alerts):
        return DCAExecutor(dca_orders, ledger, feed, swaps, clock, metrics=metrics, alerts=alerts)

    def test_runs_to_completion(self, executor, dca_orders, ledger, clock, metrics):
        order = dca_orders.create(WALLET, MINT, total_budget=1.0, number_of_buys=4, interval_minutes=60)

        for buy in range(1, 5):
            assert executor.tick() == 1
            assert executor.tick() == 0  # not due again until the interval passes
            assert dca_orders.get(order.id).current_buy_index == buy
            clock.advance(minutes=60)

        done = dca_orders.get(order.id)
        assert done.status == "completed"
        assert done.next_buy_at is None
        assert dca_orders.total_spent(order.id) == pytest.approx(1.0)
        position = ledger.get_position(WALLET, MINT)
        assert position.token_amount == pytest.approx(100.0)
        assert position.strategy_name == "dca"
        assert position.sol_spent == pytest.approx(1.0)
        assert metrics.sample("autotrader_order_fills_total", {"kind": "dca_buy"}) == 4.0
        assert executor.tick() == 0

    def test_private_order_signs_with_execution_wallet(self, executor, dca_orders, ledger, swaps):
        order = dca_orders.create(
            WALLET, MINT, 1.0, 4, 60, is_private=True, execution_wallet_key="exec_wallet",
        )
        assert executor.tick() == 1

        assert swaps.submitted[0][1] == "exec_wallet"
        assert dca_orders.get(order.id).executions[0].execution_wallet_key == "exec_wallet"
        position = ledger.get_position(WALLET, MINT)
        assert position.is_private
        assert position.execution_wallet_key == "exec_wallet"

    def test_public_order_ignores_execution_wallet(self, executor, dca_orders, swaps):
        dca_orders.create(WALLET, MINT, 1.0, 4, 60, execution_wallet_key="exec_wallet")
        executor.tick()
        assert swaps.submitted[0][1] == WALLET

    def test_price_based_sizing_uses_feed_price(self, executor, dca_orders, feed, swaps):
        dca_orders.create(WALLET, MINT, 1.0, 5, 60, strategy_type="price-based", reference_price=2.0)
        executor.tick()
        assert swaps.submitted[0][0].in_amount == pytest.approx(0.4)

    def test_quote_failure_retries(self, executor, dca_orders, swaps):
        order = dca_orders.create(WALLET, MINT, 1.0, 4, 60)
        swaps.fail_quote = True
        assert executor.tick() == 0
        assert dca_orders.is_due(order.id)
        swaps.fail_quote = False
        assert executor.tick() == 1

    def test_submit_failure_records_nothing(self, executor, dca_orders, ledger, swaps, alerts):
        order = dca_orders.create(WALLET, MINT, 1.0, 4, 60)
        swaps.fail_submit = True
        assert executor.tick() == 0
        assert dca_orders.get(order.id).current_buy_index == 0
        assert ledger.get_position(WALLET, MINT) is None
        assert alerts.sent_count == 1

    def test_paused_order_skipped(self, executor, dca_orders, swaps):
        order = dca_orders.create(WALLET, MINT, 1.0, 4, 60)
        dca_orders.pause(order.id)
        assert executor.tick() == 0
        assert swaps.quotes == []

    def test_ledger_failure_is_partial_execution(self, executor, dca_orders, store, metrics):
        order = dca_orders.create(WALLET, MINT, 1.0, 4, 60)
        store.fail("positions")
        assert executor.tick() == 1
        assert dca_orders.get(order.id).current_buy_index == 1
        assert metrics.sample("autotrader_partial_executions_total", {"kind": "dca"}) == 1.0
