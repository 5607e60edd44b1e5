"""
Tests for DCA orders: sizing, scheduling, completion and lifecycle.
"""

from datetime import timedelta

import pytest

from core.dca_orders import BuyExecution, DCAOrderManager, DCAStatus
from core.exceptions import InvalidState, ValidationError
from tests.helpers import MINT, WALLET


def record_buy(manager, clock, order_id, spent, received, price=1.0):
    order = manager.get(order_id)
    return manager.record_buy_execution(
        order_id,
        BuyExecution(
            index=order.current_buy_index + 1,
            timestamp=clock.now(),
            spent=spent,
            received=received,
            price=price,
            tx_ref=f"sig-{order.current_buy_index + 1}",
        ),
    )


class TestCreate:
    def test_first_buy_due_immediately(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, total_budget=1.0, number_of_buys=5, interval_minutes=60)
        assert order.status == DCAStatus.ACTIVE.value
        assert order.next_buy_at == clock.now()
        assert [o.id for o in dca_orders.get_ready_for_buy()] == [order.id]

    @pytest.mark.parametrize("kwargs", [
        {"total_budget": 1.0, "number_of_buys": 1, "interval_minutes": 60},
        {"total_budget": 1.0, "number_of_buys": 101, "interval_minutes": 60},
        {"total_budget": 1.0, "number_of_buys": 5, "interval_minutes": 0.5},
        {"total_budget": 0, "number_of_buys": 5, "interval_minutes": 60},
        {"total_budget": 1.0, "number_of_buys": 5, "interval_minutes": 60, "strategy_type": "random"},
    ])
    def test_invalid_input(self, dca_orders, kwargs):
        with pytest.raises(ValidationError):
            dca_orders.create(WALLET, MINT, **kwargs)

    def test_bounds_are_inclusive(self, dca_orders):
        dca_orders.create(WALLET, MINT, total_budget=1.0, number_of_buys=2, interval_minutes=1)
        dca_orders.create(WALLET, MINT, total_budget=1.0, number_of_buys=100, interval_minutes=1)


class TestNextBuyAmount:
    def test_even_split_without_reference_price(self, dca_orders):
        order = dca_orders.create(WALLET, MINT, total_budget=1.0, number_of_buys=5, interval_minutes=60)
        for price in (None, 0.01, 0.05, 10.0):
            assert dca_orders.calculate_next_buy_amount(order, price) == pytest.approx(0.2)

    def test_price_based_without_reference_is_even_split(self, dca_orders):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60, strategy_type="price-based")
        assert dca_orders.calculate_next_buy_amount(order, 0.025) == pytest.approx(0.2)

    def test_price_drop_doubles_amount_at_cap(self, dca_orders):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60, strategy_type="price-based", reference_price=0.05)
        assert dca_orders.calculate_next_buy_amount(order, 0.025) == pytest.approx(0.4)

    def test_price_rise_halves_amount_at_floor(self, dca_orders):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60, strategy_type="price-based", reference_price=0.05)
        assert dca_orders.calculate_next_buy_amount(order, 0.1) == pytest.approx(0.1)

    def test_small_move_scales_linearly(self, dca_orders):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60, strategy_type="price-based", reference_price=1.0)
        # -10% move -> factor 1.2
        assert dca_orders.calculate_next_buy_amount(order, 0.9) == pytest.approx(0.24)

    @pytest.mark.parametrize("price", [0.0001, 0.01, 0.04, 0.05, 0.06, 0.5, 50.0])
    def test_amount_always_within_clamp(self, dca_orders, price):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60, strategy_type="price-based", reference_price=0.05)
        amount = dca_orders.calculate_next_buy_amount(order, price)
        assert 0.1 - 1e-12 <= amount <= 0.4 + 1e-12

    def test_never_exceeds_remaining_budget(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 2, 60, strategy_type="price-based", reference_price=1.0)
        record_buy(dca_orders, clock, order.id, spent=0.9, received=0.9)
        order = dca_orders.get(order.id)
        assert dca_orders.calculate_next_buy_amount(order, 0.1) == pytest.approx(0.1)


class TestExecution:
    def test_record_schedules_next_buy(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, interval_minutes=60)
        updated = record_buy(dca_orders, clock, order.id, 0.2, 200.0)
        assert updated.current_buy_index == 1
        assert updated.next_buy_at == clock.now() + timedelta(minutes=60)
        assert dca_orders.get_ready_for_buy() == []
        clock.advance(minutes=60)
        assert dca_orders.is_due(order.id)

    def test_completes_exactly_at_number_of_buys(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 3, interval_minutes=1)
        for i in range(3):
            updated = record_buy(dca_orders, clock, order.id, 1.0 / 3, 10.0)
            clock.advance(minutes=1)
            if i < 2:
                assert updated.status == DCAStatus.ACTIVE.value
        assert updated.status == DCAStatus.COMPLETED.value
        assert updated.current_buy_index == 3
        assert updated.next_buy_at is None
        assert dca_orders.get_ready_for_buy() == []

    def test_out_of_sequence_index_rejected(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60)
        with pytest.raises(InvalidState):
            dca_orders.record_buy_execution(
                order.id, BuyExecution(index=2, timestamp=clock.now(), spent=0.2, received=1.0, price=1.0, tx_ref="x"),
            )

    def test_cannot_record_on_paused_order(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60)
        dca_orders.pause(order.id)
        with pytest.raises(InvalidState):
            record_buy(dca_orders, clock, order.id, 0.2, 1.0)

    def test_progress_helpers(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 4, 30)
        record_buy(dca_orders, clock, order.id, 0.25, 50.0)
        record_buy(dca_orders, clock, order.id, 0.25, 25.0)
        assert dca_orders.total_spent(order.id) == pytest.approx(0.5)
        assert dca_orders.remaining_budget(order.id) == pytest.approx(0.5)
        assert dca_orders.average_entry_price(order.id) == pytest.approx(0.5 / 75.0)
        assert dca_orders.progress(order.id) == pytest.approx(50.0)
        assert dca_orders.estimated_completion(order.id) == clock.now() + timedelta(minutes=60)


class TestLifecycle:
    def test_pause_and_resume(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60)
        dca_orders.pause(order.id)
        assert dca_orders.get_ready_for_buy() == []
        clock.advance(minutes=5)
        resumed = dca_orders.resume(order.id)
        assert resumed.status == "active"
        assert resumed.next_buy_at == clock.now() + timedelta(minutes=60)

    def test_resume_requires_paused(self, dca_orders):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60)
        with pytest.raises(InvalidState):
            dca_orders.resume(order.id)

    def test_cancel(self, dca_orders):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60)
        assert dca_orders.cancel(order.id) is True
        cancelled = dca_orders.get(order.id)
        assert cancelled.status == "cancelled"
        assert cancelled.next_buy_at is None
        assert dca_orders.cancel(order.id) is False

    def test_cleanup_respects_retention(self, dca_orders, clock):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60)
        dca_orders.cancel(order.id)
        clock.advance(days=29)
        assert dca_orders.cleanup() == 0
        clock.advance(days=2)
        assert dca_orders.cleanup() == 1

    def test_load_restores_executions(self, store, clock, dca_orders):
        order = dca_orders.create(WALLET, MINT, 1.0, 5, 60)
        record_buy(dca_orders, clock, order.id, 0.2, 100.0, price=0.2)
        restarted = DCAOrderManager(store, clock)
        restarted.load()
        restored = restarted.get(order.id)
        assert restored.current_buy_index == 1
        assert restored.executions[0].tx_ref == "sig-1"
        assert restored.executions[0].timestamp == clock.now()
