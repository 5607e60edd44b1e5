"""
Pytest configuration and fixtures for the exit and standing-order engine.

Every fixture builds fresh objects: there are no process-wide singletons to
reset between tests.
"""
from datetime import datetime, timezone

import pytest

from core.dca_orders import DCAOrderManager
from core.limit_orders import LimitOrderManager
from core.pending_sells import PendingSellQueue
from core.position_ledger import PositionLedger
from infra.clock import ManualClock
from infra.metrics import MetricsRecorder
from tests.helpers import MINT, OTHER_MINT, FailingStore, FakePriceFeed, FakeSwapExecutor


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return FailingStore()


@pytest.fixture
def ledger(store, clock):
    return PositionLedger(store, clock)


@pytest.fixture
def limit_orders(store, clock):
    return LimitOrderManager(store, clock)


@pytest.fixture
def dca_orders(store, clock):
    return DCAOrderManager(store, clock)


@pytest.fixture
def pending_sells(store, clock):
    return PendingSellQueue(store, clock)


@pytest.fixture
def feed():
    return FakePriceFeed({MINT: 1.0, OTHER_MINT: 2.0})


@pytest.fixture
def swaps(feed):
    return FakeSwapExecutor(feed)


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=True)
