"""Test helpers for the exit and standing-order engine test suite"""

from tests.helpers.fakes import (
    MINT,
    OTHER_MINT,
    SOL_PRICE_USD,
    WALLET,
    FailingStore,
    FakePriceFeed,
    FakeSwapExecutor,
)

__all__ = [
    "MINT",
    "OTHER_MINT",
    "SOL_PRICE_USD",
    "WALLET",
    "FailingStore",
    "FakePriceFeed",
    "FakeSwapExecutor",
]
