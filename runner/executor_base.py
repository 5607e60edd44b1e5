"""Shared plumbing for the exit, limit-order and DCA executors."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, TypeVar

from core.exceptions import ExternalFailure
from core.interfaces import Clock, PriceFeed, SwapExecutor
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLEANUP_EVERY = timedelta(days=1)


class BaseExecutor(ABC):
    """
    One scheduler loop's worth of work.

    Subclasses implement tick(), which returns how many entities it acted on.
    External calls go through _external() so any adapter error reaches the
    tick as ExternalFailure.
    """

    name = "executor"

    def __init__(
        self,
        price_feed: PriceFeed,
        swap_executor: SwapExecutor,
        clock: Clock,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
    ):
        self.price_feed = price_feed
        self.swap_executor = swap_executor
        self.clock = clock
        self.metrics = metrics
        self.alerts = alerts or AlertService.disabled()
        self._last_cleanup: Optional[datetime] = None

    @abstractmethod
    def tick(self) -> int:
        """Process everything that is ready right now."""

    def _external(self, source: str, fn: Callable[..., T], *args, **kwargs) -> T:
        try:
            return fn(*args, **kwargs)
        except ExternalFailure:
            raise
        except Exception as e:
            raise ExternalFailure(source, e) from e

    def _fetch_prices(self, mints) -> Dict[str, float]:
        """One price lookup per distinct mint; empty on feed failure."""
        mints = sorted(set(mints))
        if not mints:
            return {}
        try:
            return self._external("price_feed", self.price_feed.get_prices, mints)
        except ExternalFailure as e:
            logger.warning(f"[{self.name}] price fetch failed for {len(mints)} mint(s): {e}")
            self._record_failure("price_feed", "fetch")
            return {}

    def _cleanup_due(self) -> bool:
        now = self.clock.now()
        if self._last_cleanup is None:
            self._last_cleanup = now
            return False
        if now - self._last_cleanup >= CLEANUP_EVERY:
            self._last_cleanup = now
            return True
        return False

    def _record_failure(self, kind: str, stage: str) -> None:
        if self.metrics is not None:
            self.metrics.record_failure(kind, stage)

    def _record_fill(self, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.record_fill(kind)

    def _report_partial_execution(
        self,
        kind: str,
        entity_id: str,
        signature: str,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        A swap was submitted but its outcome could not be recorded.

        Needs manual reconciliation against the chain; everything required
        for that goes into the log line and the alert.
        """
        details = {"kind": kind, "entity_id": entity_id, "signature": signature, "error": str(error)}
        details.update(context or {})
        logger.critical(
            f"PARTIAL EXECUTION [{kind}] {entity_id}: swap {signature} submitted but not recorded "
            f"({error}); manual reconciliation required | {details}"
        )
        if self.metrics is not None:
            self.metrics.record_partial_execution(kind)
        self.alerts.notify(
            AlertSeverity.CRITICAL,
            f"Partial execution: {kind}",
            f"{entity_id} submitted as {signature} but not recorded",
            details,
        )
