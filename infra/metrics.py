"""Prometheus-backed metrics for the scheduler loops, exits and order fills."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class TickStats:
    loop: str
    status: str  # "ok" | "error" | "idle"
    processed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose loop and execution stats via Prometheus.

    Every recorder owns its own CollectorRegistry, so several runtimes (or
    tests) in one process never collide on metric names.
    """

    def __init__(self, enabled: bool = True, port: Optional[int] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = CollectorRegistry()
        self._last_ticks: Dict[str, TickStats] = {}

        self._tick_counter = Counter(
            "autotrader_loop_ticks_total",
            "Scheduler ticks by loop and status",
            labelnames=("loop", "status"),
            registry=self.registry,
        )
        self._tick_summary = Summary(
            "autotrader_loop_tick_duration_seconds",
            "Duration of a scheduler tick",
            labelnames=("loop",),
            registry=self.registry,
        )
        self._exit_counter = Counter(
            "autotrader_exit_decisions_total",
            "Exit triggers by reason and execution route",
            labelnames=("reason", "route"),
            registry=self.registry,
        )
        self._fills_counter = Counter(
            "autotrader_order_fills_total",
            "Filled orders by kind (limit_buy, limit_sell, dca_buy, exit)",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._failures_counter = Counter(
            "autotrader_execution_failures_total",
            "Quote/submit failures by kind and stage",
            labelnames=("kind", "stage"),
            registry=self.registry,
        )
        self._partial_counter = Counter(
            "autotrader_partial_executions_total",
            "Swaps submitted whose outcome could not be persisted",
            labelnames=("kind",),
            registry=self.registry,
        )
        self._persist_fail_counter = Counter(
            "autotrader_best_effort_write_failures_total",
            "Dropped best-effort writes by collection",
            labelnames=("collection",),
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "autotrader_open_positions",
            "Open positions in the ledger",
            registry=self.registry,
        )
        self._queue_gauge = Gauge(
            "autotrader_standing_orders",
            "Standing orders by kind and status",
            labelnames=("kind", "status"),
            registry=self.registry,
        )
        self._stuck_closing_gauge = Gauge(
            "autotrader_stuck_closing_positions",
            "Positions closing for longer than the closing timeout",
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        """Start the HTTP exporter once, if a port is configured."""
        if not self._enabled or self._started or not self._port:
            return
        start_http_server(self._port, registry=self.registry)
        self._started = True
        logger.info(f"Prometheus exporter listening on :{self._port}")

    def record_tick(self, stats: TickStats) -> None:
        self._last_ticks[stats.loop] = stats
        if not self._enabled:
            return
        self._tick_counter.labels(loop=stats.loop, status=stats.status).inc()
        self._tick_summary.labels(loop=stats.loop).observe(stats.duration_seconds)

    def record_exit(self, reason: str, route: str) -> None:
        if self._enabled:
            self._exit_counter.labels(reason=reason, route=route).inc()

    def record_fill(self, kind: str) -> None:
        if self._enabled:
            self._fills_counter.labels(kind=kind).inc()

    def record_failure(self, kind: str, stage: str) -> None:
        if self._enabled:
            self._failures_counter.labels(kind=kind, stage=stage).inc()

    def record_partial_execution(self, kind: str) -> None:
        if self._enabled:
            self._partial_counter.labels(kind=kind).inc()

    def record_best_effort_failure(self, collection: str, key: str, error: Exception) -> None:
        if self._enabled:
            self._persist_fail_counter.labels(collection=collection).inc()

    def set_open_positions(self, count: int) -> None:
        if self._enabled:
            self._positions_gauge.set(count)

    def set_stuck_closing(self, count: int) -> None:
        if self._enabled:
            self._stuck_closing_gauge.set(count)

    def set_standing_orders(self, kind: str, stats: Dict[str, int]) -> None:
        if not self._enabled:
            return
        for status, value in stats.items():
            if status == "total" or not isinstance(value, int):
                continue
            self._queue_gauge.labels(kind=kind, status=status).set(value)

    def last_tick(self, loop: str) -> Optional[TickStats]:
        return self._last_ticks.get(loop)

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value of a metric sample (used by tests and status output)."""
        return self.registry.get_sample_value(name, labels or {})
