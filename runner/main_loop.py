"""
Runner: Main Loop

Wires the ledger, order managers, adapters and executors together and runs
the three scheduler loops:

- price_tick   (default 5s)   position prices, exit decisions, pending sells
- limit_orders (default 30s)  price-triggered limit orders
- dca          (default 60s)  due DCA buys

Modes:
- DRY_RUN: in-memory ledger, simulated swaps
- PAPER:   configured ledger store, simulated swaps
- LIVE:    configured ledger store, swaps through an injected SwapExecutor
"""

import argparse
import logging
import signal
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.dca_orders import DCAOrderManager
from core.interfaces import Clock, LedgerStore, PriceFeed, SwapExecutor
from core.limit_orders import LimitOrderManager
from core.pending_sells import PendingSellQueue
from core.position_ledger import PositionLedger
from infra.alerting import AlertService
from infra.clock import SystemClock
from infra.instance_lock import SingleInstanceLock
from infra.metrics import MetricsRecorder, TickStats
from infra.paper_swap import PaperSwapExecutor
from infra.price_feed import DEXSCREENER_API, DexScreenerPriceFeed
from infra.state_store import BestEffortWriter, InMemoryLedgerStore, JsonLedgerStore, create_ledger_store
from runner.dca_executor import DCAExecutor
from runner.exit_executor import ExitExecutor, ExitSettings
from runner.limit_order_executor import LimitOrderExecutor
from runner.scheduler import PeriodicLoop
from strategy.exit_strategies import DEFAULT_STRATEGIES, StrategyTable

logger = logging.getLogger(__name__)

ALLOWED_MODES = {"DRY_RUN", "PAPER", "LIVE"}


class AutoTrader:
    """
    Runtime object owning every component; there are no module-level
    singletons, so several instances (e.g. in tests) can coexist.
    """

    def __init__(
        self,
        config_dir: str = "config",
        mode: Optional[str] = None,
        swap_executor: Optional[SwapExecutor] = None,
        price_feed: Optional[PriceFeed] = None,
        clock: Optional[Clock] = None,
        store: Optional[LedgerStore] = None,
        configure_logging: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml") or {}
        self.strategies_config = self._load_yaml("strategies.yaml", required=False) or {}

        self.mode = (mode or self.app_config.get("app", {}).get("mode", "DRY_RUN")).upper()
        if self.mode not in ALLOWED_MODES:
            raise ValueError(f"Invalid mode: {self.mode}")

        if configure_logging:
            self._configure_logging(self.app_config.get("logging") or {})
        logger.info(f"Starting autotrader in mode={self.mode}")

        self.clock = clock or SystemClock()

        metrics_cfg = self.app_config.get("metrics") or {}
        self.metrics = MetricsRecorder(
            enabled=metrics_cfg.get("enabled", True),
            port=metrics_cfg.get("port"),
        )
        self.alerts = AlertService.from_config(self.app_config.get("alerts"))

        # Ledger store + single-writer lock on its directory
        store_cfg = self.app_config.get("store") or {}
        self.instance_lock: Optional[SingleInstanceLock] = None
        if store is not None:
            self.store = store
        elif self.mode == "DRY_RUN":
            self.store = InMemoryLedgerStore()
        else:
            self.store = create_ledger_store(store_cfg)
        if isinstance(self.store, JsonLedgerStore):
            self.instance_lock = SingleInstanceLock("autotrader", lock_dir=str(self.store.data_dir))
            if not self.instance_lock.acquire():
                raise RuntimeError(f"Another instance is using the ledger at {self.store.data_dir}")

        self.writer = BestEffortWriter(
            self.store,
            flush_interval=float(store_cfg.get("flush_interval_seconds", 2.0)),
            on_failure=self.metrics.record_best_effort_failure,
        )

        # Strategy table: built-ins plus overrides from strategies.yaml
        self.strategies: StrategyTable = DEFAULT_STRATEGIES.with_overrides(
            self.strategies_config.get("strategies")
        )

        # Ledger + managers
        limit_cfg = self.app_config.get("limit_orders") or {}
        dca_cfg = self.app_config.get("dca") or {}
        pending_cfg = self.app_config.get("pending_sells") or {}
        exits_cfg = self.app_config.get("exits") or {}

        self.ledger = PositionLedger(self.store, self.clock, writer=self.writer)
        self.limit_orders = LimitOrderManager(
            self.store, self.clock, default_slippage_bps=limit_cfg.get("default_slippage_bps", 200),
        )
        self.dca_orders = DCAOrderManager(
            self.store, self.clock, default_slippage_bps=dca_cfg.get("default_slippage_bps", 200),
        )
        self.pending_sells = PendingSellQueue(
            self.store, self.clock, expiry_minutes=pending_cfg.get("expiry_minutes", 30),
        )

        # Adapters
        feed_cfg = self.app_config.get("price_feed") or {}
        self.price_feed = price_feed or DexScreenerPriceFeed(
            base_url=feed_cfg.get("base_url", DEXSCREENER_API),
            timeout=float(feed_cfg.get("timeout_seconds", 10.0)),
            cache_ttl_seconds=float(feed_cfg.get("cache_ttl_seconds", 3.0)),
        )
        if self.mode == "LIVE":
            if swap_executor is None:
                raise ValueError("LIVE mode requires a SwapExecutor implementation")
            self.swap_executor = swap_executor
        else:
            if swap_executor is not None:
                logger.warning(f"Ignoring injected SwapExecutor in {self.mode} mode; using paper swaps")
            self.swap_executor = PaperSwapExecutor(self.price_feed)

        # Executors
        exit_settings = ExitSettings.from_config(exits_cfg, pending_cfg)
        self.exit_executor = ExitExecutor(
            self.ledger, self.pending_sells, self.strategies,
            self.price_feed, self.swap_executor, self.clock,
            settings=exit_settings, metrics=self.metrics, alerts=self.alerts,
        )
        self.limit_executor = LimitOrderExecutor(
            self.limit_orders, self.ledger,
            self.price_feed, self.swap_executor, self.clock,
            retention_days=float(limit_cfg.get("retention_days", 7)),
            metrics=self.metrics, alerts=self.alerts,
        )
        self.dca_executor = DCAExecutor(
            self.dca_orders, self.ledger,
            self.price_feed, self.swap_executor, self.clock,
            retention_days=float(dca_cfg.get("retention_days", 30)),
            metrics=self.metrics, alerts=self.alerts,
        )

        loops_cfg = self.app_config.get("loops") or {}
        jitter_pct = float(loops_cfg.get("jitter_pct", 0.0))
        self.loops: List[PeriodicLoop] = [
            PeriodicLoop(
                "price_tick", float(loops_cfg.get("price_tick_seconds", 5)),
                self.exit_executor.tick, metrics=self.metrics, jitter_pct=jitter_pct,
            ),
            PeriodicLoop(
                "limit_orders", float(loops_cfg.get("limit_order_seconds", 30)),
                self.limit_executor.tick, metrics=self.metrics, jitter_pct=jitter_pct,
            ),
            PeriodicLoop(
                "dca", float(loops_cfg.get("dca_seconds", 60)),
                self.dca_executor.tick, metrics=self.metrics, jitter_pct=jitter_pct,
            ),
        ]

        self._running = False
        self._loaded = False
        logger.info(f"Initialized AutoTrader in {self.mode} mode with {len(self.strategies)} strategies")

    # ----- lifecycle -----

    def load_state(self) -> Dict[str, int]:
        """Rebuild every in-memory index from the ledger store."""
        counts = {
            "positions": self.ledger.load(),
            "limit_orders": self.limit_orders.load(),
            "dca_orders": self.dca_orders.load(),
            "pending_sells": self.pending_sells.load(),
        }
        self._loaded = True
        logger.info(f"Loaded state: {counts}")
        return counts

    def start(self) -> None:
        if not self._loaded:
            self.load_state()
        self.metrics.start()
        self.writer.start()
        for loop in self.loops:
            loop.start()
        self._running = True

    def stop(self) -> None:
        """Signal every loop and flush queued best-effort writes."""
        self._running = False
        for loop in self.loops:
            loop.stop()
        self.writer.stop(flush=True)
        if self.instance_lock is not None:
            self.instance_lock.release()
        logger.info("AutoTrader stopped")

    def run_once(self) -> List[TickStats]:
        """One synchronous tick of each loop, in order."""
        if not self._loaded:
            self.load_state()
        stats = [loop.run_once() for loop in self.loops]
        self.writer.flush()
        for s in stats:
            logger.info(f"{s.loop}: status={s.status} processed={s.processed} ({s.duration_seconds:.2f}s)")
        return stats

    def run_forever(self, poll_seconds: float = 1.0) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)
        self.start()
        logger.info("AutoTrader running; Ctrl+C to stop")
        try:
            while self._running:
                time.sleep(poll_seconds)
        finally:
            if self._running:
                self.stop()
        logger.info("AutoTrader loop exited cleanly.")

    def _handle_stop(self, signum, _frame) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        self.stop()

    def status(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "positions": self.ledger.statistics(),
            "limit_orders": self.limit_orders.statistics(),
            "dca_orders": self.dca_orders.statistics(),
            "pending_sells": self.pending_sells.statistics(),
            "best_effort_backlog": self.writer.pending_count(),
        }

    # ----- helpers -----

    def _load_yaml(self, filename: str, required: bool = True) -> Optional[dict]:
        path = self.config_dir / filename
        if not path.exists() and not required:
            return None
        with open(path) as f:
            return yaml.safe_load(f)

    @staticmethod
    def _configure_logging(log_cfg: Dict[str, Any]) -> None:
        handlers: List[logging.Handler] = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(description="Exit timing and standing-order engine")
    parser.add_argument("--once", action="store_true", help="Run one tick of every loop and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--mode", choices=sorted(ALLOWED_MODES), help="Override app.mode")
    args = parser.parse_args(argv)

    trader = AutoTrader(config_dir=args.config_dir, mode=args.mode)
    if args.once:
        stats = trader.run_once()
        trader.stop()
        return 1 if any(s.status == "error" for s in stats) else 0
    trader.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
