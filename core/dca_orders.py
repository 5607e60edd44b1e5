"""
DCA Order Manager

Splits a fixed SOL budget across a series of buys spaced by a fixed
interval.

States: ACTIVE ⇄ PAUSED, ACTIVE → COMPLETED, ACTIVE|PAUSED → CANCELLED

Invariants:
- current_buy_index == len(executions)
- status is COMPLETED exactly when current_buy_index == number_of_buys,
  and next_buy_at is None from then on
- resuming schedules the next buy one interval after the resume; missed
  buys are not caught up

Strategy types:
- time-based: even split of the remaining budget over the remaining buys
- price-based: even split scaled by clamp(1 - 2 * change, 0.5, 2.0) where
  change is the relative move from the reference price
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from core.exceptions import InvalidState, NotFound, PersistenceFailure, ValidationError
from core.interfaces import Clock, LedgerStore
from core.records import new_id, parse_dt, to_iso
from infra.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

MIN_BUYS = 2
MAX_BUYS = 100
MIN_INTERVAL_MINUTES = 1
DEFAULT_SLIPPAGE_BPS = 200
DEFAULT_RETENTION_DAYS = 30

MIN_PRICE_FACTOR = 0.5
MAX_PRICE_FACTOR = 2.0


class DCAStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DCAStrategyType(Enum):
    TIME_BASED = "time-based"
    PRICE_BASED = "price-based"


TERMINAL_STATUSES = {DCAStatus.COMPLETED, DCAStatus.CANCELLED}


@dataclass
class BuyExecution:
    """One recorded DCA buy. ``index`` is 1-based."""
    index: int
    timestamp: datetime
    spent: float
    received: float
    price: float
    tx_ref: str
    execution_wallet_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "timestamp": to_iso(self.timestamp),
            "spent": self.spent,
            "received": self.received,
            "price": self.price,
            "tx_ref": self.tx_ref,
            "execution_wallet_key": self.execution_wallet_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuyExecution":
        return cls(
            index=int(data["index"]),
            timestamp=parse_dt(data["timestamp"]),
            spent=float(data["spent"]),
            received=float(data["received"]),
            price=float(data["price"]),
            tx_ref=data["tx_ref"],
            execution_wallet_key=data.get("execution_wallet_key"),
        )


@dataclass
class DCAOrder:
    wallet_key: str
    mint: str
    strategy_type: str
    total_budget: float
    number_of_buys: int
    interval_minutes: float
    created_at: datetime
    id: str = ""
    token_symbol: Optional[str] = None
    exit_strategy: str = "dca"
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    current_buy_index: int = 0
    status: str = DCAStatus.ACTIVE.value
    next_buy_at: Optional[datetime] = None
    last_buy_at: Optional[datetime] = None
    executions: List[BuyExecution] = field(default_factory=list)
    reference_price: Optional[float] = None
    is_private: bool = False
    execution_wallet_key: Optional[str] = None  # signer for private orders
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = new_id("dca")

    @property
    def remaining_buys(self) -> int:
        return max(0, self.number_of_buys - self.current_buy_index)

    @property
    def total_spent(self) -> float:
        return sum(e.spent for e in self.executions)

    @property
    def remaining_budget(self) -> float:
        return max(0.0, self.total_budget - self.total_spent)

    @property
    def signer_key(self) -> str:
        if self.is_private and self.execution_wallet_key:
            return self.execution_wallet_key
        return self.wallet_key

    def is_terminal(self) -> bool:
        return DCAStatus(self.status) in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == DCAStatus.ACTIVE.value
            and self.next_buy_at is not None
            and self.next_buy_at <= now
            and self.current_buy_index < self.number_of_buys
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_key": self.wallet_key,
            "mint": self.mint,
            "token_symbol": self.token_symbol,
            "strategy_type": self.strategy_type,
            "total_budget": self.total_budget,
            "number_of_buys": self.number_of_buys,
            "interval_minutes": self.interval_minutes,
            "exit_strategy": self.exit_strategy,
            "slippage_bps": self.slippage_bps,
            "current_buy_index": self.current_buy_index,
            "status": self.status,
            "created_at": to_iso(self.created_at),
            "next_buy_at": to_iso(self.next_buy_at),
            "last_buy_at": to_iso(self.last_buy_at),
            "executions": [e.to_dict() for e in self.executions],
            "reference_price": self.reference_price,
            "is_private": self.is_private,
            "execution_wallet_key": self.execution_wallet_key,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DCAOrder":
        return cls(
            id=data["id"],
            wallet_key=data["wallet_key"],
            mint=data["mint"],
            token_symbol=data.get("token_symbol"),
            strategy_type=data.get("strategy_type", DCAStrategyType.TIME_BASED.value),
            total_budget=float(data["total_budget"]),
            number_of_buys=int(data["number_of_buys"]),
            interval_minutes=float(data["interval_minutes"]),
            exit_strategy=data.get("exit_strategy", "dca"),
            slippage_bps=int(data.get("slippage_bps", DEFAULT_SLIPPAGE_BPS)),
            current_buy_index=int(data.get("current_buy_index", 0)),
            status=data.get("status", DCAStatus.ACTIVE.value),
            created_at=parse_dt(data["created_at"]),
            next_buy_at=parse_dt(data.get("next_buy_at")),
            last_buy_at=parse_dt(data.get("last_buy_at")),
            executions=[BuyExecution.from_dict(e) for e in data.get("executions") or []],
            reference_price=data.get("reference_price"),
            is_private=bool(data.get("is_private", False)),
            execution_wallet_key=data.get("execution_wallet_key"),
            updated_at=parse_dt(data.get("updated_at")),
        )


class DCAOrderManager:
    """DCA order state machine with persistence and progress helpers."""

    COLLECTION = "dca_orders"

    VALID_TRANSITIONS = {
        DCAStatus.ACTIVE: {DCAStatus.PAUSED, DCAStatus.COMPLETED, DCAStatus.CANCELLED},
        DCAStatus.PAUSED: {DCAStatus.ACTIVE, DCAStatus.CANCELLED},
        DCAStatus.COMPLETED: set(),
        DCAStatus.CANCELLED: set(),
    }

    def __init__(self, store: LedgerStore, clock: Clock, default_slippage_bps: int = DEFAULT_SLIPPAGE_BPS):
        self.store = store
        self.clock = clock
        self.default_slippage_bps = int(default_slippage_bps)
        self.orders: Dict[str, DCAOrder] = {}
        self._locks = KeyedLock()

    def load(self) -> int:
        self.orders = {}
        for raw in self.store.scan(self.COLLECTION):
            order = DCAOrder.from_dict(raw)
            if order.current_buy_index != len(order.executions):
                logger.error(
                    f"DCA order {order.id} index {order.current_buy_index} does not match "
                    f"{len(order.executions)} recorded executions; needs manual repair"
                )
            self.orders[order.id] = order
        logger.info(f"DCAOrderManager loaded {len(self.orders)} orders")
        return len(self.orders)

    def create(
        self,
        wallet_key: str,
        mint: str,
        total_budget: float,
        number_of_buys: int,
        interval_minutes: float,
        strategy_type: str = DCAStrategyType.TIME_BASED.value,
        exit_strategy: str = "dca",
        slippage_bps: Optional[int] = None,
        reference_price: Optional[float] = None,
        token_symbol: Optional[str] = None,
        is_private: bool = False,
        execution_wallet_key: Optional[str] = None,
    ) -> DCAOrder:
        """
        Create an active DCA order. The first buy is due immediately.

        A private order with an ``execution_wallet_key`` is signed by that
        wallet; every other order is signed by ``wallet_key``.

        Raises:
            ValidationError: number_of_buys outside [2, 100], interval < 1
                minute, non-positive budget or unknown strategy type
        """
        if not wallet_key or not mint:
            raise ValidationError("wallet_key and mint are required")
        if number_of_buys is None or int(number_of_buys) != number_of_buys:
            raise ValidationError("number_of_buys must be an integer")
        if number_of_buys < MIN_BUYS:
            raise ValidationError(f"number_of_buys must be at least {MIN_BUYS}")
        if number_of_buys > MAX_BUYS:
            raise ValidationError(f"number_of_buys cannot exceed {MAX_BUYS}")
        if interval_minutes is None or interval_minutes < MIN_INTERVAL_MINUTES:
            raise ValidationError(f"interval_minutes must be at least {MIN_INTERVAL_MINUTES}")
        if total_budget is None or total_budget <= 0:
            raise ValidationError("total_budget must be positive")
        if strategy_type not in {s.value for s in DCAStrategyType}:
            raise ValidationError(f"Unknown DCA strategy type: {strategy_type}")
        if reference_price is not None and reference_price <= 0:
            raise ValidationError("reference_price must be positive")
        slippage = self.default_slippage_bps if slippage_bps is None else int(slippage_bps)
        if not 0 <= slippage <= 10_000:
            raise ValidationError("slippage_bps must be between 0 and 10000")

        now = self.clock.now()
        order = DCAOrder(
            wallet_key=wallet_key,
            mint=mint,
            token_symbol=token_symbol,
            strategy_type=strategy_type,
            total_budget=float(total_budget),
            number_of_buys=int(number_of_buys),
            interval_minutes=float(interval_minutes),
            exit_strategy=exit_strategy,
            slippage_bps=slippage,
            created_at=now,
            updated_at=now,
            next_buy_at=now,
            reference_price=reference_price,
            is_private=is_private,
            execution_wallet_key=execution_wallet_key,
        )
        self.orders[order.id] = order
        logger.info(
            f"Created DCA order {order.id}: {order.total_budget} SOL over {order.number_of_buys} buys "
            f"every {order.interval_minutes:g}m ({strategy_type}) for {token_symbol or mint[:8]}"
        )
        self._persist(order)
        return replace(order, executions=list(order.executions))

    # ----- queries -----

    def get(self, order_id: str) -> DCAOrder:
        order = self._require(order_id)
        return replace(order, executions=list(order.executions))

    def list_orders(self, wallet_key: Optional[str] = None, status: Optional[str] = None) -> List[DCAOrder]:
        return [
            replace(o, executions=list(o.executions))
            for o in list(self.orders.values())
            if (wallet_key is None or o.wallet_key == wallet_key)
            and (status is None or o.status == status)
        ]

    def get_ready_for_buy(self, now: Optional[datetime] = None) -> List[DCAOrder]:
        """Active orders whose next buy is due and that still have buys left."""
        now = now or self.clock.now()
        return [
            replace(o, executions=list(o.executions))
            for o in list(self.orders.values())
            if o.is_due(now)
        ]

    def is_due(self, order_id: str, now: Optional[datetime] = None) -> bool:
        with self._locks.hold(order_id):
            return self._require(order_id).is_due(now or self.clock.now())

    def calculate_next_buy_amount(self, order: DCAOrder, current_price: Optional[float] = None) -> float:
        """
        SOL to spend on the next buy.

        Returns the even split of the remaining budget over the remaining
        buys. Price-based orders scale that by the price move from the
        reference (bounded to [0.5x, 2.0x]) when both prices are known;
        the result never exceeds the remaining budget.
        """
        remaining_buys = order.remaining_buys
        remaining_budget = order.remaining_budget
        if remaining_buys <= 0 or remaining_budget <= 0:
            return 0.0
        base_amount = remaining_budget / remaining_buys

        if order.strategy_type != DCAStrategyType.PRICE_BASED.value:
            return base_amount
        if not current_price or not order.reference_price:
            return base_amount

        price_change = (current_price - order.reference_price) / order.reference_price
        factor = max(MIN_PRICE_FACTOR, min(MAX_PRICE_FACTOR, 1 - price_change * 2))
        return min(base_amount * factor, remaining_budget)

    # ----- transitions -----

    def record_buy_execution(self, order_id: str, execution: BuyExecution) -> DCAOrder:
        """
        Append a buy to the log and schedule the next one.

        Raises:
            NotFound: Unknown order
            InvalidState: Order is not active, or the execution index is not
                the next one in sequence
        """
        with self._locks.hold(order_id):
            order = self._require(order_id)
            if order.status != DCAStatus.ACTIVE.value:
                raise InvalidState(f"Cannot record buy on {order.status} DCA order {order_id}")
            expected = order.current_buy_index + 1
            if execution.index != expected:
                raise InvalidState(
                    f"DCA order {order_id} expected buy #{expected}, got #{execution.index}"
                )

            order.executions.append(execution)
            order.current_buy_index = len(order.executions)
            order.last_buy_at = execution.timestamp
            order.updated_at = self.clock.now()
            if order.current_buy_index >= order.number_of_buys:
                order.next_buy_at = None
                order.status = DCAStatus.COMPLETED.value
                logger.info(f"DCA order {order_id} completed ({order.number_of_buys} buys)")
            else:
                order.next_buy_at = execution.timestamp + timedelta(minutes=order.interval_minutes)
                logger.info(
                    f"DCA order {order_id} buy {order.current_buy_index}/{order.number_of_buys}: "
                    f"{execution.spent:.6f} SOL -> {execution.received:.6f} tokens, "
                    f"next at {order.next_buy_at.isoformat()}"
                )
            self._persist(order)
            return replace(order, executions=list(order.executions))

    def pause(self, order_id: str) -> DCAOrder:
        with self._locks.hold(order_id):
            order = self._require(order_id)
            self._transition(order, DCAStatus.PAUSED)
            return replace(order, executions=list(order.executions))

    def resume(self, order_id: str) -> DCAOrder:
        """Resume a paused order; the next buy is one interval from now."""
        with self._locks.hold(order_id):
            order = self._require(order_id)
            if order.status != DCAStatus.PAUSED.value:
                raise InvalidState(f"Only paused DCA orders can be resumed ({order_id} is {order.status})")
            order.next_buy_at = self.clock.now() + timedelta(minutes=order.interval_minutes)
            self._transition(order, DCAStatus.ACTIVE)
            return replace(order, executions=list(order.executions))

    def cancel(self, order_id: str) -> bool:
        """Returns False (status unchanged) for completed or already cancelled orders."""
        with self._locks.hold(order_id):
            order = self._require(order_id)
            if DCAStatus.CANCELLED not in self.VALID_TRANSITIONS[DCAStatus(order.status)]:
                logger.warning(f"Cannot cancel DCA order {order_id} in status {order.status}")
                return False
            order.next_buy_at = None
            self._transition(order, DCAStatus.CANCELLED)
            return True

    def cleanup(self, retention_days: float = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = self.clock.now() - timedelta(days=retention_days)
        removed = 0
        for order in list(self.orders.values()):
            if not order.is_terminal():
                continue
            if (order.updated_at or order.created_at) >= cutoff:
                continue
            with self._locks.hold(order.id):
                try:
                    self.store.delete(self.COLLECTION, order.id)
                except Exception as e:
                    raise PersistenceFailure(self.COLLECTION, order.id, e) from e
                self.orders.pop(order.id, None)
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old DCA orders")
        return removed

    # ----- progress helpers -----

    def total_spent(self, order_id: str) -> float:
        return self._require(order_id).total_spent

    def remaining_budget(self, order_id: str) -> float:
        return self._require(order_id).remaining_budget

    def average_entry_price(self, order_id: str) -> float:
        """SOL per token across recorded buys; 0 before the first buy."""
        order = self._require(order_id)
        tokens = sum(e.received for e in order.executions)
        if tokens <= 0:
            return 0.0
        return order.total_spent / tokens

    def progress(self, order_id: str) -> float:
        order = self._require(order_id)
        return order.current_buy_index / order.number_of_buys * 100.0

    def estimated_completion(self, order_id: str) -> Optional[datetime]:
        order = self._require(order_id)
        if order.remaining_buys <= 0 or order.is_terminal():
            return None
        anchor = order.last_buy_at or order.created_at
        return anchor + timedelta(minutes=order.interval_minutes * order.remaining_buys)

    def statistics(self) -> Dict[str, Any]:
        orders = list(self.orders.values())
        stats: Dict[str, Any] = {"total": len(orders)}
        for status in DCAStatus:
            stats[status.value] = sum(1 for o in orders if o.status == status.value)
        stats["total_budget_allocated"] = sum(o.total_budget for o in orders)
        stats["total_spent"] = sum(o.total_spent for o in orders)
        return stats

    # ----- internals -----

    def _require(self, order_id: str) -> DCAOrder:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"DCA order {order_id} not found")
        return order

    def _transition(self, order: DCAOrder, new_status: DCAStatus) -> None:
        current = DCAStatus(order.status)
        if new_status not in self.VALID_TRANSITIONS.get(current, set()):
            raise InvalidState(
                f"Invalid transition for DCA order {order.id}: {current.value} → {new_status.value}"
            )
        order.status = new_status.value
        order.updated_at = self.clock.now()
        logger.info(f"DCA order {order.id} transitioned: {current.value} → {new_status.value}")
        self._persist(order)

    def _persist(self, order: DCAOrder) -> None:
        try:
            self.store.put(self.COLLECTION, order.id, order.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist DCA order {order.id}: {e}")
            raise PersistenceFailure(self.COLLECTION, order.id, e) from e
