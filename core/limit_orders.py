"""
Limit Order Manager

Persistent price-triggered standing orders.

States: PENDING → EXECUTING → FILLED
        PENDING → CANCELLED | EXPIRED

A BUY is ready when the price is at or below its target, a SELL when the
price is at or above it. Expiry is detected lazily whenever ready orders
are read. EXECUTING orders cannot be cancelled since a swap may be in
flight; an operator can requeue one after verifying nothing was broadcast.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from core.exceptions import InvalidState, NotFound, PersistenceFailure, ValidationError
from core.interfaces import Clock, LedgerStore
from core.records import new_id, parse_dt, to_iso
from infra.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE_BPS = 200
DEFAULT_RETENTION_DAYS = 7


class LimitOrderStatus(Enum):
    """Limit order lifecycle states"""
    PENDING = "pending"          # Waiting for the price target
    EXECUTING = "executing"      # Swap being submitted
    FILLED = "filled"            # Swap confirmed
    CANCELLED = "cancelled"      # Cancelled by user
    EXPIRED = "expired"          # expires_at passed before trigger


class LimitOrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


TERMINAL_STATUSES = {
    LimitOrderStatus.FILLED,
    LimitOrderStatus.CANCELLED,
    LimitOrderStatus.EXPIRED,
}


@dataclass
class LimitOrder:
    """
    Price-triggered order.

    ``amount`` is SOL to spend for BUY orders and tokens to sell for SELL
    orders.
    """
    wallet_key: str
    mint: str
    side: str
    target_price: float
    amount: float
    created_at: datetime
    id: str = ""
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    status: str = LimitOrderStatus.PENDING.value
    expires_at: Optional[datetime] = None
    exit_strategy: str = "manual"
    token_symbol: Optional[str] = None
    signature: Optional[str] = None
    resulting_mint: Optional[str] = None
    is_private: bool = False
    execution_wallet_key: Optional[str] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = new_id("lo")

    def is_terminal(self) -> bool:
        return LimitOrderStatus(self.status) in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def price_target_hit(self, current_price: float) -> bool:
        if self.side == LimitOrderSide.SELL.value:
            return current_price >= self.target_price
        return current_price <= self.target_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_key": self.wallet_key,
            "mint": self.mint,
            "side": self.side,
            "target_price": self.target_price,
            "amount": self.amount,
            "slippage_bps": self.slippage_bps,
            "status": self.status,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "exit_strategy": self.exit_strategy,
            "token_symbol": self.token_symbol,
            "signature": self.signature,
            "resulting_mint": self.resulting_mint,
            "is_private": self.is_private,
            "execution_wallet_key": self.execution_wallet_key,
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LimitOrder":
        return cls(
            id=data["id"],
            wallet_key=data["wallet_key"],
            mint=data["mint"],
            side=data.get("side", LimitOrderSide.BUY.value),
            target_price=float(data["target_price"]),
            amount=float(data["amount"]),
            slippage_bps=int(data.get("slippage_bps", DEFAULT_SLIPPAGE_BPS)),
            status=data.get("status", LimitOrderStatus.PENDING.value),
            created_at=parse_dt(data["created_at"]),
            expires_at=parse_dt(data.get("expires_at")),
            exit_strategy=data.get("exit_strategy", "manual"),
            token_symbol=data.get("token_symbol"),
            signature=data.get("signature"),
            resulting_mint=data.get("resulting_mint"),
            is_private=bool(data.get("is_private", False)),
            execution_wallet_key=data.get("execution_wallet_key"),
            updated_at=parse_dt(data.get("updated_at")),
            completed_at=parse_dt(data.get("completed_at")),
            error=data.get("error"),
        )


class LimitOrderManager:
    """
    Limit order state machine with persistence.

    Only valid transitions are applied; operator repairs go through
    ``allow_override``.
    """

    COLLECTION = "limit_orders"

    VALID_TRANSITIONS = {
        LimitOrderStatus.PENDING: {
            LimitOrderStatus.EXECUTING,
            LimitOrderStatus.CANCELLED,
            LimitOrderStatus.EXPIRED,
        },
        LimitOrderStatus.EXECUTING: {LimitOrderStatus.FILLED},
        # Terminal states have no outbound transitions
        LimitOrderStatus.FILLED: set(),
        LimitOrderStatus.CANCELLED: set(),
        LimitOrderStatus.EXPIRED: set(),
    }

    def __init__(self, store: LedgerStore, clock: Clock, default_slippage_bps: int = DEFAULT_SLIPPAGE_BPS):
        self.store = store
        self.clock = clock
        self.default_slippage_bps = int(default_slippage_bps)
        self.orders: Dict[str, LimitOrder] = {}
        self._locks = KeyedLock()

    def load(self) -> int:
        self.orders = {}
        for raw in self.store.scan(self.COLLECTION):
            order = LimitOrder.from_dict(raw)
            self.orders[order.id] = order
        logger.info(f"LimitOrderManager loaded {len(self.orders)} orders")
        return len(self.orders)

    def create(
        self,
        wallet_key: str,
        mint: str,
        target_price: float,
        amount: float,
        side: str = LimitOrderSide.BUY.value,
        slippage_bps: Optional[int] = None,
        expires_in_minutes: Optional[float] = None,
        exit_strategy: str = "manual",
        token_symbol: Optional[str] = None,
        is_private: bool = False,
        execution_wallet_key: Optional[str] = None,
    ) -> LimitOrder:
        """
        Create a new pending limit order.

        Args:
            wallet_key: Owner wallet
            mint: Token to buy or sell
            target_price: Trigger price in USD
            amount: SOL to spend (BUY) or tokens to sell (SELL)
            side: "BUY" or "SELL"
            slippage_bps: Slippage tolerance (default 200 bps)
            expires_in_minutes: Optional lifetime
            exit_strategy: Strategy for the position a BUY fill opens

        Raises:
            ValidationError: On bad input
        """
        side = (side or "").upper()
        if side not in {s.value for s in LimitOrderSide}:
            raise ValidationError(f"Invalid side: {side}")
        if not wallet_key or not mint:
            raise ValidationError("wallet_key and mint are required")
        if target_price is None or target_price <= 0:
            raise ValidationError("target_price must be positive")
        if amount is None or amount <= 0:
            raise ValidationError("amount must be positive")
        slippage = self.default_slippage_bps if slippage_bps is None else int(slippage_bps)
        if not 0 <= slippage <= 10_000:
            raise ValidationError("slippage_bps must be between 0 and 10000")
        if expires_in_minutes is not None and expires_in_minutes <= 0:
            raise ValidationError("expires_in_minutes must be positive")

        now = self.clock.now()
        order = LimitOrder(
            wallet_key=wallet_key,
            mint=mint,
            side=side,
            target_price=float(target_price),
            amount=float(amount),
            slippage_bps=slippage,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=expires_in_minutes) if expires_in_minutes else None,
            exit_strategy=exit_strategy,
            token_symbol=token_symbol,
            is_private=is_private,
            execution_wallet_key=execution_wallet_key,
        )
        self.orders[order.id] = order
        logger.info(
            f"Created limit order {order.id}: {side} {token_symbol or mint[:8]} "
            f"@ ${order.target_price} amount={order.amount}"
        )
        self._persist(order)
        return replace(order)

    # ----- queries -----

    def get(self, order_id: str) -> LimitOrder:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Limit order {order_id} not found")
        return replace(order)

    def list_orders(self, wallet_key: Optional[str] = None, status: Optional[str] = None) -> List[LimitOrder]:
        return [
            replace(o)
            for o in list(self.orders.values())
            if (wallet_key is None or o.wallet_key == wallet_key)
            and (status is None or o.status == status)
        ]

    def pending_orders(self) -> List[LimitOrder]:
        return self.list_orders(status=LimitOrderStatus.PENDING.value)

    def get_ready(self, mint: str, current_price: float) -> List[LimitOrder]:
        """
        Pending orders for ``mint`` whose target is hit at ``current_price``.

        Overdue orders are transitioned to EXPIRED as a side effect and
        excluded.
        """
        now = self.clock.now()
        ready: List[LimitOrder] = []
        candidates = [
            o.id for o in list(self.orders.values())
            if o.mint == mint and o.status == LimitOrderStatus.PENDING.value
        ]
        for order_id in candidates:
            with self._locks.hold(order_id):
                order = self.orders[order_id]
                if order.status != LimitOrderStatus.PENDING.value:
                    continue
                if order.is_expired(now):
                    self._transition(order, LimitOrderStatus.EXPIRED)
                    continue
                if order.price_target_hit(current_price):
                    ready.append(replace(order))
        return ready

    def is_ready(self, order_id: str, current_price: float) -> bool:
        """Re-check a single order; expires it if overdue."""
        with self._locks.hold(order_id):
            order = self._require(order_id)
            if order.status != LimitOrderStatus.PENDING.value:
                return False
            if order.is_expired(self.clock.now()):
                self._transition(order, LimitOrderStatus.EXPIRED)
                return False
            return order.price_target_hit(current_price)

    # ----- transitions -----

    def mark_executing(self, order_id: str) -> LimitOrder:
        with self._locks.hold(order_id):
            order = self._require(order_id)
            self._transition(order, LimitOrderStatus.EXECUTING)
            return replace(order)

    def mark_filled(self, order_id: str, signature: str, resulting_mint: Optional[str] = None) -> LimitOrder:
        with self._locks.hold(order_id):
            order = self._require(order_id)
            current = LimitOrderStatus(order.status)
            if LimitOrderStatus.FILLED not in self.VALID_TRANSITIONS.get(current, set()):
                raise InvalidState(
                    f"Invalid transition for limit order {order.id}: {current.value} → filled"
                )
            order.signature = signature
            order.resulting_mint = resulting_mint or order.mint
            self._transition(order, LimitOrderStatus.FILLED)
            return replace(order)

    def cancel(self, order_id: str) -> bool:
        """
        Cancel a pending order.

        Returns:
            False (status unchanged) if the order is executing or terminal
        """
        with self._locks.hold(order_id):
            order = self._require(order_id)
            if LimitOrderStatus.CANCELLED not in self.VALID_TRANSITIONS[LimitOrderStatus(order.status)]:
                logger.warning(f"Cannot cancel limit order {order_id} in status {order.status}")
                return False
            self._transition(order, LimitOrderStatus.CANCELLED)
            return True

    def requeue(self, order_id: str, reason: str = "") -> LimitOrder:
        """
        Operator repair: return an EXECUTING order to PENDING.

        Only safe once it is verified that no swap was broadcast.
        """
        with self._locks.hold(order_id):
            order = self._require(order_id)
            if order.status != LimitOrderStatus.EXECUTING.value:
                raise InvalidState(f"Only executing orders can be requeued ({order_id} is {order.status})")
            order.error = reason or order.error
            self._transition(order, LimitOrderStatus.PENDING, allow_override=True)
            return replace(order)

    def record_error(self, order_id: str, error: str) -> None:
        with self._locks.hold(order_id):
            order = self._require(order_id)
            order.error = error
            order.updated_at = self.clock.now()
            self._persist(order)

    def cleanup(self, retention_days: float = DEFAULT_RETENTION_DAYS) -> int:
        """Delete terminal orders older than ``retention_days``. Returns count removed."""
        cutoff = self.clock.now() - timedelta(days=retention_days)
        removed = 0
        for order in list(self.orders.values()):
            if not order.is_terminal():
                continue
            finished = order.completed_at or order.created_at
            if finished >= cutoff:
                continue
            with self._locks.hold(order.id):
                try:
                    self.store.delete(self.COLLECTION, order.id)
                except Exception as e:
                    raise PersistenceFailure(self.COLLECTION, order.id, e) from e
                self.orders.pop(order.id, None)
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old limit orders")
        return removed

    def statistics(self) -> Dict[str, int]:
        orders = list(self.orders.values())
        stats = {"total": len(orders)}
        for status in LimitOrderStatus:
            stats[status.value] = sum(1 for o in orders if o.status == status.value)
        return stats

    # ----- internals -----

    def _require(self, order_id: str) -> LimitOrder:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"Limit order {order_id} not found")
        return order

    def _transition(self, order: LimitOrder, new_status: LimitOrderStatus, allow_override: bool = False) -> None:
        current = LimitOrderStatus(order.status)
        if new_status not in self.VALID_TRANSITIONS.get(current, set()):
            if not allow_override:
                raise InvalidState(
                    f"Invalid transition for limit order {order.id}: {current.value} → {new_status.value}"
                )
            logger.warning(f"Override transition for {order.id}: {current.value} → {new_status.value}")

        now = self.clock.now()
        order.status = new_status.value
        order.updated_at = now
        if new_status in TERMINAL_STATUSES:
            order.completed_at = now
        logger.info(f"Limit order {order.id} transitioned: {current.value} → {new_status.value}")
        self._persist(order)

    def _persist(self, order: LimitOrder) -> None:
        try:
            self.store.put(self.COLLECTION, order.id, order.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist limit order {order.id}: {e}")
            raise PersistenceFailure(self.COLLECTION, order.id, e) from e
