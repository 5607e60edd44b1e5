"""
Pending-Sell Queue

Approval buffer between "exit condition met" and "transaction broadcast"
for wallets the bot cannot sign for. Each entry carries a prepared unsigned
transaction and a snapshot of the trigger.

States: PENDING → EXECUTING → EXECUTED
        PENDING → CANCELLED | EXPIRED

At most one PENDING or EXECUTING entry exists per (wallet, mint) at any time.
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

DEFAULT_EXPIRY_MINUTES = 30
DEFAULT_RETENTION_DAYS = 7


class PendingSellStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = {
    PendingSellStatus.EXECUTED,
    PendingSellStatus.CANCELLED,
    PendingSellStatus.EXPIRED,
}

IN_FLIGHT_STATUSES = {PendingSellStatus.PENDING.value, PendingSellStatus.EXECUTING.value}


@dataclass
class PendingSell:
    wallet_key: str
    mint: str
    position_id: str
    sell_percentage: float
    token_amount: float
    current_price: float
    entry_price: float
    current_profit_percent: float
    reason: str
    strategy_name: str
    prepared_transaction: str
    created_at: datetime
    expires_at: datetime
    id: str = ""
    token_symbol: Optional[str] = None
    estimated_sol_received: float = 0.0
    slippage_bps: int = 300
    stage_index: Optional[int] = None
    merged_buys: int = 0
    status: str = PendingSellStatus.PENDING.value
    signature: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = new_id("ps")

    def is_terminal(self) -> bool:
        return PendingSellStatus(self.status) in TERMINAL_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_key": self.wallet_key,
            "mint": self.mint,
            "token_symbol": self.token_symbol,
            "position_id": self.position_id,
            "sell_percentage": self.sell_percentage,
            "token_amount": self.token_amount,
            "current_price": self.current_price,
            "entry_price": self.entry_price,
            "current_profit_percent": self.current_profit_percent,
            "estimated_sol_received": self.estimated_sol_received,
            "reason": self.reason,
            "strategy_name": self.strategy_name,
            "slippage_bps": self.slippage_bps,
            "stage_index": self.stage_index,
            "merged_buys": self.merged_buys,
            "prepared_transaction": self.prepared_transaction,
            "status": self.status,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "signature": self.signature,
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingSell":
        return cls(
            id=data["id"],
            wallet_key=data["wallet_key"],
            mint=data["mint"],
            token_symbol=data.get("token_symbol"),
            position_id=data["position_id"],
            sell_percentage=float(data["sell_percentage"]),
            token_amount=float(data["token_amount"]),
            current_price=float(data["current_price"]),
            entry_price=float(data["entry_price"]),
            current_profit_percent=float(data["current_profit_percent"]),
            estimated_sol_received=float(data.get("estimated_sol_received", 0.0)),
            reason=data["reason"],
            strategy_name=data["strategy_name"],
            slippage_bps=int(data.get("slippage_bps", 300)),
            stage_index=data.get("stage_index"),
            merged_buys=int(data.get("merged_buys", 0)),
            prepared_transaction=data.get("prepared_transaction", ""),
            status=data.get("status", PendingSellStatus.PENDING.value),
            created_at=parse_dt(data["created_at"]),
            expires_at=parse_dt(data["expires_at"]),
            signature=data.get("signature"),
            updated_at=parse_dt(data.get("updated_at")),
        )


class PendingSellQueue:
    """Persistent queue of exits awaiting a user signature."""

    COLLECTION = "pending_sells"

    VALID_TRANSITIONS = {
        PendingSellStatus.PENDING: {
            PendingSellStatus.EXECUTING,
            PendingSellStatus.CANCELLED,
            PendingSellStatus.EXPIRED,
        },
        PendingSellStatus.EXECUTING: {PendingSellStatus.EXECUTED},
        PendingSellStatus.EXECUTED: set(),
        PendingSellStatus.CANCELLED: set(),
        PendingSellStatus.EXPIRED: set(),
    }

    def __init__(self, store: LedgerStore, clock: Clock, expiry_minutes: float = DEFAULT_EXPIRY_MINUTES):
        self.store = store
        self.clock = clock
        self.expiry_minutes = float(expiry_minutes)
        self.sells: Dict[str, PendingSell] = {}
        self._locks = KeyedLock()

    def load(self) -> int:
        self.sells = {}
        for raw in self.store.scan(self.COLLECTION):
            sell = PendingSell.from_dict(raw)
            self.sells[sell.id] = sell
        logger.info(f"PendingSellQueue loaded {len(self.sells)} entries")
        return len(self.sells)

    def create(
        self,
        wallet_key: str,
        mint: str,
        position_id: str,
        sell_percentage: float,
        token_amount: float,
        current_price: float,
        entry_price: float,
        current_profit_percent: float,
        reason: str,
        strategy_name: str,
        prepared_transaction: str,
        estimated_sol_received: float = 0.0,
        slippage_bps: int = 300,
        token_symbol: Optional[str] = None,
        expires_in_minutes: Optional[float] = None,
        stage_index: Optional[int] = None,
        merged_buys: int = 0,
    ) -> PendingSell:
        """
        Queue an exit for approval.

        Raises:
            ValidationError: sell_percentage outside (0, 100] or no tokens
            InvalidState: A pending or executing entry already exists for the pair
        """
        if not 0 < sell_percentage <= 100:
            raise ValidationError("sell_percentage must be in (0, 100]")
        if token_amount <= 0:
            raise ValidationError("token_amount must be positive")

        with self._locks.hold((wallet_key, mint)):
            existing = self.find_in_flight(wallet_key, mint)
            if existing is not None:
                raise InvalidState(
                    f"Pending sell {existing.id} ({existing.status}) already in flight for {wallet_key}/{mint}"
                )
            now = self.clock.now()
            lifetime = expires_in_minutes if expires_in_minutes else self.expiry_minutes
            sell = PendingSell(
                wallet_key=wallet_key,
                mint=mint,
                token_symbol=token_symbol,
                position_id=position_id,
                sell_percentage=float(sell_percentage),
                token_amount=float(token_amount),
                current_price=float(current_price),
                entry_price=float(entry_price),
                current_profit_percent=float(current_profit_percent),
                estimated_sol_received=float(estimated_sol_received),
                reason=reason,
                strategy_name=strategy_name,
                slippage_bps=int(slippage_bps),
                stage_index=stage_index,
                merged_buys=int(merged_buys),
                prepared_transaction=prepared_transaction,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(minutes=lifetime),
            )
            self.sells[sell.id] = sell
            logger.info(
                f"Queued pending sell {sell.id}: {sell.sell_percentage:g}% of {token_symbol or mint[:8]} "
                f"({reason}), expires {sell.expires_at.isoformat()}"
            )
            self._persist(sell)
            return replace(sell)

    # ----- queries -----

    def get(self, sell_id: str) -> PendingSell:
        return replace(self._require(sell_id))

    def list_for_wallet(self, wallet_key: str, status: Optional[str] = None) -> List[PendingSell]:
        return [
            replace(s)
            for s in list(self.sells.values())
            if s.wallet_key == wallet_key and (status is None or s.status == status)
        ]

    def list_pending(self) -> List[PendingSell]:
        return [replace(s) for s in list(self.sells.values()) if s.status == PendingSellStatus.PENDING.value]

    def find_pending(self, wallet_key: str, mint: str) -> Optional[PendingSell]:
        for sell in list(self.sells.values()):
            if (
                sell.wallet_key == wallet_key
                and sell.mint == mint
                and sell.status == PendingSellStatus.PENDING.value
            ):
                return replace(sell)
        return None

    def find_in_flight(self, wallet_key: str, mint: str) -> Optional[PendingSell]:
        """The pending or executing entry for the pair, if any."""
        for sell in list(self.sells.values()):
            if (
                sell.wallet_key == wallet_key
                and sell.mint == mint
                and sell.status in IN_FLIGHT_STATUSES
            ):
                return replace(sell)
        return None

    def has_pending_for(self, wallet_key: str, mint: str) -> bool:
        return self.find_pending(wallet_key, mint) is not None

    # ----- transitions -----

    def mark_executing(self, sell_id: str) -> PendingSell:
        """
        Claim an entry for signing.

        Raises:
            InvalidState: Entry is not pending, or has expired (it is marked
                EXPIRED as a side effect)
        """
        sell = self._require(sell_id)
        with self._locks.hold((sell.wallet_key, sell.mint)):
            if sell.status == PendingSellStatus.PENDING.value and sell.is_overdue(self.clock.now()):
                self._transition(sell, PendingSellStatus.EXPIRED)
                raise InvalidState(f"Pending sell {sell_id} has expired")
            self._transition(sell, PendingSellStatus.EXECUTING)
            return replace(sell)

    def mark_executed(self, sell_id: str, signature: str) -> PendingSell:
        sell = self._require(sell_id)
        with self._locks.hold((sell.wallet_key, sell.mint)):
            self._check_transition(sell, PendingSellStatus.EXECUTED)
            sell.signature = signature
            self._transition(sell, PendingSellStatus.EXECUTED)
            return replace(sell)

    def cancel(self, sell_id: str) -> bool:
        """Returns False (status unchanged) for executing or terminal entries."""
        sell = self._require(sell_id)
        with self._locks.hold((sell.wallet_key, sell.mint)):
            if PendingSellStatus.CANCELLED not in self.VALID_TRANSITIONS[PendingSellStatus(sell.status)]:
                logger.warning(f"Cannot cancel pending sell {sell_id} in status {sell.status}")
                return False
            self._transition(sell, PendingSellStatus.CANCELLED)
            return True

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Move overdue PENDING entries to EXPIRED. Returns count expired."""
        now = now or self.clock.now()
        expired = 0
        for sell in list(self.sells.values()):
            if sell.status != PendingSellStatus.PENDING.value or not sell.is_overdue(now):
                continue
            with self._locks.hold((sell.wallet_key, sell.mint)):
                if sell.status != PendingSellStatus.PENDING.value:
                    continue
                self._transition(sell, PendingSellStatus.EXPIRED)
                expired += 1
        if expired:
            logger.info(f"Expired {expired} pending sells")
        return expired

    def cleanup(self, retention_days: float = DEFAULT_RETENTION_DAYS) -> int:
        cutoff = self.clock.now() - timedelta(days=retention_days)
        removed = 0
        for sell in list(self.sells.values()):
            if not sell.is_terminal() or sell.created_at >= cutoff:
                continue
            try:
                self.store.delete(self.COLLECTION, sell.id)
            except Exception as e:
                raise PersistenceFailure(self.COLLECTION, sell.id, e) from e
            self.sells.pop(sell.id, None)
            removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old pending sells")
        return removed

    def statistics(self) -> Dict[str, int]:
        sells = list(self.sells.values())
        stats = {"total": len(sells)}
        for status in PendingSellStatus:
            stats[status.value] = sum(1 for s in sells if s.status == status.value)
        return stats

    # ----- internals -----

    def _require(self, sell_id: str) -> PendingSell:
        sell = self.sells.get(sell_id)
        if sell is None:
            raise NotFound(f"Pending sell {sell_id} not found")
        return sell

    def _check_transition(self, sell: PendingSell, new_status: PendingSellStatus) -> None:
        current = PendingSellStatus(sell.status)
        if new_status not in self.VALID_TRANSITIONS.get(current, set()):
            raise InvalidState(
                f"Invalid transition for pending sell {sell.id}: {current.value} → {new_status.value}"
            )

    def _transition(self, sell: PendingSell, new_status: PendingSellStatus) -> None:
        current = PendingSellStatus(sell.status)
        self._check_transition(sell, new_status)
        sell.status = new_status.value
        sell.updated_at = self.clock.now()
        logger.info(f"Pending sell {sell.id} transitioned: {current.value} → {new_status.value}")
        self._persist(sell)

    def _persist(self, sell: PendingSell) -> None:
        try:
            self.store.put(self.COLLECTION, sell.id, sell.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist pending sell {sell.id}: {e}")
            raise PersistenceFailure(self.COLLECTION, sell.id, e) from e
