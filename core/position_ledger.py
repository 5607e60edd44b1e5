"""
Position Ledger

Owns per-wallet, per-mint position records: weighted-average cost basis,
live profit state and staged-exit progress.

Rules:
- At most one open (active or closing) position per (wallet, mint)
- Merging a buy recomputes the entry price and resets staged-exit progress
- Positions are never deleted, only status-transitioned to closed

Every mutation happens under a per-(wallet, mint) lock, is applied to the
in-memory index first and then persisted. Price updates persist through a
best-effort writer (failures logged, never raised); every other mutation
writes through synchronously and raises PersistenceFailure on failure.
"""

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from core.exceptions import InvalidState, NotFound, PersistenceFailure, ValidationError
from core.interfaces import Clock, LedgerStore
from core.records import new_id, parse_dt, to_iso
from infra.keyed_lock import KeyedLock
from infra.state_store import BestEffortWriter

logger = logging.getLogger(__name__)

# Sentinel emitted by an upstream feed when it falls back to mock data.
PLACEHOLDER_PRICE = 0.00015

# Remaining token amounts below this are treated as fully sold.
DUST_TOKENS = 1e-9


def is_placeholder_price(price: Optional[float]) -> bool:
    """
    True for the synthetic mock price a misbehaving feed emits.

    Data-quality workaround for one specific upstream source, not a general
    validation rule. A feed that reports "unavailable" explicitly (None)
    makes this unnecessary.
    """
    if price is None:
        return False
    return math.isclose(price, PLACEHOLDER_PRICE, rel_tol=1e-9, abs_tol=0.0)


class PositionStatus(Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


OPEN_STATUSES = {PositionStatus.ACTIVE.value, PositionStatus.CLOSING.value}


@dataclass
class Position:
    """Open or historical position for one (wallet, mint) pair."""
    wallet_key: str
    mint: str
    entry_time: datetime
    entry_price: float
    token_amount: float
    total_cost_basis: float
    strategy_name: str
    id: str = ""
    token_symbol: Optional[str] = None
    exit_stages_completed: int = 0
    highest_profit_percent: float = 0.0
    status: str = PositionStatus.ACTIVE.value
    current_price: Optional[float] = None
    current_profit_percent: float = 0.0
    is_private: bool = False
    execution_wallet_key: Optional[str] = None
    sol_spent: float = 0.0
    # Holding that stage percentages are measured against; reset on merge
    stage_base_tokens: float = 0.0
    merged_buys: int = 0
    closing_since: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = new_id("pos")
        if self.stage_base_tokens <= 0:
            self.stage_base_tokens = self.token_amount

    @property
    def key(self) -> Tuple[str, str]:
        return (self.wallet_key, self.mint)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_key": self.wallet_key,
            "mint": self.mint,
            "token_symbol": self.token_symbol,
            "entry_time": to_iso(self.entry_time),
            "entry_price": self.entry_price,
            "token_amount": self.token_amount,
            "total_cost_basis": self.total_cost_basis,
            "strategy_name": self.strategy_name,
            "exit_stages_completed": self.exit_stages_completed,
            "highest_profit_percent": self.highest_profit_percent,
            "status": self.status,
            "current_price": self.current_price,
            "current_profit_percent": self.current_profit_percent,
            "is_private": self.is_private,
            "execution_wallet_key": self.execution_wallet_key,
            "sol_spent": self.sol_spent,
            "stage_base_tokens": self.stage_base_tokens,
            "merged_buys": self.merged_buys,
            "closing_since": to_iso(self.closing_since),
            "updated_at": to_iso(self.updated_at),
            "closed_at": to_iso(self.closed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            id=data["id"],
            wallet_key=data["wallet_key"],
            mint=data["mint"],
            token_symbol=data.get("token_symbol"),
            entry_time=parse_dt(data["entry_time"]),
            entry_price=float(data["entry_price"]),
            token_amount=float(data["token_amount"]),
            total_cost_basis=float(data["total_cost_basis"]),
            strategy_name=data["strategy_name"],
            exit_stages_completed=int(data.get("exit_stages_completed", 0)),
            highest_profit_percent=float(data.get("highest_profit_percent", 0.0)),
            status=data.get("status", PositionStatus.ACTIVE.value),
            current_price=data.get("current_price"),
            current_profit_percent=float(data.get("current_profit_percent", 0.0)),
            is_private=bool(data.get("is_private", False)),
            execution_wallet_key=data.get("execution_wallet_key"),
            sol_spent=float(data.get("sol_spent", 0.0)),
            stage_base_tokens=float(data.get("stage_base_tokens", 0.0)),
            merged_buys=int(data.get("merged_buys", 0)),
            closing_since=parse_dt(data.get("closing_since")),
            updated_at=parse_dt(data.get("updated_at")),
            closed_at=parse_dt(data.get("closed_at")),
        )


class PositionLedger:
    """
    In-memory position index backed by a LedgerStore.

    Responsibilities:
    - Open positions and merge follow-up buys (weighted-average entry)
    - Track current price, profit and the profit watermark
    - Record staged exits, partial sales and closes
    """

    COLLECTION = "positions"

    def __init__(
        self,
        store: LedgerStore,
        clock: Clock,
        writer: Optional[BestEffortWriter] = None,
    ):
        self.store = store
        self.clock = clock
        self.writer = writer
        self._open: Dict[Tuple[str, str], Position] = {}
        self._locks = KeyedLock()

    # ----- loading / queries -----

    def load(self) -> int:
        """Rebuild the open-position index from the store. Returns count loaded."""
        self._open.clear()
        for raw in self.store.scan(self.COLLECTION):
            position = Position.from_dict(raw)
            if not position.is_open:
                continue
            existing = self._open.get(position.key)
            if existing is not None:
                logger.error(
                    f"Duplicate open positions for {position.wallet_key}/{position.mint}: "
                    f"{existing.id} and {position.id}; keeping the newest"
                )
                if existing.entry_time >= position.entry_time:
                    continue
            self._open[position.key] = position
        closing = [p.id for p in self._open.values() if p.status == PositionStatus.CLOSING.value]
        if closing:
            logger.warning(f"Loaded {len(closing)} position(s) still closing from a previous run: {closing}")
        logger.info(f"PositionLedger loaded {len(self._open)} open positions")
        return len(self._open)

    def get_position(self, wallet_key: str, mint: str) -> Optional[Position]:
        position = self._open.get((wallet_key, mint))
        return replace(position) if position else None

    def require_position(self, wallet_key: str, mint: str) -> Position:
        position = self.get_position(wallet_key, mint)
        if position is None:
            raise NotFound(f"No open position for {wallet_key}/{mint}")
        return position

    def active_positions(self) -> List[Position]:
        return [replace(p) for p in list(self._open.values()) if p.status == PositionStatus.ACTIVE.value]

    def open_positions(self) -> List[Position]:
        return [replace(p) for p in list(self._open.values())]

    def positions_for_wallet(self, wallet_key: str) -> List[Position]:
        return [replace(p) for p in list(self._open.values()) if p.wallet_key == wallet_key]

    def all_positions(self, status: Optional[str] = None) -> List[Position]:
        """Every persisted position including closed history."""
        return [Position.from_dict(raw) for raw in self.store.scan(self.COLLECTION, status=status)]

    def open_mints(self) -> List[str]:
        return sorted({mint for (_, mint) in list(self._open.keys())})

    # ----- mutations -----

    def open(self, position: Position) -> Position:
        """
        Register a new position.

        Raises:
            ValidationError: Non-positive amount/cost/price
            InvalidState: An open position already exists for the pair
            PersistenceFailure: Durable write failed (position is indexed)
        """
        if position.token_amount <= 0 or position.total_cost_basis <= 0 or position.entry_price <= 0:
            raise ValidationError(
                f"Position {position.mint} needs positive amount, cost and entry price"
            )
        with self._locks.hold(position.key):
            if position.key in self._open:
                raise InvalidState(
                    f"Open position already exists for {position.wallet_key}/{position.mint}"
                )
            position = replace(position, status=PositionStatus.ACTIVE.value)
            if position.current_price is None:
                position.current_price = position.entry_price
            position.current_profit_percent = self._profit(position, position.current_price)
            position.updated_at = self.clock.now()
            self._open[position.key] = position
            logger.info(
                f"Opened position {position.id}: {position.token_amount:.6f} {position.token_symbol or position.mint} "
                f"@ ${position.entry_price:.8f} (strategy={position.strategy_name})"
            )
            self._persist(position)
            return replace(position)

    def merge_buy(
        self,
        wallet_key: str,
        mint: str,
        added_tokens: float,
        added_cost: float,
        execution_price: float,
    ) -> Position:
        """
        Average a follow-up buy into the active position.

        New entry price is (old_cost + added_cost) / (old_tokens + added_tokens).
        Staged-exit progress restarts against the new basis.

        Raises:
            NotFound: No open position for the pair
            InvalidState: Position is not active (e.g. closing)
            ValidationError: Non-positive amounts
        """
        if added_tokens <= 0 or added_cost <= 0:
            raise ValidationError("merge_buy requires positive added_tokens and added_cost")
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            if position.status != PositionStatus.ACTIVE.value:
                raise InvalidState(
                    f"Cannot merge buy into {position.status} position {position.id}"
                )
            old_tokens = position.token_amount
            old_cost = position.total_cost_basis
            position.token_amount = old_tokens + added_tokens
            position.total_cost_basis = old_cost + added_cost
            position.entry_price = position.total_cost_basis / position.token_amount
            position.exit_stages_completed = 0
            position.stage_base_tokens = position.token_amount
            position.merged_buys += 1
            if execution_price and execution_price > 0:
                position.current_price = execution_price
            if position.current_price:
                position.current_profit_percent = self._profit(position, position.current_price)
            position.updated_at = self.clock.now()
            logger.info(
                f"Merged buy into {position.id}: +{added_tokens:.6f} tokens for {added_cost:.6f}, "
                f"entry {old_cost / old_tokens:.8f} -> {position.entry_price:.8f}, stages reset"
            )
            self._persist(position)
            return replace(position)

    def record_buy(
        self,
        wallet_key: str,
        mint: str,
        tokens: float,
        cost: float,
        execution_price: float,
        strategy_name: str,
        token_symbol: Optional[str] = None,
        is_private: bool = False,
        execution_wallet_key: Optional[str] = None,
        sol_spent: float = 0.0,
    ) -> Position:
        """
        Open a position for a filled buy, or merge it into the active one.

        Args:
            tokens: Tokens received
            cost: Cost in the price unit (USD), so entry_price = cost / tokens
            execution_price: Market price at execution
            sol_spent: Native currency paid, tracked for reporting only
        """
        with self._locks.hold((wallet_key, mint)):
            if (wallet_key, mint) in self._open:
                self.merge_buy(wallet_key, mint, tokens, cost, execution_price)
                position = self._open[(wallet_key, mint)]
                if sol_spent:
                    position.sol_spent += sol_spent
                    self._persist(position)
                return replace(position)
            return self.open(
                Position(
                    wallet_key=wallet_key,
                    mint=mint,
                    token_symbol=token_symbol,
                    entry_time=self.clock.now(),
                    entry_price=cost / tokens if tokens > 0 else 0.0,
                    token_amount=tokens,
                    total_cost_basis=cost,
                    strategy_name=strategy_name,
                    current_price=execution_price if execution_price and execution_price > 0 else None,
                    is_private=is_private,
                    execution_wallet_key=execution_wallet_key,
                    sol_spent=sol_spent,
                )
            )

    def update_price(self, wallet_key: str, mint: str, price: float) -> Position:
        """
        Refresh current price, profit and the profit watermark.

        Placeholder and non-positive prices are ignored and the position is
        returned unchanged. The durable write is best-effort.

        Raises:
            NotFound: No open position for the pair
        """
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            if is_placeholder_price(price):
                logger.debug(f"Ignoring placeholder price for {mint}")
                return replace(position)
            if price is None or price <= 0:
                logger.debug(f"Ignoring non-positive price {price} for {mint}")
                return replace(position)
            profit = self._profit(position, price)
            position.current_price = price
            position.current_profit_percent = profit
            if profit > position.highest_profit_percent:
                position.highest_profit_percent = profit
            position.updated_at = self.clock.now()
            self._persist_best_effort(position)
            return replace(position)

    def advance_stage(self, wallet_key: str, mint: str) -> Position:
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            position.exit_stages_completed += 1
            position.updated_at = self.clock.now()
            logger.info(f"Position {position.id} advanced to stage {position.exit_stages_completed}")
            self._persist(position)
            return replace(position)

    def mark_closing(self, wallet_key: str, mint: str) -> Position:
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            if position.status != PositionStatus.ACTIVE.value:
                raise InvalidState(f"Position {position.id} is already {position.status}")
            now = self.clock.now()
            position.status = PositionStatus.CLOSING.value
            position.closing_since = now
            position.updated_at = now
            self._persist(position)
            return replace(position)

    def reactivate(self, wallet_key: str, mint: str) -> Position:
        """Return a closing position to active (its exit swap did not go through)."""
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            if position.status == PositionStatus.ACTIVE.value:
                return replace(position)
            position.status = PositionStatus.ACTIVE.value
            position.closing_since = None
            position.updated_at = self.clock.now()
            self._persist(position)
            return replace(position)

    def close(self, wallet_key: str, mint: str) -> Position:
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            position.status = PositionStatus.CLOSED.value
            now = self.clock.now()
            position.updated_at = now
            position.closed_at = now
            del self._open[position.key]
            logger.info(f"Closed position {position.id} ({wallet_key}/{mint})")
            self._persist(position)
            return replace(position)

    def record_sale(self, wallet_key: str, mint: str, tokens_sold: float) -> Position:
        """
        Reduce holdings after a sale, keeping the entry price.

        Cost basis shrinks in proportion to the tokens sold. Selling
        everything (or leaving dust) closes the position.
        """
        if tokens_sold <= 0:
            raise ValidationError("tokens_sold must be positive")
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            remaining = position.token_amount - tokens_sold
            if remaining <= DUST_TOKENS:
                return self.close(wallet_key, mint)
            fraction = remaining / position.token_amount
            position.token_amount = remaining
            position.total_cost_basis *= fraction
            position.updated_at = self.clock.now()
            logger.info(
                f"Position {position.id} sold {tokens_sold:.6f} tokens, {remaining:.6f} remaining"
            )
            self._persist(position)
            return replace(position)

    def apply_exit(
        self,
        wallet_key: str,
        mint: str,
        tokens_sold: float,
        stage_index: Optional[int] = None,
        merged_buys: Optional[int] = None,
    ) -> Position:
        """
        Record a confirmed exit trade of ``tokens_sold`` tokens.

        Selling what remains (or leaving dust) closes the position. Otherwise
        the cost basis shrinks in proportion and, for a staged exit, the
        stage counter advances if the position still has ``stage_index``
        stages completed and ``merged_buys`` merges. A buy merged while the
        swap was in flight restarts the stages, so the counter is left as
        the merge set it.

        Args:
            tokens_sold: Tokens the executed swap actually sold
            stage_index: 0-based stage the exit was sized for (None when not staged)
            merged_buys: Position.merged_buys when the exit was sized
        """
        if tokens_sold <= 0:
            raise ValidationError("tokens_sold must be positive")
        with self._locks.hold((wallet_key, mint)):
            position = self._require_open(wallet_key, mint)
            remaining = position.token_amount - tokens_sold
            if remaining <= DUST_TOKENS:
                return self.close(wallet_key, mint)
            position.total_cost_basis *= remaining / position.token_amount
            position.token_amount = remaining
            if stage_index is not None:
                unchanged = (
                    position.exit_stages_completed == stage_index
                    and (merged_buys is None or position.merged_buys == merged_buys)
                )
                if unchanged:
                    position.exit_stages_completed += 1
                else:
                    logger.warning(
                        f"Position {position.id} changed while stage {stage_index + 1} was executing; "
                        f"stage counter left at {position.exit_stages_completed}"
                    )
            position.status = PositionStatus.ACTIVE.value
            position.closing_since = None
            position.updated_at = self.clock.now()
            logger.info(
                f"Position {position.id} sold {tokens_sold:.6f} tokens, {remaining:.6f} remaining, "
                f"{position.exit_stages_completed} stage(s) complete"
            )
            self._persist(position)
            return replace(position)

    @contextmanager
    def exit_guard(self, wallet_key: str, mint: str) -> Iterator[None]:
        """
        Hold the pair's lock across a whole exit (quote, submit, record).

        Merges and price updates from other threads wait until the exit
        has been recorded.
        """
        with self._locks.hold((wallet_key, mint)):
            yield

    def stale_closing(self, older_than: timedelta) -> List[Position]:
        """Positions that have been CLOSING for longer than ``older_than``."""
        cutoff = self.clock.now() - older_than
        stale = []
        for position in list(self._open.values()):
            if position.status != PositionStatus.CLOSING.value:
                continue
            since = position.closing_since or position.updated_at
            if since is None or since <= cutoff:
                stale.append(replace(position))
        return stale

    def statistics(self) -> Dict[str, Any]:
        open_positions = list(self._open.values())
        active = [p for p in open_positions if p.status == PositionStatus.ACTIVE.value]
        return {
            "open": len(open_positions),
            "active": len(active),
            "closing": len(open_positions) - len(active),
            "total_cost_basis": sum(p.total_cost_basis for p in open_positions),
            "by_strategy": _count_by(open_positions, "strategy_name"),
        }

    # ----- internals -----

    @staticmethod
    def _profit(position: Position, price: float) -> float:
        if position.entry_price <= 0:
            return 0.0
        return (price - position.entry_price) / position.entry_price * 100.0

    def _require_open(self, wallet_key: str, mint: str) -> Position:
        position = self._open.get((wallet_key, mint))
        if position is None:
            raise NotFound(f"No open position for {wallet_key}/{mint}")
        return position

    def _persist(self, position: Position) -> None:
        try:
            if self.writer is not None:
                self.writer.write_through(self.COLLECTION, position.id, position.to_dict())
            else:
                self.store.put(self.COLLECTION, position.id, position.to_dict())
        except Exception as e:
            logger.error(f"Failed to persist position {position.id}: {e}")
            raise PersistenceFailure(self.COLLECTION, position.id, e) from e

    def _persist_best_effort(self, position: Position) -> None:
        if self.writer is not None:
            self.writer.submit(self.COLLECTION, position.id, position.to_dict())
            return
        try:
            self.store.put(self.COLLECTION, position.id, position.to_dict())
        except Exception as e:
            logger.warning(f"Price update for {position.id} not persisted: {e}")


def _count_by(items: List[Any], attr: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for item in items:
        value = getattr(item, attr)
        counts[value] = counts.get(value, 0) + 1
    return counts
