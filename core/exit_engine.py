"""
Exit Strategy Engine

Read-only exit decision for a single position against its strategy.

Checks, in fixed priority order:
1. manual strategy: never exits
2. stop loss (trailing from the profit watermark, or fixed from entry)
3. max hold time
4. the next staged take-profit (profit only, or profit + elapsed time)

The engine never mutates the position. Watermark updates happen in the
ledger on every price tick, and the stage counter only advances once the
resulting trade is confirmed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from strategy.exit_strategies import StrategyConfig

logger = logging.getLogger(__name__)

REASON_MANUAL = "manual"
REASON_HOLD = "hold"
REASON_STOP_LOSS = "stop loss"
REASON_TRAILING_STOP = "trailing stop"
REASON_MAX_HOLD = "max hold"


@dataclass(frozen=True)
class ExitDecision:
    """Outcome of evaluate_exit()."""
    should_exit: bool
    sell_percentage: float
    reason: str
    profit_percent: float = 0.0
    held_minutes: float = 0.0
    stage_index: Optional[int] = None  # 0-based stage that fired
    detail: str = ""

    @property
    def is_full_exit(self) -> bool:
        return self.should_exit and self.sell_percentage >= 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_exit": self.should_exit,
            "sell_percentage": self.sell_percentage,
            "reason": self.reason,
            "profit_percent": self.profit_percent,
            "held_minutes": self.held_minutes,
            "stage_index": self.stage_index,
            "detail": self.detail,
        }


def profit_percent(entry_price: float, current_price: float) -> float:
    """Percent change from entry price; 0 when the entry price is unusable."""
    if entry_price <= 0:
        return 0.0
    return (current_price - entry_price) / entry_price * 100.0


def held_minutes(entry_time: datetime, now: datetime) -> float:
    return max(0.0, (now - entry_time).total_seconds() / 60.0)


def tokens_to_sell(position, decision: ExitDecision, strategy: StrategyConfig) -> float:
    """
    Token amount an exit decision sells from ``position``.

    Stage percentages are shares of ``stage_base_tokens`` (the holding when
    staged exits last restarted), capped at what is left. The final stage,
    or any stage that brings the cumulative percentage to 100, sells the
    remainder. Full exits sell everything held.
    """
    remaining = position.token_amount
    if not decision.should_exit or remaining <= 0:
        return 0.0
    if decision.sell_percentage >= 100:
        return remaining
    index = decision.stage_index
    if index is None:
        return remaining * decision.sell_percentage / 100.0
    if index >= len(strategy.stages) - 1 or strategy.cumulative_sell_percent(index) >= 100 - 1e-9:
        return remaining
    base = position.stage_base_tokens or remaining
    return min(remaining, base * decision.sell_percentage / 100.0)


def evaluate_exit(position, current_price: float, strategy: StrategyConfig, now: datetime) -> ExitDecision:
    """
    Decide whether a position should (partially) exit.

    Args:
        position: Position with entry_price, entry_time, highest_profit_percent
            and exit_stages_completed
        current_price: Latest price in USD
        strategy: Strategy assigned to the position
        now: Evaluation time (timezone-aware)

    Returns:
        ExitDecision with sell_percentage 100 for stop loss and max hold,
        the stage's sell percent for staged exits, 0 otherwise
    """
    if strategy.is_manual:
        return ExitDecision(False, 0.0, REASON_MANUAL)

    profit = profit_percent(position.entry_price, current_price)
    held = held_minutes(position.entry_time, now)

    if strategy.stop_loss_enabled:
        if strategy.is_trailing_stop:
            peak = max(position.highest_profit_percent, profit)
            drawdown = peak - profit
            if drawdown >= abs(strategy.stop_loss_percent):
                return ExitDecision(
                    True, 100.0, REASON_TRAILING_STOP, profit, held,
                    detail=f"dropped {drawdown:.2f}% from peak {peak:.2f}%",
                )
        elif profit <= strategy.stop_loss_percent:
            return ExitDecision(
                True, 100.0, REASON_STOP_LOSS, profit, held,
                detail=f"profit {profit:.2f}% <= {strategy.stop_loss_percent:.2f}%",
            )

    if held >= strategy.max_hold_time_minutes:
        return ExitDecision(
            True, 100.0, REASON_MAX_HOLD, profit, held,
            detail=f"held {held:.1f}m >= {strategy.max_hold_time_minutes:g}m",
        )

    index = position.exit_stages_completed
    stage = strategy.stage(index)
    if stage is not None and profit >= stage.min_profit_percent:
        time_gate_met = (
            strategy.is_percentage_based
            or stage.time_minutes is None
            or held >= stage.time_minutes
        )
        if time_gate_met:
            return ExitDecision(
                True, stage.sell_percent, f"stage {index + 1}", profit, held,
                stage_index=index,
                detail=f"+{profit:.1f}% after {held:.1f}m",
            )

    return ExitDecision(False, 0.0, REASON_HOLD, profit, held)
