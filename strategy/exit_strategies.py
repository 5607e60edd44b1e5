"""
Exit Strategy Table

Immutable mapping from strategy name to its exit plan: ordered take-profit
stages, a stop-loss threshold, a max hold time and the trailing/fixed stop
flag.

Two families of strategies:
- Time-based (aggressive, moderate, slow, scalping, breakout, grid,
  conservative): a stage fires only once both its elapsed time and its
  profit target are met.
- Percentage-based (hodl1-3, swing, trailing, takeProfit, dca): stages gate
  on profit only.

The ``manual`` strategy never exits automatically. A stop loss of -100
disables the stop entirely.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from core.exceptions import NotFound, ValidationError

logger = logging.getLogger(__name__)

MANUAL_STRATEGY = "manual"
STOP_LOSS_DISABLED = -100.0


@dataclass(frozen=True)
class ExitStage:
    """One step of a staged take-profit plan."""
    sell_percent: float
    min_profit_percent: float
    time_minutes: Optional[float] = None  # None: no time gate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sell_percent": self.sell_percent,
            "min_profit_percent": self.min_profit_percent,
            "time_minutes": self.time_minutes,
        }


@dataclass(frozen=True)
class StrategyConfig:
    """Exit plan for a position. Stages are consumed strictly in order."""
    name: str
    stages: Tuple[ExitStage, ...]
    max_hold_time_minutes: float
    stop_loss_percent: float
    is_percentage_based: bool
    is_trailing_stop: bool = False
    description: str = ""

    @property
    def is_manual(self) -> bool:
        return self.name == MANUAL_STRATEGY

    @property
    def stop_loss_enabled(self) -> bool:
        return self.stop_loss_percent > STOP_LOSS_DISABLED

    def stage(self, index: int) -> Optional[ExitStage]:
        """Return stage at ``index`` or None once every stage is consumed."""
        if 0 <= index < len(self.stages):
            return self.stages[index]
        return None

    def cumulative_sell_percent(self, index: int) -> float:
        """Sum of sell percents for stages 0..index inclusive."""
        return sum(s.sell_percent for s in self.stages[: index + 1])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stages": [s.to_dict() for s in self.stages],
            "max_hold_time_minutes": self.max_hold_time_minutes,
            "stop_loss_percent": self.stop_loss_percent,
            "is_percentage_based": self.is_percentage_based,
            "is_trailing_stop": self.is_trailing_stop,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "StrategyConfig":
        """Build a strategy from a config mapping (strategies.yaml entry)."""
        try:
            stages = tuple(
                ExitStage(
                    sell_percent=float(raw["sell_percent"]),
                    min_profit_percent=float(raw["min_profit_percent"]),
                    time_minutes=(
                        float(raw["time_minutes"]) if raw.get("time_minutes") is not None else None
                    ),
                )
                for raw in data.get("stages") or []
            )
            config = cls(
                name=name,
                stages=stages,
                max_hold_time_minutes=float(data["max_hold_time_minutes"]),
                stop_loss_percent=float(data["stop_loss_percent"]),
                is_percentage_based=bool(data.get("is_percentage_based", False)),
                is_trailing_stop=bool(data.get("is_trailing_stop", False)),
                description=str(data.get("description", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid strategy '{name}': {e}") from e
        _validate_strategy(config)
        return config


def _validate_strategy(config: StrategyConfig) -> None:
    if config.max_hold_time_minutes <= 0:
        raise ValidationError(f"Strategy {config.name}: max_hold_time_minutes must be > 0")
    if config.stop_loss_percent >= 0:
        raise ValidationError(f"Strategy {config.name}: stop_loss_percent must be negative")
    for idx, stage in enumerate(config.stages, start=1):
        if not 0 < stage.sell_percent <= 100:
            raise ValidationError(
                f"Strategy {config.name} stage {idx}: sell_percent must be in (0, 100]"
            )
        if stage.time_minutes is not None and stage.time_minutes < 0:
            raise ValidationError(
                f"Strategy {config.name} stage {idx}: time_minutes must be >= 0"
            )


def _stages(*rows: Tuple[Optional[float], float, float]) -> Tuple[ExitStage, ...]:
    # (time_minutes, sell_percent, min_profit_percent)
    return tuple(ExitStage(sell_percent=s, min_profit_percent=p, time_minutes=t) for t, s, p in rows)


_BUILTIN = (
    StrategyConfig(
        name=MANUAL_STRATEGY,
        stages=(),
        max_hold_time_minutes=999_999_999,
        stop_loss_percent=STOP_LOSS_DISABLED,
        is_percentage_based=False,
        description="Manual: no automated exits",
    ),
    StrategyConfig(
        name="aggressive",
        stages=_stages((2, 40, 30), (5, 40, 60), (8, 20, 100)),
        max_hold_time_minutes=10,
        stop_loss_percent=-20,
        is_percentage_based=False,
        description="Fast exits for volatile plays (10min max)",
    ),
    StrategyConfig(
        name="moderate",
        stages=_stages((5, 25, 50), (10, 25, 100), (15, 25, 200), (20, 25, 300)),
        max_hold_time_minutes=25,
        stop_loss_percent=-30,
        is_percentage_based=False,
        description="Balanced exits for mid-cap plays (25min max)",
    ),
    StrategyConfig(
        name="slow",
        stages=_stages(
            (5, 10, 50), (10, 10, 100), (15, 15, 150), (20, 15, 200),
            (25, 15, 300), (30, 15, 400), (40, 10, 500), (50, 10, 0),
        ),
        max_hold_time_minutes=60,
        stop_loss_percent=-35,
        is_percentage_based=False,
        description="Patient exits for trend following (60min max)",
    ),
    StrategyConfig(
        name="hodl1",
        stages=_stages((None, 25, 30), (None, 25, 75), (None, 25, 150), (None, 25, 300)),
        max_hold_time_minutes=4320,
        stop_loss_percent=-35,
        is_percentage_based=True,
        description="Percentage-based for DeFi protocols (hours-days)",
    ),
    StrategyConfig(
        name="hodl2",
        stages=_stages(
            (None, 20, 50), (None, 20, 100), (None, 20, 200), (None, 20, 400), (None, 20, 800),
        ),
        max_hold_time_minutes=10080,
        stop_loss_percent=-40,
        is_percentage_based=True,
        description="Percentage-based for utility tokens (days-weeks)",
    ),
    StrategyConfig(
        name="hodl3",
        stages=_stages(
            (None, 10, 100), (None, 10, 200), (None, 10, 400), (None, 10, 900),
            (None, 10, 1900), (None, 10, 4900), (None, 10, 9900),
        ),
        max_hold_time_minutes=43200,
        stop_loss_percent=-50,
        is_percentage_based=True,
        description="Diamond hands for moon shots (weeks-months)",
    ),
    StrategyConfig(
        name="scalping",
        stages=_stages((0.5, 50, 5), (1, 30, 10), (2, 20, 15)),
        max_hold_time_minutes=3,
        stop_loss_percent=-10,
        is_percentage_based=False,
        is_trailing_stop=True,
        description="Ultra-fast 1-3min trades for quick 5-15% gains",
    ),
    StrategyConfig(
        name="swing",
        stages=_stages((None, 25, 40), (None, 25, 80), (None, 25, 120), (None, 25, 200)),
        max_hold_time_minutes=7200,
        stop_loss_percent=-25,
        is_percentage_based=True,
        description="Multi-day trend following for 40-200% gains",
    ),
    StrategyConfig(
        name="breakout",
        stages=_stages((3, 30, 40), (7, 30, 80), (12, 20, 120), (15, 20, 150)),
        max_hold_time_minutes=18,
        stop_loss_percent=-25,
        is_percentage_based=False,
        is_trailing_stop=True,
        description="Volume-based momentum trading for 40-150% gains",
    ),
    StrategyConfig(
        name="trailing",
        stages=_stages(
            (None, 20, 25), (None, 20, 60), (None, 20, 120), (None, 20, 250), (None, 20, 500),
        ),
        max_hold_time_minutes=2880,
        stop_loss_percent=-15,
        is_percentage_based=True,
        is_trailing_stop=True,
        description="Trailing stop locks in profits while riding trends",
    ),
    StrategyConfig(
        name="grid",
        stages=_stages(
            (5, 15, 10), (10, 15, 15), (15, 15, 20), (20, 15, 25), (25, 15, 30), (30, 25, 40),
        ),
        max_hold_time_minutes=35,
        stop_loss_percent=-20,
        is_percentage_based=False,
        description="Range trading with multiple 10-30% exits",
    ),
    StrategyConfig(
        name="conservative",
        stages=_stages((3, 40, 10), (7, 30, 20), (12, 20, 40), (15, 10, 60)),
        max_hold_time_minutes=18,
        stop_loss_percent=-10,
        is_percentage_based=False,
        is_trailing_stop=True,
        description="Safe exits with a tight 10% trailing stop",
    ),
    StrategyConfig(
        name="takeProfit",
        stages=_stages(
            (None, 20, 50), (None, 20, 100), (None, 20, 200), (None, 20, 350), (None, 20, 500),
        ),
        max_hold_time_minutes=10080,
        stop_loss_percent=STOP_LOSS_DISABLED,
        is_percentage_based=True,
        description="Profit targets only, no stop loss",
    ),
    StrategyConfig(
        name="dca",
        stages=_stages(
            (None, 15, 20), (None, 20, 40), (None, 20, 70), (None, 20, 100), (None, 25, 150),
        ),
        max_hold_time_minutes=14400,
        stop_loss_percent=-30,
        is_percentage_based=True,
        description="Conservative exits for averaged-in positions",
    ),
)


class StrategyTable(Mapping[str, StrategyConfig]):
    """Read-only name -> StrategyConfig lookup."""

    def __init__(self, strategies: Mapping[str, StrategyConfig]):
        self._strategies = MappingProxyType(dict(strategies))

    def __getitem__(self, name: str) -> StrategyConfig:
        return self._strategies[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._strategies)

    def __len__(self) -> int:
        return len(self._strategies)

    def get_strategy(self, name: str) -> StrategyConfig:
        """
        Look up a strategy by name.

        Raises:
            NotFound: If no strategy with that name exists
        """
        try:
            return self._strategies[name]
        except KeyError:
            raise NotFound(f"Unknown exit strategy: {name}") from None

    def is_valid(self, name: str) -> bool:
        return name in self._strategies

    def with_overrides(self, overrides: Optional[Mapping[str, Mapping[str, Any]]]) -> "StrategyTable":
        """
        Return a new table with custom strategies merged over this one.

        Args:
            overrides: name -> raw strategy mapping (see StrategyConfig.from_dict)

        Returns:
            New StrategyTable; this table is left untouched
        """
        if not overrides:
            return self
        merged = dict(self._strategies)
        for name, raw in overrides.items():
            if name == MANUAL_STRATEGY:
                raise ValidationError("The manual strategy cannot be overridden")
            merged[name] = StrategyConfig.from_dict(name, raw)
            logger.info(f"Loaded custom exit strategy '{name}' ({len(merged[name].stages)} stages)")
        return StrategyTable(merged)


DEFAULT_STRATEGIES = StrategyTable({s.name: s for s in _BUILTIN})


def get_strategy(name: str) -> StrategyConfig:
    """Look up a built-in strategy by name."""
    return DEFAULT_STRATEGIES.get_strategy(name)
