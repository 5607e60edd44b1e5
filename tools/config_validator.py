"""
Configuration Validation Module

Validates app.yaml and (optional) strategies.yaml against Pydantic schemas.
Ensures config files are correct before the runtime starts its loops.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


# ===== app.yaml Schema =====
class AppSection(BaseModel):
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|PAPER|LIVE)$", description="Execution mode")
    name: str = Field(default="autotrader", min_length=1)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default=None, description="Log file path; stream only when unset")


class LoopsConfig(BaseModel):
    """Scheduler intervals"""
    price_tick_seconds: float = Field(default=5.0, gt=0)
    limit_order_seconds: float = Field(default=30.0, gt=0)
    dca_seconds: float = Field(default=60.0, gt=0)
    jitter_pct: float = Field(default=0.0, ge=0, le=20, description="Random extra sleep, % of interval")


class ExitsConfig(BaseModel):
    custodied_wallets: List[str] = Field(default_factory=list, description="Wallets the bot signs for")
    auto_execute_private: bool = Field(default=True)
    slippage_bps: int = Field(default=300, ge=0, le=10_000)
    prepared_tx_lifetime_seconds: float = Field(default=90.0, gt=0)
    closing_timeout_seconds: float = Field(default=300.0, gt=0, description="Alert on positions closing longer than this")


class PendingSellsConfig(BaseModel):
    expiry_minutes: float = Field(default=30.0, gt=0)
    retention_days: float = Field(default=7.0, gt=0)


class LimitOrdersConfig(BaseModel):
    default_slippage_bps: int = Field(default=200, ge=0, le=10_000)
    retention_days: float = Field(default=7.0, gt=0)


class DCAConfig(BaseModel):
    default_slippage_bps: int = Field(default=200, ge=0, le=10_000)
    retention_days: float = Field(default=30.0, gt=0)


class StoreConfig(BaseModel):
    backend: str = Field(default="json", pattern="^(json|memory)$")
    data_dir: str = Field(default="data/ledger", min_length=1)
    flush_interval_seconds: float = Field(default=2.0, gt=0, le=60)


class PriceFeedConfig(BaseModel):
    provider: str = Field(default="dexscreener", pattern="^dexscreener$")
    base_url: str = Field(default="https://api.dexscreener.com/latest/dex/tokens")
    timeout_seconds: float = Field(default=10.0, gt=0)
    cache_ttl_seconds: float = Field(default=3.0, ge=0)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MetricsConfig(BaseModel):
    enabled: bool = True
    port: Optional[int] = Field(default=None, ge=1, le=65535)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    model_config = ConfigDict(extra="forbid")

    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loops: LoopsConfig = Field(default_factory=LoopsConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    pending_sells: PendingSellsConfig = Field(default_factory=PendingSellsConfig)
    limit_orders: LimitOrdersConfig = Field(default_factory=LimitOrdersConfig)
    dca: DCAConfig = Field(default_factory=DCAConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    price_feed: PriceFeedConfig = Field(default_factory=PriceFeedConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


# ===== strategies.yaml Schema =====
class ExitStageSchema(BaseModel):
    sell_percent: float = Field(gt=0, le=100)
    min_profit_percent: float
    time_minutes: Optional[float] = Field(default=None, ge=0)


class ExitStrategySchema(BaseModel):
    stages: List[ExitStageSchema] = Field(default_factory=list)
    max_hold_time_minutes: float = Field(gt=0)
    stop_loss_percent: float = Field(lt=0, ge=-100, description="Negative %; -100 disables")
    is_percentage_based: bool = False
    is_trailing_stop: bool = False
    description: str = ""

    @model_validator(mode="after")
    def trailing_needs_stop(self) -> "ExitStrategySchema":
        if self.is_trailing_stop and self.stop_loss_percent <= -100:
            raise ValueError("is_trailing_stop requires a stop_loss_percent above -100")
        return self


class StrategiesSchema(BaseModel):
    strategies: Dict[str, ExitStrategySchema] = Field(default_factory=dict)

    @field_validator("strategies")
    @classmethod
    def manual_is_reserved(cls, v: Dict[str, ExitStrategySchema]) -> Dict[str, ExitStrategySchema]:
        if "manual" in v:
            raise ValueError("'manual' is built in and cannot be redefined")
        return v


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type, required: bool = True) -> List[str]:
    errors: List[str] = []
    path = config_dir / filename
    if not required and not path.exists():
        return errors

    try:
        config = load_yaml_file(path)
        if not isinstance(config, dict):
            errors.append(f"{filename}: top level must be a mapping")
            return errors
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_strategies(config_dir: Path) -> List[str]:
    """Validate strategies.yaml if present."""
    return _validate_file(config_dir, "strategies.yaml", StrategiesSchema, required=False)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across sections.

    Detects:
    - Pending sells that expire before their prepared transaction is refreshed
    - A price tick slower than the prepared-transaction lifetime
    - LIVE mode backed by the in-memory store
    """
    errors: List[str] = []
    try:
        app = load_yaml_file(config_dir / "app.yaml")
    except (FileNotFoundError, yaml.YAMLError):
        return errors

    exits = app.get("exits") or {}
    pending = app.get("pending_sells") or {}
    loops = app.get("loops") or {}

    lifetime = float(exits.get("prepared_tx_lifetime_seconds", 90))
    expiry_seconds = float(pending.get("expiry_minutes", 30)) * 60
    if expiry_seconds < lifetime:
        errors.append(
            f"app.yaml: pending_sells.expiry_minutes ({expiry_seconds / 60:g}) is shorter than "
            f"exits.prepared_tx_lifetime_seconds ({lifetime:g}s)"
        )

    tick = float(loops.get("price_tick_seconds", 5))
    if tick >= lifetime:
        errors.append(
            f"app.yaml: loops.price_tick_seconds ({tick:g}) must be below "
            f"exits.prepared_tx_lifetime_seconds ({lifetime:g})"
        )

    mode = str((app.get("app") or {}).get("mode", "DRY_RUN")).upper()
    store = app.get("store") or {}
    if mode == "LIVE" and str(store.get("backend", "json")).lower() == "memory":
        errors.append("app.yaml: LIVE mode requires a durable store (store.backend: json)")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors: List[str] = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_strategies(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")
    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    print("\n✅ All configuration files are valid!\n")
    sys.exit(0)
