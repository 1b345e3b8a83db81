"""Load and freeze lab configuration files."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from strategy_lab.backtest.models import Resolution
from strategy_lab.config.models import (
    BacktestSettings,
    LabConfig,
    LiveSettings,
    MarketConfig,
    MonitoringConfig,
    StorageConfig,
    StrategyFileConfig,
)
from strategy_lab.execution.paper import SlippageKind
from strategy_lab.risk.models import RiskLimits
from strategy_lab.runtime.models import TradingMode
from strategy_lab.sandbox.policy import ALLOWED_IMPORTS, SandboxPolicy

STORAGE_KINDS = ("sqlite", "memory")
NOTIFIERS = ("print", "logging")


def load_config(path: str | Path) -> LabConfig:
    path = Path(path)
    data = _load_yaml(path)

    name = str(_require(data, "name"))
    version = str(_require(data, "version"))
    run_id_prefix = str(data.get("run_id_prefix", name))

    strategy = _parse_strategy(_require(data, "strategy"), path.parent)
    market = _parse_market(_require(data, "market"))

    return LabConfig(
        name=name,
        version=version,
        run_id_prefix=run_id_prefix,
        strategy=strategy,
        market=market,
        backtest=_parse_backtest(data.get("backtest") or {}),
        live=_parse_live(data.get("live") or {}),
        risk=_parse_risk(data.get("risk") or {}),
        sandbox=_parse_sandbox(data.get("sandbox") or {}),
        monitoring=_parse_monitoring(data.get("monitoring") or {}),
        storage=_parse_storage(data.get("storage") or {}),
    )


def compute_config_hash(path: str | Path) -> str:
    path = Path(path)
    content = path.read_bytes()
    return hashlib.sha256(content).hexdigest()


def freeze_config(
    path: str | Path,
    lock_path: Optional[str | Path] = None,
    strategy_path: Optional[str | Path] = None,
) -> Path:
    """Write a lock file pinning the config, and optionally its strategy script, by hash."""
    path = Path(path)
    config_hash = compute_config_hash(path)
    if lock_path is None:
        lock_path = path.with_suffix(path.suffix + ".lock.json")
    lock_path = Path(lock_path)

    payload = {
        "config_path": str(path),
        "config_hash": config_hash,
        "frozen_at_utc": datetime.now(timezone.utc).isoformat(),
    }
    if strategy_path is not None:
        payload["strategy_path"] = str(strategy_path)
        payload["strategy_hash"] = compute_config_hash(strategy_path)
    lock_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return lock_path


def verify_config_lock(path: str | Path, lock_path: Optional[str | Path] = None) -> bool:
    path = Path(path)
    if lock_path is None:
        lock_path = path.with_suffix(path.suffix + ".lock.json")
    lock_path = Path(lock_path)
    if not lock_path.exists():
        return False
    payload = json.loads(lock_path.read_text(encoding="utf-8"))
    if payload.get("config_hash") != compute_config_hash(path):
        return False
    if "strategy_hash" in payload:
        strategy_path = Path(payload["strategy_path"])
        if not strategy_path.exists():
            return False
        return payload["strategy_hash"] == compute_config_hash(strategy_path)
    return True


def _load_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Config must be a mapping")
    return data


def _require(data: dict[str, Any], key: str) -> Any:
    if key not in data:
        raise ValueError(f"Missing required config key: {key}")
    return data[key]


def _parse_enum(enum_cls, value: Any, key: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValueError(f"Invalid {key}: {value}") from exc


def _parse_choice(value: Any, choices: tuple[str, ...], key: str) -> str:
    value = str(value)
    if value not in choices:
        raise ValueError(f"Invalid {key}: {value}")
    return value


def _parse_strategy(data: dict[str, Any], base_dir: Path) -> StrategyFileConfig:
    script = Path(str(_require(data, "path")))
    if not script.is_absolute():
        script = base_dir / script
    return StrategyFileConfig(
        name=str(_require(data, "name")),
        path=str(script),
        params=dict(data.get("params") or {}),
        description=str(data.get("description", "")),
    )


def _parse_market(data: dict[str, Any]) -> MarketConfig:
    return MarketConfig(
        market_id=str(_require(data, "market_id")),
        base_decimals=int(data.get("base_decimals", 8)),
        quote_decimals=int(data.get("quote_decimals", 6)),
        quote_max_precision=int(data.get("quote_max_precision", 2)),
        base_symbol=str(data.get("base_symbol", "")),
        quote_symbol=str(data.get("quote_symbol", "")),
    )


def _parse_backtest(data: dict[str, Any]) -> BacktestSettings:
    slippage = data.get("slippage") or {}
    return BacktestSettings(
        resolution=_parse_enum(Resolution, data.get("resolution", "1h"), "resolution"),
        initial_capital=float(data.get("initial_capital", 10000.0)),
        fee_rate=float(data.get("fee_rate", 0.001)),
        slippage_kind=_parse_enum(SlippageKind, slippage.get("kind", "percentage"), "slippage.kind"),
        slippage_value=float(slippage.get("value", 0.05)),
        timeout_ms=int(data.get("timeout_ms", 30000)),
        data_path=data.get("data_path"),
    )


def _parse_live(data: dict[str, Any]) -> LiveSettings:
    return LiveSettings(
        trading_mode=_parse_enum(TradingMode, data.get("trading_mode", "paper"), "trading_mode"),
        initial_capital=float(data.get("initial_capital", 10000.0)),
        fee_rate=float(data.get("fee_rate", 0.001)),
        slippage_percent=float(data.get("slippage_percent", 0.05)),
        account=data.get("account"),
        bar_timeout_seconds=float(data.get("bar_timeout_seconds", 10.0)),
        persist_paper_state=bool(data.get("persist_paper_state", True)),
    )


def _parse_risk(data: dict[str, Any]) -> RiskLimits:
    return RiskLimits.from_dict(data)


def _parse_sandbox(data: dict[str, Any]) -> SandboxPolicy:
    allowed = tuple(data.get("allowed_imports", ALLOWED_IMPORTS))
    extra = [module for module in allowed if module not in ALLOWED_IMPORTS]
    if extra:
        raise ValueError(f"Invalid allowed_imports: {extra[0]}")
    return SandboxPolicy(
        timeout_ms=int(data.get("timeout_ms", 30000)),
        memory_limit_mb=int(data.get("memory_limit_mb", 256)),
        max_iterations=int(data.get("max_iterations", 1_000_000)),
        max_output_bytes=int(data.get("max_output_bytes", 1_048_576)),
        allowed_imports=allowed,
    )


def _parse_monitoring(data: dict[str, Any]) -> MonitoringConfig:
    return MonitoringConfig(
        audit_log_path=str(data.get("audit_log_path", "runtime/audit.log")),
        notifier=_parse_choice(data.get("notifier", "print"), NOTIFIERS, "notifier"),
        notifier_prefix=str(data.get("notifier_prefix", "[LAB]")),
    )


def _parse_storage(data: dict[str, Any]) -> StorageConfig:
    return StorageConfig(
        kind=_parse_choice(data.get("kind", "sqlite"), STORAGE_KINDS, "storage kind"),
        path=str(data.get("path", "runtime/lab.db")),
    )


def serialize_config(config: LabConfig) -> dict[str, Any]:
    payload = asdict(config)
    payload["backtest"]["resolution"] = config.backtest.resolution.value
    payload["backtest"]["slippage_kind"] = config.backtest.slippage_kind.value
    payload["live"]["trading_mode"] = config.live.trading_mode.value
    payload["sandbox"]["allowed_imports"] = list(config.sandbox.allowed_imports)
    return payload
