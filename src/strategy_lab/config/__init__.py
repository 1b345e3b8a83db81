"""Configuration loading and models."""

from strategy_lab.config.loader import (
    compute_config_hash,
    freeze_config,
    load_config,
    serialize_config,
    verify_config_lock,
)
from strategy_lab.config.models import (
    BacktestSettings,
    LabConfig,
    LiveSettings,
    MarketConfig,
    MonitoringConfig,
    StorageConfig,
    StrategyFileConfig,
)

__all__ = [
    "BacktestSettings",
    "LabConfig",
    "LiveSettings",
    "MarketConfig",
    "MonitoringConfig",
    "StorageConfig",
    "StrategyFileConfig",
    "compute_config_hash",
    "freeze_config",
    "load_config",
    "serialize_config",
    "verify_config_lock",
]
