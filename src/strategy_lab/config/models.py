"""Configuration models for reproducible lab runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from strategy_lab.backtest.models import BacktestConfig, Resolution
from strategy_lab.execution.models import MarketSpec
from strategy_lab.execution.paper import SlippageKind, SlippageModel
from strategy_lab.risk.models import RiskLimits
from strategy_lab.runtime.models import LiveStrategyConfig, TradingMode
from strategy_lab.sandbox.policy import SandboxPolicy


@dataclass(frozen=True)
class StrategyFileConfig:
    name: str
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass(frozen=True)
class MarketConfig:
    market_id: str
    base_decimals: int = 8
    quote_decimals: int = 6
    quote_max_precision: int = 2
    base_symbol: str = ""
    quote_symbol: str = ""

    def spec(self) -> MarketSpec:
        return MarketSpec(
            market_id=self.market_id,
            base_decimals=self.base_decimals,
            quote_decimals=self.quote_decimals,
            quote_max_precision=self.quote_max_precision,
            base_symbol=self.base_symbol,
            quote_symbol=self.quote_symbol,
        )


@dataclass(frozen=True)
class BacktestSettings:
    resolution: Resolution = Resolution.H1
    initial_capital: float = 10000.0
    fee_rate: float = 0.001
    slippage_kind: SlippageKind = SlippageKind.PERCENTAGE
    slippage_value: float = 0.05
    timeout_ms: int = 30000
    data_path: Optional[str] = None


@dataclass(frozen=True)
class LiveSettings:
    trading_mode: TradingMode = TradingMode.PAPER
    initial_capital: float = 10000.0
    fee_rate: float = 0.001
    slippage_percent: float = 0.05
    account: Optional[str] = None
    bar_timeout_seconds: float = 10.0
    persist_paper_state: bool = True


@dataclass(frozen=True)
class MonitoringConfig:
    audit_log_path: str = "runtime/audit.log"
    notifier: str = "print"
    notifier_prefix: str = "[LAB]"


@dataclass(frozen=True)
class StorageConfig:
    kind: str = "sqlite"
    path: str = "runtime/lab.db"


@dataclass(frozen=True)
class LabConfig:
    name: str
    version: str
    run_id_prefix: str
    strategy: StrategyFileConfig
    market: MarketConfig
    backtest: BacktestSettings = BacktestSettings()
    live: LiveSettings = LiveSettings()
    risk: RiskLimits = RiskLimits()
    sandbox: SandboxPolicy = SandboxPolicy()
    monitoring: MonitoringConfig = MonitoringConfig()
    storage: StorageConfig = StorageConfig()

    def backtest_config(self) -> BacktestConfig:
        settings = self.backtest
        return BacktestConfig(
            market_id=self.market.market_id,
            resolution=settings.resolution,
            initial_capital=settings.initial_capital,
            fee_rate=settings.fee_rate,
            slippage=SlippageModel(settings.slippage_kind, settings.slippage_value),
            params=dict(self.strategy.params),
            timeout_ms=settings.timeout_ms,
        )

    def live_config(self, strategy_id: str) -> LiveStrategyConfig:
        settings = self.live
        return LiveStrategyConfig(
            strategy_id=strategy_id,
            market_id=self.market.market_id,
            trading_mode=settings.trading_mode,
            initial_capital=settings.initial_capital,
            fee_rate=settings.fee_rate,
            slippage_percent=settings.slippage_percent,
            risk_limits=self.risk,
            account=settings.account,
            bar_timeout_seconds=settings.bar_timeout_seconds,
            persist_paper_state=settings.persist_paper_state,
            params=dict(self.strategy.params),
        )
