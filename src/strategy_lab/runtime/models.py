"""Live runner configuration and state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from strategy_lab.risk.models import RiskLimits, RiskStatus
from strategy_lab.strategy.models import Signal, serialize_time


class TradingMode(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class RunnerStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class LiveStrategyConfig:
    strategy_id: str
    market_id: str
    trading_mode: TradingMode = TradingMode.PAPER
    initial_capital: float = 10000.0
    fee_rate: float = 0.001
    slippage_percent: float = 0.05
    risk_limits: RiskLimits = field(default_factory=RiskLimits)
    account: Optional[str] = None
    bar_timeout_seconds: float = 10.0
    persist_paper_state: bool = True
    params: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "market_id": self.market_id,
            "trading_mode": self.trading_mode.value,
            "initial_capital": self.initial_capital,
            "fee_rate": self.fee_rate,
            "slippage_percent": self.slippage_percent,
            "risk_limits": self.risk_limits.to_dict(),
            "account": self.account,
            "bar_timeout_seconds": self.bar_timeout_seconds,
            "persist_paper_state": self.persist_paper_state,
            "params": dict(self.params),
        }


@dataclass(frozen=True)
class LiveStrategyState:
    strategy_id: str
    market_id: str
    mode: TradingMode
    status: RunnerStatus = RunnerStatus.IDLE
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    bars_processed: int = 0
    signals_generated: int = 0
    orders_placed: int = 0
    trades_executed: int = 0
    current_price: Optional[float] = None
    last_bar_time: Optional[datetime] = None
    last_signal: Optional[Signal] = None
    equity: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    risk: Optional[RiskStatus] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "market_id": self.market_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "started_at": serialize_time(self.started_at),
            "stopped_at": serialize_time(self.stopped_at),
            "bars_processed": self.bars_processed,
            "signals_generated": self.signals_generated,
            "orders_placed": self.orders_placed,
            "trades_executed": self.trades_executed,
            "current_price": self.current_price,
            "last_bar_time": serialize_time(self.last_bar_time),
            "last_signal": self.last_signal.to_dict() if self.last_signal else None,
            "equity": self.equity,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "is_halted": self.risk.is_halted if self.risk else False,
            "halt_reason": self.risk.halt_reason if self.risk else None,
            "error": self.error,
        }
