"""Backtest configuration and result models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from strategy_lab.execution.models import Trade
from strategy_lab.execution.paper import SlippageModel
from strategy_lab.sandbox.protocol import DEFAULT_EXECUTE_TIMEOUT_MS
from strategy_lab.strategy.models import Signal, serialize_time


class Resolution(str, Enum):
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1D"


class BacktestStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BacktestConfig:
    market_id: str
    resolution: Resolution = Resolution.H1
    initial_capital: float = 10000.0
    fee_rate: float = 0.001
    slippage: SlippageModel = field(default_factory=SlippageModel)
    params: dict[str, Any] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_EXECUTE_TIMEOUT_MS
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "market_id": self.market_id,
            "resolution": self.resolution.value,
            "initial_capital": self.initial_capital,
            "fee_rate": self.fee_rate,
            "slippage": self.slippage.to_dict(),
            "params": dict(self.params),
            "timeout_ms": self.timeout_ms,
            "start": serialize_time(self.start),
            "end": serialize_time(self.end),
        }


@dataclass(frozen=True)
class EquityPoint:
    time: datetime
    equity: float
    cash: float
    position_value: float
    drawdown: float
    drawdown_percent: float

    def to_dict(self) -> dict:
        return {
            "time": serialize_time(self.time),
            "equity": self.equity,
            "cash": self.cash,
            "position_value": self.position_value,
            "drawdown": self.drawdown,
            "drawdown_percent": self.drawdown_percent,
        }


@dataclass(frozen=True)
class DrawdownPoint:
    time: datetime
    drawdown: float
    drawdown_percent: float


@dataclass(frozen=True)
class BacktestMetrics:
    total_return: float = 0.0
    total_return_percent: float = 0.0
    annualized_return: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    max_drawdown_duration_days: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    average_trade: float = 0.0
    expectancy: float = 0.0
    total_volume: float = 0.0
    total_fees: float = 0.0
    total_slippage: float = 0.0
    trading_days: int = 0
    profitable_days: int = 0
    volatility: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BacktestResult:
    id: str
    strategy_id: str
    config: BacktestConfig
    status: BacktestStatus = BacktestStatus.PENDING
    progress: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metrics: BacktestMetrics = field(default_factory=BacktestMetrics)
    trades: list[Trade] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    drawdown_curve: list[DrawdownPoint] = field(default_factory=list)
    signals: list[Signal] = field(default_factory=list)
    bar_errors: list[dict] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    error: Optional[str] = None
    execution_time_ms: float = 0.0

    @property
    def final_equity(self) -> float:
        if not self.equity_curve:
            return self.config.initial_capital
        return self.equity_curve[-1].equity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "strategy_id": self.strategy_id,
            "config": self.config.to_dict(),
            "status": self.status.value,
            "progress": self.progress,
            "started_at": serialize_time(self.started_at),
            "completed_at": serialize_time(self.completed_at),
            "metrics": self.metrics.to_dict(),
            "trades": [trade.to_dict() for trade in self.trades],
            "equity_curve": [point.to_dict() for point in self.equity_curve],
            "signals": [signal.to_dict() for signal in self.signals],
            "bar_errors": list(self.bar_errors),
            "logs": list(self.logs),
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
        }
