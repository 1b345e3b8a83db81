from strategy_lab.backtest.engine import BacktestCancelled, BacktestEngine
from strategy_lab.backtest.metrics import compute_metrics, daily_returns, sharpe_ratio, sortino_ratio
from strategy_lab.backtest.models import (
    BacktestConfig,
    BacktestMetrics,
    BacktestResult,
    BacktestStatus,
    DrawdownPoint,
    EquityPoint,
    Resolution,
)

__all__ = [
    "BacktestCancelled",
    "BacktestConfig",
    "BacktestEngine",
    "BacktestMetrics",
    "BacktestResult",
    "BacktestStatus",
    "DrawdownPoint",
    "EquityPoint",
    "Resolution",
    "compute_metrics",
    "daily_returns",
    "sharpe_ratio",
    "sortino_ratio",
]
