"""Performance metrics computed from an equity curve and trade list."""

from __future__ import annotations

import math
from datetime import date

import numpy as np

from strategy_lab.backtest.models import BacktestMetrics, EquityPoint
from strategy_lab.execution.models import Trade

TRADING_DAYS_PER_YEAR = 252
NO_LOSS_PROFIT_FACTOR = 999.0
SECONDS_PER_YEAR = 365.25 * 86400


def daily_closes(points: list[EquityPoint]) -> list[tuple[date, float]]:
    closes: dict[date, float] = {}
    for point in points:
        closes[point.time.date()] = point.equity
    return sorted(closes.items())


def daily_returns(points: list[EquityPoint], initial_capital: float) -> np.ndarray:
    """Day-over-day returns of the last equity of each UTC day, starting from the initial capital."""
    closes = [equity for _, equity in daily_closes(points)]
    if not closes:
        return np.array([], dtype=float)
    series = np.array([initial_capital, *closes], dtype=float)
    previous = series[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(previous != 0, np.diff(series) / previous, 0.0)
    return returns


def sharpe_ratio(returns: np.ndarray) -> float:
    if len(returns) < 2:
        return 0.0
    std = float(np.std(returns, ddof=1))
    if std == 0:
        return 0.0
    return float(np.mean(returns)) / std * math.sqrt(TRADING_DAYS_PER_YEAR)


def sortino_ratio(returns: np.ndarray) -> float:
    if len(returns) < 2:
        return 0.0
    downside = np.minimum(returns, 0.0)
    deviation = float(np.sqrt(np.mean(downside**2)))
    if deviation == 0:
        return sharpe_ratio(returns)
    return float(np.mean(returns)) / deviation * math.sqrt(TRADING_DAYS_PER_YEAR)


def annualized_return(points: list[EquityPoint], initial_capital: float, total_return_percent: float) -> float:
    if len(points) < 2 or initial_capital <= 0:
        return total_return_percent
    years = (points[-1].time - points[0].time).total_seconds() / SECONDS_PER_YEAR
    final = points[-1].equity
    if years < 1.0 / 365.25 or final <= 0:
        return total_return_percent
    growth = math.log(final / initial_capital) / years
    if growth > 700:
        return math.inf
    return (math.exp(growth) - 1.0) * 100.0


def max_drawdown_duration_days(points: list[EquityPoint]) -> float:
    longest = 0.0
    peak = None
    peak_time = None
    for point in points:
        if peak is None or point.equity >= peak:
            peak = point.equity
            peak_time = point.time
            continue
        longest = max(longest, (point.time - peak_time).total_seconds() / 86400.0)
    return longest


def compute_metrics(points: list[EquityPoint], trades: list[Trade], initial_capital: float) -> BacktestMetrics:
    final_equity = points[-1].equity if points else initial_capital
    total_return = final_equity - initial_capital
    total_return_percent = total_return / initial_capital * 100.0 if initial_capital else 0.0

    returns = daily_returns(points, initial_capital)
    sharpe = sharpe_ratio(returns)
    sortino = sortino_ratio(returns)
    volatility = float(np.std(returns, ddof=1)) * math.sqrt(TRADING_DAYS_PER_YEAR) * 100.0 if len(returns) > 1 else 0.0

    annualized = annualized_return(points, initial_capital, total_return_percent)
    max_drawdown = max((point.drawdown for point in points), default=0.0)
    max_drawdown_percent = max((point.drawdown_percent for point in points), default=0.0)
    calmar = annualized / max_drawdown_percent if max_drawdown_percent > 0 else 0.0

    closed = np.array([trade.pnl for trade in trades if trade.pnl is not None], dtype=float)
    wins = closed[closed > 0]
    losses = closed[closed < 0]
    gross_profit = float(wins.sum())
    gross_loss = float(-losses.sum())
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = NO_LOSS_PROFIT_FACTOR if gross_profit > 0 else 0.0

    total_trades = len(closed)
    win_rate = len(wins) / total_trades * 100.0 if total_trades else 0.0
    average_win = float(wins.mean()) if len(wins) else 0.0
    average_loss = float(losses.mean()) if len(losses) else 0.0
    expectancy = win_rate / 100.0 * average_win + (1.0 - win_rate / 100.0) * average_loss if total_trades else 0.0

    return BacktestMetrics(
        total_return=total_return,
        total_return_percent=total_return_percent,
        annualized_return=annualized,
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        calmar_ratio=calmar,
        max_drawdown=max_drawdown,
        max_drawdown_percent=max_drawdown_percent,
        max_drawdown_duration_days=max_drawdown_duration_days(points),
        total_trades=total_trades,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=win_rate,
        profit_factor=profit_factor,
        average_win=average_win,
        average_loss=average_loss,
        largest_win=float(wins.max()) if len(wins) else 0.0,
        largest_loss=float(losses.min()) if len(losses) else 0.0,
        average_trade=float(closed.mean()) if total_trades else 0.0,
        expectancy=expectancy,
        total_volume=sum(trade.value for trade in trades),
        total_fees=sum(trade.fee for trade in trades),
        total_slippage=sum(trade.slippage for trade in trades),
        trading_days=len({trade.time.date() for trade in trades}),
        profitable_days=int((returns > 0).sum()),
        volatility=volatility,
    )
