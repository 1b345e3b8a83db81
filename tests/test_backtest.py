from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from strategy_lab.backtest import (
    BacktestConfig,
    BacktestEngine,
    BacktestStatus,
    EquityPoint,
    compute_metrics,
    daily_returns,
    sharpe_ratio,
    sortino_ratio,
)
from strategy_lab.execution import OrderSide, SlippageKind, SlippageModel, Trade
from strategy_lab.monitoring import AuditLog
from strategy_lab.sandbox.bridge import SandboxExecutionResult
from strategy_lab.strategy import Bar, Signal, SignalType, Strategy

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _bars(count: int, price: float = 100.0, step: float = 0.0) -> list[Bar]:
    bars = []
    for i in range(count):
        close = price + step * i
        bars.append(Bar(START + timedelta(hours=i), close, close + 1, close - 1, close, 10.0))
    return bars


class FakeBridge:
    def __init__(self, result: SandboxExecutionResult) -> None:
        self.result = result
        self.calls: list[dict] = []

    def execute(self, code, bars, params=None, timeout_ms=30000, position=None, progress=None):
        self.calls.append({"code": code, "bars": len(bars), "params": params, "timeout_ms": timeout_ms})
        if progress is not None:
            progress(50.0, "half")
            progress(100.0, "done")
        return self.result


def _config(**kwargs) -> BacktestConfig:
    kwargs.setdefault("slippage", SlippageModel(SlippageKind.NONE, 0.0))
    return BacktestConfig(market_id="BTC-USDC", **kwargs)


def _strategy() -> Strategy:
    return Strategy.create("fake", "class Strategy:\n    pass\n", config_values={"period": 5})


def test_no_signals_keeps_flat_equity():
    bridge = FakeBridge(SandboxExecutionResult(success=True, bars_processed=100))
    progress = []
    result = BacktestEngine(bridge).run(
        _strategy(),
        _bars(100),
        _config(params={"period": 7}),
        progress=lambda percent, message: progress.append(percent),
    )

    assert result.status == BacktestStatus.COMPLETED
    assert result.trades == []
    assert result.metrics.total_trades == 0
    assert result.metrics.total_return == 0.0
    assert result.metrics.profit_factor == 0.0
    assert len(result.equity_curve) == 100
    assert all(point.equity == 10000 for point in result.equity_curve)
    assert bridge.calls[0]["params"] == {"period": 7}
    assert progress[0] == 5.0
    assert progress[-1] == 100.0
    assert progress == sorted(progress)
    assert result.progress == 100.0


def test_signals_fill_at_matching_bar_close_and_residual_closes():
    bars = _bars(10, price=100.0, step=1.0)
    signals = [Signal(type=SignalType.BUY, quantity=2.0, time=bars[2].time)]
    bridge = FakeBridge(SandboxExecutionResult(success=True, signals=signals, bars_processed=10))
    result = BacktestEngine(bridge).run(_strategy(), bars, _config(fee_rate=0.0))

    assert result.status == BacktestStatus.COMPLETED
    assert [trade.side for trade in result.trades] == [OrderSide.BUY, OrderSide.SELL]
    assert result.trades[0].price == 102.0
    assert result.trades[1].price == 109.0
    assert result.trades[1].pnl == pytest.approx(14.0)
    assert result.equity_curve[-1].equity == pytest.approx(10014.0)
    assert result.equity_curve[-1].position_value == pytest.approx(0.0)
    assert result.metrics.total_trades == 1
    assert result.metrics.winning_trades == 1
    assert result.metrics.profit_factor == 999.0
    assert result.metrics.total_return == pytest.approx(14.0)


def test_residual_close_reason_recorded():
    bars = _bars(5)
    signals = [Signal(type=SignalType.BUY, quantity=1.0, time=bars[0].time)]
    engine = BacktestEngine(FakeBridge(SandboxExecutionResult(success=True, signals=signals)))
    result = engine.run(_strategy(), bars, _config())
    assert len(result.trades) == 2
    assert result.final_equity == pytest.approx(result.equity_curve[-1].equity)


def test_execution_failure_marks_backtest_failed(tmp_path):
    audit = AuditLog(tmp_path / "audit.log")
    bridge = FakeBridge(SandboxExecutionResult(success=False, error="NameError: boom", error_type="runtime"))
    result = BacktestEngine(bridge, audit_log=audit).run(_strategy(), _bars(3), _config())
    assert result.status == BacktestStatus.FAILED
    assert result.error == "NameError: boom"
    assert result.completed_at is not None
    events = [record["event"] for record in audit.read()]
    assert events == ["backtest_started", "backtest_failed"]


def test_empty_bars_fail():
    result = BacktestEngine(FakeBridge(SandboxExecutionResult(success=True))).run(_strategy(), [], _config())
    assert result.status == BacktestStatus.FAILED
    assert result.error == "No historical bars supplied"


def test_cancel_during_run():
    bridge = FakeBridge(SandboxExecutionResult(success=True))
    engine = BacktestEngine(bridge)

    def on_progress(percent: float, message: str) -> None:
        assert engine.is_running("bt-1")
        engine.cancel("bt-1")

    result = engine.run(_strategy(), _bars(20), _config(), progress=on_progress, backtest_id="bt-1")
    assert result.status == BacktestStatus.CANCELLED
    assert result.error == "Backtest cancelled"
    assert engine.is_running("bt-1") is False
    assert engine.cancel("bt-1") is False


def test_result_serializes():
    bars = _bars(4)
    signals = [Signal(type=SignalType.BUY, quantity=1.0, time=bars[1].time)]
    result = BacktestEngine(FakeBridge(SandboxExecutionResult(success=True, signals=signals))).run(
        _strategy(), bars, _config()
    )
    payload = result.to_dict()
    assert payload["status"] == "completed"
    assert len(payload["equity_curve"]) == 4
    assert payload["config"]["slippage"] == {"kind": "none", "value": 0.0}
    assert payload["metrics"]["total_trades"] == 1


def _point(day: int, equity: float, peak: float) -> EquityPoint:
    drawdown = peak - equity
    return EquityPoint(START + timedelta(days=day), equity, equity, 0.0, drawdown, drawdown / peak * 100.0)


def _trade(pnl, day: int = 0) -> Trade:
    return Trade("o", "BTC", OrderSide.SELL, 100.0, 1.0, 0.1, 0.0, START + timedelta(days=day), pnl=pnl)


def test_metrics_from_trades_and_curve():
    points = [_point(0, 10100, 10100), _point(1, 9900, 10100), _point(2, 10200, 10200)]
    trades = [_trade(None), _trade(150.0), _trade(-50.0, day=1), _trade(100.0, day=2)]
    metrics = compute_metrics(points, trades, 10000)

    assert metrics.total_return == pytest.approx(200.0)
    assert metrics.total_return_percent == pytest.approx(2.0)
    assert metrics.total_trades == 3
    assert metrics.winning_trades == 2
    assert metrics.losing_trades == 1
    assert metrics.win_rate == pytest.approx(200.0 / 3.0)
    assert metrics.profit_factor == pytest.approx(5.0)
    assert metrics.largest_win == 150.0
    assert metrics.largest_loss == -50.0
    assert metrics.average_trade == pytest.approx(200.0 / 3.0)
    assert metrics.max_drawdown == pytest.approx(200.0)
    assert metrics.max_drawdown_duration_days == pytest.approx(1.0)
    assert metrics.total_fees == pytest.approx(0.4)
    assert metrics.trading_days == 3
    assert metrics.profitable_days == 2


def test_daily_returns_start_from_initial_capital():
    points = [_point(0, 10100, 10100), _point(0, 10200, 10200), _point(1, 10098, 10200)]
    returns = daily_returns(points, 10000)
    assert returns.tolist() == pytest.approx([0.02, -0.01])


def test_ratio_edge_cases():
    assert sharpe_ratio(np.array([0.01])) == 0.0
    assert sharpe_ratio(np.array([0.01, 0.01, 0.01])) == 0.0
    gains = np.array([0.01, 0.02, 0.03])
    assert sortino_ratio(gains) == pytest.approx(sharpe_ratio(gains))
    mixed = np.array([0.02, -0.01, 0.03, -0.02])
    assert sortino_ratio(mixed) > sharpe_ratio(mixed)


def test_annualized_return_falls_back_for_short_runs():
    points = [
        EquityPoint(START, 10000, 10000, 0, 0, 0),
        EquityPoint(START + timedelta(hours=3), 10500, 10500, 0, 0, 0),
    ]
    assert compute_metrics(points, [], 10000).annualized_return == pytest.approx(5.0)
