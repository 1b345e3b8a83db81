"""Backtest engine: sandboxed signal generation plus paper-fill replay."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from strategy_lab.backtest.metrics import compute_metrics
from strategy_lab.backtest.models import (
    BacktestConfig,
    BacktestResult,
    BacktestStatus,
    DrawdownPoint,
    EquityPoint,
)
from strategy_lab.execution.paper import PaperTradingSimulator
from strategy_lab.sandbox.bridge import SandboxBridge, SandboxError
from strategy_lab.strategy.models import Bar, Signal, SignalType, Strategy

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

EXECUTE_START = 10.0
EXECUTE_END = 70.0
REPLAY_END = 90.0


class BacktestCancelled(Exception):
    pass


class BacktestEngine:
    def __init__(self, bridge: SandboxBridge, audit_log: Optional[object] = None) -> None:
        self.bridge = bridge
        self._audit_log = audit_log
        self._lock = threading.Lock()
        self._running: dict[str, threading.Event] = {}

    def _log(self, event: str, payload: dict) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log(event, payload)

    def is_running(self, backtest_id: str) -> bool:
        with self._lock:
            return backtest_id in self._running

    def cancel(self, backtest_id: str) -> bool:
        with self._lock:
            event = self._running.get(backtest_id)
        if event is None:
            return False
        event.set()
        return True

    def run(
        self,
        strategy: Strategy,
        bars: Sequence[Bar],
        config: BacktestConfig,
        progress: Optional[ProgressCallback] = None,
        backtest_id: Optional[str] = None,
    ) -> BacktestResult:
        result = BacktestResult(
            id=backtest_id or str(uuid.uuid4()),
            strategy_id=strategy.id,
            config=config,
        )
        cancelled = threading.Event()
        with self._lock:
            self._running[result.id] = cancelled

        def report(percent: float, message: str) -> None:
            result.progress = percent
            if progress is not None:
                progress(percent, message)

        started = time.perf_counter()
        result.status = BacktestStatus.RUNNING
        result.started_at = datetime.now(timezone.utc)
        self._log(
            "backtest_started",
            {"id": result.id, "strategy_id": strategy.id, "bars": len(bars), "config": config.to_dict()},
        )
        try:
            self._run(strategy, list(bars), config, result, report, cancelled)
        except BacktestCancelled:
            result.status = BacktestStatus.CANCELLED
            result.error = "Backtest cancelled"
            self._log("backtest_cancelled", {"id": result.id, "progress": result.progress})
        except Exception as exc:
            result.status = BacktestStatus.FAILED
            result.error = str(exc)
            logger.error("Backtest %s failed: %s", result.id, exc)
            self._log("backtest_failed", {"id": result.id, "error": result.error})
        else:
            result.status = BacktestStatus.COMPLETED
            report(100.0, "Backtest complete")
            self._log(
                "backtest_completed",
                {"id": result.id, "metrics": result.metrics.to_dict(), "trades": len(result.trades)},
            )
        finally:
            result.completed_at = datetime.now(timezone.utc)
            result.execution_time_ms = (time.perf_counter() - started) * 1000.0
            with self._lock:
                self._running.pop(result.id, None)
        return result

    def _run(
        self,
        strategy: Strategy,
        bars: list[Bar],
        config: BacktestConfig,
        result: BacktestResult,
        report: ProgressCallback,
        cancelled: threading.Event,
    ) -> None:
        report(5.0, "Validating strategy")
        if not bars:
            raise ValueError("No historical bars supplied")

        report(EXECUTE_START, "Executing strategy")
        params = {**strategy.config_values, **config.params}
        execution = self.bridge.execute(
            strategy.code,
            bars,
            params,
            timeout_ms=config.timeout_ms,
            progress=lambda percent, message: report(
                EXECUTE_START + percent / 100.0 * (EXECUTE_END - EXECUTE_START), message
            ),
        )
        result.bar_errors = list(execution.bar_errors)
        result.logs = list(execution.logs)
        if not execution.success:
            raise SandboxError(execution.error or "Strategy execution failed")
        result.signals = list(execution.signals)
        if cancelled.is_set():
            raise BacktestCancelled()

        report(EXECUTE_END, "Simulating fills")
        simulator = PaperTradingSimulator(
            initial_capital=config.initial_capital,
            fee_rate=config.fee_rate,
            slippage=config.slippage,
            strategy_id=strategy.id,
        )
        try:
            self._replay(bars, execution.signals, config, simulator, result, report, cancelled)
        finally:
            result.trades = simulator.trade_history()

        report(95.0, "Computing metrics")
        result.metrics = compute_metrics(result.equity_curve, result.trades, config.initial_capital)

    def _replay(
        self,
        bars: list[Bar],
        signals: list[Signal],
        config: BacktestConfig,
        simulator: PaperTradingSimulator,
        result: BacktestResult,
        report: ProgressCallback,
        cancelled: threading.Event,
    ) -> None:
        by_time: dict[int, list[Signal]] = defaultdict(list)
        for signal in signals:
            if signal.time is not None:
                by_time[int(round(signal.time.timestamp() * 1000))].append(signal)

        market_id = config.market_id
        peak = config.initial_capital
        total = len(bars)
        step = max(total // 10, 1)
        for index, bar in enumerate(bars):
            if cancelled.is_set():
                raise BacktestCancelled()
            simulator.check_open_orders(market_id, bar.close, bar.high, bar.low, now=bar.time)
            for signal in by_time.get(bar.timestamp, []):
                simulator.process_signal(signal, market_id, bar.close, now=bar.time)
            simulator.update_price(market_id, bar.close)
            if index == total - 1 and simulator.position(market_id) is not None:
                simulator.process_signal(
                    Signal(type=SignalType.CLOSE, quantity=0.0, reason="End of backtest"),
                    market_id,
                    bar.close,
                    now=bar.time,
                )

            equity = simulator.equity
            peak = max(peak, equity)
            drawdown = peak - equity
            drawdown_percent = drawdown / peak * 100.0 if peak > 0 else 0.0
            result.equity_curve.append(
                EquityPoint(
                    time=bar.time,
                    equity=equity,
                    cash=simulator.cash,
                    position_value=equity - simulator.cash,
                    drawdown=drawdown,
                    drawdown_percent=drawdown_percent,
                )
            )
            result.drawdown_curve.append(DrawdownPoint(bar.time, drawdown, drawdown_percent))
            if (index + 1) % step == 0:
                report(EXECUTE_END + (index + 1) / total * (REPLAY_END - EXECUTE_END), f"{index + 1}/{total} bars")
