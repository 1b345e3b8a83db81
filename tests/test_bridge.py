"""Round trips through a real sandbox worker process."""

from datetime import datetime, timedelta, timezone

import pytest

from strategy_lab.backtest import BacktestConfig, BacktestEngine, BacktestStatus
from strategy_lab.monitoring import AuditLog
from strategy_lab.sandbox import SandboxPolicy
from strategy_lab.sandbox.bridge import BridgeStatus, SandboxBridge, SandboxError, SandboxTimeoutError
from strategy_lab.strategy import DEFAULT_STRATEGY_TEMPLATE, Bar, SignalType, Strategy

START = datetime(2024, 8, 1, tzinfo=timezone.utc)

LOOPING_STRATEGY = """
class Strategy:
    def __init__(self, context):
        self.context = context

    def on_bar(self, bar, position, orders):
        while bar["close"] > 100:
            pass
        return [{"type": "buy", "quantity": 1}]
"""


def _bars(closes) -> list[Bar]:
    return [Bar(START + timedelta(hours=i), c, c + 1, c - 1, c, 1.0) for i, c in enumerate(closes)]


@pytest.fixture
def bridge(tmp_path):
    sandbox = SandboxBridge(audit_log=AuditLog(tmp_path / "audit.log"))
    yield sandbox
    sandbox.terminate()


def test_disallowed_code_never_reaches_worker(bridge):
    code = "import os\n" + DEFAULT_STRATEGY_TEMPLATE
    result = bridge.execute(code, _bars([1, 2, 3]))
    assert result.success is False
    assert result.error_type == "security"
    assert result.validation is not None and not result.validation.is_valid
    assert bridge.status == BridgeStatus.IDLE

    with pytest.raises(SandboxError):
        bridge.load_strategy(code)
    assert bridge.status == BridgeStatus.IDLE


def test_numpy_file_access_never_reaches_worker(bridge, tmp_path):
    target = tmp_path / "closes.txt"
    code = LOOPING_STRATEGY.replace(
        "        while bar[\"close\"] > 100:\n            pass\n",
        f"        np.savetxt({str(target)!r}, [bar['close']])\n",
    )
    result = bridge.execute("import numpy as np\n" + code, _bars([1, 2]))
    assert result.success is False
    assert result.error_type == "security"
    assert '"savetxt" is not allowed' in result.error
    assert bridge.status == BridgeStatus.IDLE
    assert not target.exists()


def test_validate_in_worker(bridge):
    assert bridge.validate(DEFAULT_STRATEGY_TEMPLATE).is_valid
    assert bridge.status == BridgeStatus.READY
    result = bridge.validate("import socket\n" + DEFAULT_STRATEGY_TEMPLATE)
    assert result.security_check_passed is False


def test_execute_replays_bars_with_progress(bridge):
    closes = [100 - i for i in range(40)] + [60 + 2 * i for i in range(40)]
    progress = []
    result = bridge.execute(
        DEFAULT_STRATEGY_TEMPLATE,
        _bars(closes),
        {"fast_period": 3, "slow_period": 8},
        progress=lambda percent, message: progress.append(percent),
    )
    assert result.success, result.error
    assert result.bars_processed == 80
    assert [signal.type for signal in result.signals] == [SignalType.BUY]
    assert progress[-1] == pytest.approx(100.0)
    assert result.peak_memory_mb > 0


def test_runtime_load_error_is_reported(bridge):
    code = DEFAULT_STRATEGY_TEMPLATE.replace("self.context = context", "self.context = context\n        1 / 0")
    result = bridge.execute(code, _bars([1, 2]))
    assert result.success is False
    assert "ZeroDivisionError" in result.error


def test_iteration_budget_restarts_worker():
    sandbox = SandboxBridge(SandboxPolicy(max_iterations=10_000))
    try:
        result = sandbox.execute(LOOPING_STRATEGY, _bars([150]))
        assert result.success is False
        assert result.error_type == "resource"
        assert sandbox.status == BridgeStatus.IDLE

        result = sandbox.execute(LOOPING_STRATEGY, _bars([50]))
        assert result.success
        assert len(result.signals) == 1
    finally:
        sandbox.terminate()


def test_step_timeout_then_reload(tmp_path):
    audit = AuditLog(tmp_path / "audit.log")
    sandbox = SandboxBridge(SandboxPolicy(max_iterations=10**12), audit_log=audit)
    try:
        sandbox.load_strategy(LOOPING_STRATEGY)
        first = sandbox.step(_bars([50])[0], {"side": None, "quantity": 0.0})
        assert first.success
        assert first.signals[0].type == SignalType.BUY

        with pytest.raises(SandboxTimeoutError):
            sandbox.step(_bars([150])[0], {"side": None, "quantity": 0.0}, timeout_ms=500)
        assert sandbox.status == BridgeStatus.IDLE
        assert sandbox.has_strategy

        again = sandbox.step(_bars([60])[0], {"side": "long", "quantity": 1.0})
        assert again.success
        assert [record["event"] for record in audit.read("sandbox_timeout")] == ["sandbox_timeout"]
    finally:
        sandbox.terminate()


def test_calculate_indicator_in_worker(bridge):
    result = bridge.calculate_indicator("SMA", _bars([1, 2, 3, 4]), {"period": 2})
    assert result.success
    assert result.values["sma"][1:] == [1.5, 2.5, 3.5]

    missing = bridge.calculate_indicator("NOPE", [1, 2, 3])
    assert missing.success is False
    assert "Unknown indicator" in missing.error


def test_backtest_engine_with_real_worker(bridge):
    closes = [100 - i for i in range(40)] + [60 + 2 * i for i in range(40)]
    strategy = Strategy.create("SMA", DEFAULT_STRATEGY_TEMPLATE, config_values={"fast_period": 3, "slow_period": 8})
    result = BacktestEngine(bridge).run(strategy, _bars(closes), BacktestConfig(market_id="BTC-USDC"))
    assert result.status == BacktestStatus.COMPLETED, result.error
    assert len(result.trades) == 2
    assert result.trades[-1].pnl > 0
    assert result.metrics.total_trades == 1
    assert len(result.equity_curve) == 80
