from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from strategy_lab.execution import (
    CancelReport,
    ExchangeOrderStatus,
    MarketSpec,
    OrderPlacementService,
    OrderSide,
    PlacedOrder,
    SessionService,
    StaticMarketDirectory,
)
from strategy_lab.monitoring import Monitor, Notifier
from strategy_lab.risk import RiskLimits
from strategy_lab.runtime import LiveStrategyConfig, LiveStrategyRunner, RunnerStatus, TradingMode
from strategy_lab.runtime.runner import NO_SESSION_MESSAGE
from strategy_lab.sandbox.bridge import SandboxError, SandboxExecutionResult
from strategy_lab.storage import PAPER_STATES, STRATEGIES, MemoryRecordStore
from strategy_lab.strategy import Bar, OrderKind, Signal, SignalType, Strategy

START = datetime(2024, 2, 1, tzinfo=timezone.utc)
MARKET = MarketSpec("BTC-USDC", base_decimals=8, quote_decimals=6, quote_max_precision=2)


class ScriptedBridge:
    """Stands in for the sandbox: returns canned signals per bar index."""

    def __init__(self, script: dict[int, list[Signal]] | None = None, fail_load: bool = False) -> None:
        self.script = script or {}
        self.fail_load = fail_load
        self.positions_seen: list[dict] = []
        self.loaded = None
        self.initialized = False
        self.terminated = False
        self.calls = 0

    def initialize(self) -> None:
        self.initialized = True

    def load_strategy(self, code, params=None) -> None:
        if self.fail_load:
            raise SandboxError("Missing required class 'Strategy'")
        self.loaded = (code, params)

    def step(self, bar, position, timeout_ms=30000, orders=None):
        index = self.calls
        self.calls += 1
        self.positions_seen.append(dict(position))
        signals = [signal.stamped(bar.time) for signal in self.script.get(index, [])]
        return SandboxExecutionResult(success=True, signals=signals, bars_processed=index + 1)

    def terminate(self) -> None:
        self.terminated = True


class FakeOrderService(OrderPlacementService):
    def __init__(self) -> None:
        self.placed = []
        self.cancel_calls = 0

    def place_order(self, market, side, kind, price_scaled, quantity_scaled, account):
        self.placed.append((side, quantity_scaled))
        return PlacedOrder(order_id=f"ex-{len(self.placed)}", status=ExchangeOrderStatus.FILLED)

    def cancel_all_open_orders(self, account):
        self.cancel_calls += 1
        return CancelReport(cancelled=0, failed=0)


class FakeSessions(SessionService):
    def __init__(self, active: bool) -> None:
        self.active = active

    def has_active_session(self, account: str) -> bool:
        return self.active


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def notify(self, event: str, message: str) -> None:
        self.events.append((event, message))


def _bar(index: int, close: float) -> Bar:
    return Bar(START + timedelta(hours=index), close, close + 1, close - 1, close, 5.0)


def _store_with_strategy() -> tuple[MemoryRecordStore, Strategy]:
    store = MemoryRecordStore()
    strategy = Strategy.create("scripted", "class Strategy:\n    pass\n", config_values={"quantity": 1})
    store.put(STRATEGIES, strategy.id, strategy.to_dict())
    return store, strategy


def _paper_config(strategy_id: str, **kwargs) -> LiveStrategyConfig:
    kwargs.setdefault("fee_rate", 0.0)
    kwargs.setdefault("slippage_percent", 0.0)
    return LiveStrategyConfig(strategy_id=strategy_id, market_id="BTC-USDC", **kwargs)


def _buy(quantity: float = 1.0) -> Signal:
    return Signal(type=SignalType.BUY, quantity=quantity)


def _close() -> Signal:
    return Signal(type=SignalType.CLOSE, quantity=0.0)


def test_paper_run_routes_signals_and_persists_state():
    store, strategy = _store_with_strategy()
    bridge = ScriptedBridge({0: [_buy()], 2: [_close()]})
    runner = LiveStrategyRunner(store, bridge_factory=lambda policy: bridge)
    seen_statuses = []
    runner.subscribe(lambda state: seen_statuses.append(state.status))

    async def scenario():
        await runner.initialize(_paper_config(strategy.id, params={"quantity": 2}))
        assert bridge.initialized
        await runner.start()
        for index, close in enumerate([100.0, 105.0, 110.0]):
            assert await runner.process_bar(_bar(index, close))
        await runner.drain()
        state = runner.state
        await runner.stop()
        stopped = runner.state
        await runner.destroy()
        return state, stopped

    state, stopped = asyncio.run(scenario())

    assert bridge.loaded == ("class Strategy:\n    pass\n", {"quantity": 2})
    assert bridge.positions_seen[0]["side"] is None
    assert bridge.positions_seen[1]["side"] == "long"
    assert state.bars_processed == 3
    assert state.signals_generated == 2
    assert state.orders_placed == 2
    assert state.trades_executed == 2
    assert state.realized_pnl == pytest.approx(10.0)
    assert state.equity == pytest.approx(10010.0)
    assert state.current_price == 110.0
    assert state.last_bar_time == START + timedelta(hours=2)
    assert stopped.status == RunnerStatus.STOPPED
    assert RunnerStatus.RUNNING in seen_statuses
    assert store.get(PAPER_STATES, strategy.id)["realized_pnl"] == pytest.approx(10.0)
    assert bridge.terminated
    assert runner.state is None


def test_paper_state_restored_on_next_initialize():
    store, strategy = _store_with_strategy()

    async def first_run():
        runner = LiveStrategyRunner(store, bridge_factory=lambda policy: ScriptedBridge({0: [_buy()]}))
        await runner.initialize(_paper_config(strategy.id))
        await runner.start()
        await runner.process_bar(_bar(0, 100.0))
        await runner.drain()
        await runner.stop()
        await runner.destroy()

    async def second_run():
        runner = LiveStrategyRunner(store, bridge_factory=lambda policy: ScriptedBridge())
        await runner.initialize(_paper_config(strategy.id))
        position = runner.simulator.position("BTC-USDC")
        await runner.destroy()
        return position

    asyncio.run(first_run())
    position = asyncio.run(second_run())
    assert position is not None
    assert position.quantity == 1.0


def test_missing_strategy_rejected():
    runner = LiveStrategyRunner(MemoryRecordStore(), bridge_factory=lambda policy: ScriptedBridge())
    with pytest.raises(RuntimeError, match="Strategy nope not found"):
        asyncio.run(runner.initialize(_paper_config("nope")))


def test_live_mode_requires_session():
    store, strategy = _store_with_strategy()
    runner = LiveStrategyRunner(
        store,
        bridge_factory=lambda policy: ScriptedBridge(),
        order_service=FakeOrderService(),
        session_service=FakeSessions(active=False),
        market_directory=StaticMarketDirectory({MARKET.market_id: MARKET}),
    )
    config = _paper_config(strategy.id, trading_mode=TradingMode.LIVE, account="0xabc")
    with pytest.raises(RuntimeError) as excinfo:
        asyncio.run(runner.initialize(config))
    assert str(excinfo.value) == NO_SESSION_MESSAGE


def test_live_mode_requires_services():
    store, strategy = _store_with_strategy()
    runner = LiveStrategyRunner(store, bridge_factory=lambda policy: ScriptedBridge())
    config = _paper_config(strategy.id, trading_mode=TradingMode.LIVE, account="0xabc")
    with pytest.raises(RuntimeError, match="Live trading requires"):
        asyncio.run(runner.initialize(config))


def test_live_run_places_orders_and_cancels_on_stop():
    store, strategy = _store_with_strategy()
    service = FakeOrderService()
    runner = LiveStrategyRunner(
        store,
        bridge_factory=lambda policy: ScriptedBridge({0: [_buy(0.5)]}),
        order_service=service,
        session_service=FakeSessions(active=True),
        market_directory=StaticMarketDirectory({MARKET.market_id: MARKET}),
    )

    async def scenario():
        await runner.initialize(_paper_config(strategy.id, trading_mode=TradingMode.LIVE, account="0xabc"))
        await runner.start()
        await runner.process_bar(_bar(0, 100.0))
        await runner.process_bar(_bar(1, 104.0))
        await runner.drain()
        state = runner.state
        await runner.stop()
        return state

    state = asyncio.run(scenario())
    assert service.placed == [(OrderSide.BUY, 50_000_000)]
    assert state.orders_placed == 1
    assert state.trades_executed == 1
    assert state.unrealized_pnl == pytest.approx(2.0)
    assert state.equity == pytest.approx(10002.0)
    assert service.cancel_calls == 1
    assert store.get(PAPER_STATES, strategy.id) is None


def test_bars_rejected_before_start_and_queued_while_paused():
    store, strategy = _store_with_strategy()
    bridge = ScriptedBridge()
    runner = LiveStrategyRunner(store, bridge_factory=lambda policy: bridge)

    async def scenario():
        await runner.initialize(_paper_config(strategy.id))
        assert await runner.process_bar(_bar(0, 100.0)) is False
        await runner.start()
        runner.pause()
        assert runner.status == RunnerStatus.PAUSED
        assert await runner.process_bar(_bar(1, 100.0))
        await asyncio.sleep(0.05)
        paused_count = runner.state.bars_processed
        runner.resume()
        await runner.drain()
        resumed_count = runner.state.bars_processed
        await runner.destroy()
        return paused_count, resumed_count

    paused_count, resumed_count = asyncio.run(scenario())
    assert paused_count == 0
    assert resumed_count == 1


def test_risk_halt_stops_accepting_bars():
    store, strategy = _store_with_strategy()
    bridge = ScriptedBridge({0: [_buy(10.0)]})
    runner = LiveStrategyRunner(store, bridge_factory=lambda policy: bridge)

    async def scenario():
        await runner.initialize(_paper_config(strategy.id, risk_limits=RiskLimits(max_daily_loss=50)))
        await runner.start()
        await runner.process_bar(_bar(0, 100.0))
        await runner.process_bar(_bar(1, 90.0))
        await runner.drain()
        accepted = await runner.process_bar(_bar(2, 95.0))
        state = runner.state
        await runner.destroy()
        return accepted, state

    accepted, state = asyncio.run(scenario())
    assert accepted is False
    assert state.risk.is_halted
    assert state.risk.halt_reason.startswith("Daily loss $100.00")
    assert state.to_dict()["is_halted"] is True


def test_order_blocked_by_risk_is_not_placed():
    store, strategy = _store_with_strategy()
    bridge = ScriptedBridge({0: [_buy(100.0)]})
    runner = LiveStrategyRunner(store, bridge_factory=lambda policy: bridge)

    async def scenario():
        await runner.initialize(_paper_config(strategy.id, risk_limits=RiskLimits(max_order_value=500)))
        await runner.start()
        await runner.process_bar(_bar(0, 100.0))
        await runner.drain()
        state = runner.state
        positions = runner.simulator.positions()
        await runner.destroy()
        return state, positions

    state, positions = asyncio.run(scenario())
    assert state.signals_generated == 1
    assert state.orders_placed == 0
    assert positions == []


def test_emergency_stop_closes_positions_and_halts():
    store, strategy = _store_with_strategy()
    notifier = RecordingNotifier()
    bridge = ScriptedBridge({0: [_buy()]})
    runner = LiveStrategyRunner(store, bridge_factory=lambda policy: bridge, monitor=Monitor(notifier))

    async def scenario():
        await runner.initialize(_paper_config(strategy.id))
        await runner.start()
        await runner.process_bar(_bar(0, 100.0))
        await runner.drain()
        await runner.emergency_stop()
        positions = runner.simulator.positions()
        state = runner.state
        accepted = await runner.process_bar(_bar(1, 100.0))
        halted = runner.risk.is_halted
        await runner.destroy()
        return positions, state, accepted, halted

    positions, state, accepted, halted = asyncio.run(scenario())
    assert positions == []
    assert state.status == RunnerStatus.STOPPED
    assert state.error == "Emergency stop triggered"
    assert accepted is False
    assert halted
    assert [event for event, _ in notifier.events] == ["RISK_HALT", "EMERGENCY_STOP"]


def test_start_failure_sets_error_status():
    store, strategy = _store_with_strategy()
    notifier = RecordingNotifier()
    runner = LiveStrategyRunner(
        store,
        bridge_factory=lambda policy: ScriptedBridge(fail_load=True),
        monitor=Monitor(notifier),
    )

    async def scenario():
        await runner.initialize(_paper_config(strategy.id))
        await runner.start()
        return runner.state

    state = asyncio.run(scenario())
    assert state.status == RunnerStatus.ERROR
    assert "Missing required class" in state.error
    assert notifier.events[0][0] == "RUNNER_ERROR"


def test_start_requires_initialize():
    runner = LiveStrategyRunner(MemoryRecordStore(), bridge_factory=lambda policy: ScriptedBridge())
    with pytest.raises(RuntimeError, match="Runner not initialized"):
        asyncio.run(runner.start())


def test_price_updates_mark_positions_without_triggering_orders():
    store, strategy = _store_with_strategy()
    limit_buy = Signal(type=SignalType.BUY, quantity=1.0, order_type=OrderKind.LIMIT, price=95.0)
    bridge = ScriptedBridge({0: [limit_buy]})
    runner = LiveStrategyRunner(store, bridge_factory=lambda policy: bridge)

    async def scenario():
        await runner.initialize(_paper_config(strategy.id))
        await runner.start()
        await runner.process_bar(_bar(0, 100.0))
        await runner.drain()
        simulator = runner.simulator
        assert len(simulator.open_orders()) == 1

        runner.update_price(94.0)
        after_tick = (len(simulator.open_orders()), simulator.cash, simulator.position("BTC-USDC"))
        price_after_tick = runner.state.current_price

        await runner.process_bar(_bar(1, 94.0))
        await runner.drain()
        after_bar = (len(simulator.open_orders()), simulator.position("BTC-USDC"), runner.state.trades_executed)
        await runner.destroy()
        return after_tick, price_after_tick, after_bar

    after_tick, price_after_tick, after_bar = asyncio.run(scenario())

    assert after_tick == (1, 10000.0, None)
    assert price_after_tick == 94.0
    open_count, position, trades = after_bar
    assert open_count == 0
    assert position.quantity == 1.0
    assert position.average_entry_price == 95.0
    assert trades == 1
