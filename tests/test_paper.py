import json
from datetime import datetime, timedelta, timezone

import pytest

from strategy_lab.execution import (
    OrderSide,
    OrderStatus,
    PaperTradingSimulator,
    SlippageKind,
    SlippageModel,
)
from strategy_lab.monitoring import AuditLog
from strategy_lab.strategy import OrderKind, Signal, SignalType

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _simulator(**kwargs) -> PaperTradingSimulator:
    kwargs.setdefault("slippage", SlippageModel(SlippageKind.NONE, 0.0))
    return PaperTradingSimulator(initial_capital=10000, fee_rate=0.001, **kwargs)


def _buy(quantity: float, **kwargs) -> Signal:
    return Signal(type=SignalType.BUY, quantity=quantity, **kwargs)


def test_round_trip_fees_and_pnl():
    simulator = _simulator()
    simulator.process_signal(_buy(1.0), "BTC", 100.0, NOW)
    assert simulator.cash == pytest.approx(10000 - 100 - 0.1)

    order = simulator.process_signal(Signal(type=SignalType.SELL, quantity=1.0), "BTC", 110.0, NOW)
    assert order.status == OrderStatus.FILLED
    assert simulator.cash - 10000 == pytest.approx(9.79)
    assert simulator.position("BTC") is None
    assert simulator.realized_pnl == pytest.approx(9.79)
    assert simulator.gross_realized_pnl == pytest.approx(10.0)
    assert simulator.total_fees == pytest.approx(0.21)
    state = simulator.state()
    assert state.total_pnl == pytest.approx(9.79)
    assert state.total_pnl == pytest.approx(state.equity - state.initial_capital)

    trades = simulator.trade_history()
    assert trades[0].pnl is None
    assert trades[1].pnl == pytest.approx(10.0)
    assert trades[1].pnl_percent == pytest.approx(10.0)


def test_percentage_slippage_moves_price_against_trader():
    simulator = _simulator(slippage=SlippageModel(SlippageKind.PERCENTAGE, 0.5))
    buy = simulator.process_signal(_buy(1.0), "BTC", 100.0, NOW)
    assert buy.fill_price == pytest.approx(100.5)
    sell = simulator.process_signal(Signal(type=SignalType.SELL, quantity=1.0), "BTC", 100.0, NOW)
    assert sell.fill_price == pytest.approx(99.5)
    assert simulator.trade_history()[0].slippage == pytest.approx(0.5)


def test_fixed_slippage_amount():
    assert SlippageModel(SlippageKind.FIXED, 0.25).amount(1000.0) == 0.25
    assert SlippageModel(SlippageKind.NONE, 5.0).amount(1000.0) == 0.0


def test_insufficient_funds_rejected():
    simulator = _simulator()
    order = simulator.process_signal(_buy(200.0), "BTC", 100.0, NOW)
    assert order.status == OrderStatus.REJECTED
    assert order.error == "Insufficient funds"
    assert simulator.cash == 10000
    assert simulator.positions() == []
    assert simulator.order_history()[-1].status == OrderStatus.REJECTED


def test_close_signal_uses_full_position_when_quantity_zero():
    simulator = _simulator()
    simulator.process_signal(_buy(2.0), "BTC", 100.0, NOW)
    order = simulator.process_signal(Signal(type=SignalType.CLOSE, quantity=0.0), "BTC", 100.0, NOW)
    assert order.side == OrderSide.SELL
    assert order.quantity == 2.0
    assert simulator.position("BTC") is None


def test_close_without_position_is_ignored():
    simulator = _simulator()
    assert simulator.process_signal(Signal(type=SignalType.CLOSE, quantity=0.0), "BTC", 100.0, NOW) is None
    assert simulator.order_history() == []


def test_limit_buy_fills_when_low_crosses():
    simulator = _simulator()
    order = simulator.process_signal(_buy(1.0, order_type=OrderKind.LIMIT, price=95.0), "BTC", 100.0, NOW)
    assert order.status == OrderStatus.OPEN
    assert simulator.check_open_orders("BTC", 99.0, 101.0, 96.0, NOW) == []

    fills = simulator.check_open_orders("BTC", 97.0, 99.0, 94.0, NOW + timedelta(hours=1))
    assert len(fills) == 1
    assert fills[0].fill_price == 95.0
    assert simulator.open_orders() == []
    assert simulator.position("BTC").average_entry_price == 95.0


def test_stop_sell_triggers_at_current_price():
    simulator = _simulator()
    simulator.process_signal(_buy(1.0), "BTC", 100.0, NOW)
    simulator.process_signal(
        Signal(type=SignalType.SELL, quantity=1.0, order_type=OrderKind.STOP, stop_price=90.0),
        "BTC",
        100.0,
        NOW,
    )
    fills = simulator.check_open_orders("BTC", 91.0, 95.0, 89.0, NOW)
    assert [order.fill_price for order in fills] == [91.0]
    assert simulator.gross_realized_pnl == pytest.approx(-9.0)
    assert simulator.realized_pnl == pytest.approx(-9.0 - 0.1 - 0.091)


def test_stop_limit_needs_trigger_and_cross():
    simulator = _simulator()
    simulator.process_signal(
        _buy(1.0, order_type=OrderKind.STOP_LIMIT, price=106.0, stop_price=105.0),
        "BTC",
        100.0,
        NOW,
    )
    assert simulator.check_open_orders("BTC", 104.0, 104.5, 103.0, NOW) == []
    fills = simulator.check_open_orders("BTC", 107.0, 108.0, 105.5, NOW)
    assert fills[0].fill_price == 106.0


def test_cancel_signal_cancels_market_orders():
    simulator = _simulator()
    simulator.process_signal(_buy(1.0, order_type=OrderKind.LIMIT, price=90.0), "BTC", 100.0, NOW)
    simulator.process_signal(_buy(1.0, order_type=OrderKind.LIMIT, price=90.0), "ETH", 100.0, NOW)
    assert simulator.process_signal(Signal(type=SignalType.CANCEL, quantity=0.0), "BTC", 100.0, NOW) is None
    assert [order.market_id for order in simulator.open_orders()] == ["ETH"]
    assert simulator.order_history()[-1].status == OrderStatus.CANCELLED
    assert simulator.cancel_all_orders() == 1
    assert simulator.cancel_order("missing") is False


def test_equity_tracks_marks():
    simulator = _simulator()
    simulator.process_signal(_buy(10.0), "BTC", 100.0, NOW)
    simulator.update_price("BTC", 120.0)
    state = simulator.state()
    assert state.unrealized_pnl == pytest.approx(200.0)
    assert state.equity == pytest.approx(10000 - 1.0 + 200.0)
    assert state.total_pnl == pytest.approx(199.0)
    assert state.total_pnl == pytest.approx(state.equity - state.initial_capital)


def test_close_all_positions():
    simulator = _simulator()
    simulator.process_signal(_buy(1.0), "BTC", 100.0, NOW)
    simulator.process_signal(Signal(type=SignalType.SELL, quantity=2.0), "ETH", 50.0, NOW)
    orders = simulator.close_all_positions({"BTC": 105.0, "ETH": 45.0}, NOW)
    assert len(orders) == 2
    assert all(order.reason == "Emergency close all positions" for order in orders)
    assert simulator.positions() == []
    assert simulator.gross_realized_pnl == pytest.approx(5.0 + 10.0)
    assert simulator.total_fees == pytest.approx(0.1 + 0.1 + 0.105 + 0.09)
    assert simulator.realized_pnl == pytest.approx(15.0 - simulator.total_fees)


def test_listener_receives_state_and_unsubscribes():
    simulator = _simulator()
    seen = []
    unsubscribe = simulator.subscribe(seen.append)
    simulator.process_signal(_buy(1.0), "BTC", 100.0, NOW)
    assert seen[-1].cash == pytest.approx(simulator.cash)
    unsubscribe()
    simulator.process_signal(_buy(1.0), "BTC", 100.0, NOW)
    assert len(seen) == 1


def test_serialize_and_restore(tmp_path):
    audit = AuditLog(tmp_path / "audit.log")
    simulator = _simulator(audit_log=audit, strategy_id="s-1")
    simulator.process_signal(_buy(2.0), "BTC", 100.0, NOW)
    simulator.process_signal(_buy(1.0, order_type=OrderKind.LIMIT, price=90.0), "BTC", 100.0, NOW)
    payload = json.loads(json.dumps(simulator.serialize()))

    restored = PaperTradingSimulator.restore(payload)
    assert restored.cash == pytest.approx(simulator.cash)
    assert restored.position("BTC") == simulator.position("BTC")
    assert restored.open_orders() == simulator.open_orders()
    assert restored.trade_history() == simulator.trade_history()
    assert restored.strategy_id == "s-1"
    assert restored.realized_pnl == pytest.approx(simulator.realized_pnl)
    assert [record["event"] for record in audit.read()] == ["paper_fill", "paper_order_open"]


def test_reset_restores_initial_capital():
    simulator = _simulator()
    simulator.process_signal(_buy(1.0), "BTC", 100.0, NOW)
    simulator.reset()
    assert simulator.cash == 10000
    assert simulator.positions() == []
    assert simulator.trade_history() == []
