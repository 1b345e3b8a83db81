from datetime import datetime, timedelta, timezone
from pathlib import Path

from strategy_lab.execution import OrderSide, PaperTradingSimulator
from strategy_lab.monitoring import AuditLog, LogNotifier, Monitor
from strategy_lab.risk import OrderCheck, RiskLimits, RiskManager
from strategy_lab.strategy import Signal, SignalType


start = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)
market_id = "BTC-USDC"

audit = AuditLog(Path("runtime") / "audit.log")
monitor = Monitor(LogNotifier())
simulator = PaperTradingSimulator(initial_capital=10000, fee_rate=0.001, audit_log=audit)
risk = RiskManager(
    10000,
    RiskLimits(max_order_value=2500, max_daily_loss=300),
    audit_log=audit,
    monitor=monitor,
)

prices = [100.0, 98.0, 95.0, 91.0, 86.0]
signals = {
    0: Signal(type=SignalType.BUY, quantity=20, reason="demo entry"),
    1: Signal(type=SignalType.BUY, quantity=40, reason="too large"),
}

for index, price in enumerate(prices):
    now = start + timedelta(hours=index)
    simulator.update_price(market_id, price)
    signal = signals.get(index)
    if signal is not None and not risk.is_halted:
        check = risk.check_order(
            OrderCheck(market_id, OrderSide.BUY, signal.quantity, price),
            simulator.positions(),
            now=now,
        )
        print(f"{now:%H:%M} {signal.reason}: allowed={check.allowed} {check.reason}")
        if check.allowed:
            simulator.process_signal(signal, market_id, price, now=now)
            risk.record_order(now)

    status = risk.update_equity(simulator.equity, simulator.positions(), now=now)
    print(f"{now:%H:%M} price={price:.2f} equity={simulator.equity:.2f} daily_pnl={status.daily_pnl:.2f}")
    if status.is_halted:
        closed = simulator.close_all_positions({market_id: price}, now=now)
        print(f"Halted: {status.halt_reason}; closed {len(closed)} position(s)")
        break

print("Trades:", [trade.to_dict() for trade in simulator.trade_history()])
