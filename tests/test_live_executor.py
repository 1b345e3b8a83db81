from datetime import datetime, timezone

import pytest

from strategy_lab.execution import (
    CancelReport,
    ExchangeOrderStatus,
    LiveOrderExecutor,
    MarketSpec,
    OrderPlacementService,
    OrderSide,
    OrderStatus,
    PlacedOrder,
    SessionService,
    StaticMarketDirectory,
    scale_price,
    scale_quantity,
)
from strategy_lab.monitoring import Monitor, Notifier
from strategy_lab.strategy import OrderKind, Signal, SignalType

NOW = datetime(2024, 7, 1, tzinfo=timezone.utc)
MARKET = MarketSpec("BTC-USDC", base_decimals=8, quote_decimals=6, quote_max_precision=2)


class FakeOrderService(OrderPlacementService):
    def __init__(self, status: ExchangeOrderStatus = ExchangeOrderStatus.FILLED, fail: bool = False) -> None:
        self.status = status
        self.fail = fail
        self.placed: list[tuple] = []
        self.cancel_calls = 0

    def place_order(self, market, side, kind, price_scaled, quantity_scaled, account):
        if self.fail:
            raise ConnectionError("exchange unavailable")
        self.placed.append((market.market_id, side, kind, price_scaled, quantity_scaled, account))
        return PlacedOrder(order_id=f"ex-{len(self.placed)}", status=self.status)

    def cancel_all_open_orders(self, account):
        self.cancel_calls += 1
        return CancelReport(cancelled=2, failed=0)


class FakeSessions(SessionService):
    def __init__(self, active: bool = True) -> None:
        self.active = active

    def has_active_session(self, account: str) -> bool:
        return self.active


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def notify(self, event: str, message: str) -> None:
        self.events.append((event, message))


def _executor(service=None, sessions=None, account="0xabc", monitor=None) -> LiveOrderExecutor:
    return LiveOrderExecutor(
        service or FakeOrderService(),
        sessions or FakeSessions(),
        StaticMarketDirectory({MARKET.market_id: MARKET}),
        account=account,
        strategy_id="s-1",
        monitor=monitor,
    )


def _buy(quantity: float, **kwargs) -> Signal:
    return Signal(type=SignalType.BUY, quantity=quantity, **kwargs)


def test_scaling_floors_to_market_precision():
    assert scale_price(100.129, MARKET) == 100_120_000
    assert scale_price(0.5, MARKET) == 500_000
    assert scale_quantity(0.12345, MARKET) == 12_300_000
    assert scale_quantity(2, MARKET) == 200_000_000


def test_filled_order_updates_position():
    service = FakeOrderService()
    executor = _executor(service)
    result = executor.process_signal(_buy(0.5), "BTC-USDC", 100.0, NOW)
    assert result.success
    assert result.order.id == "ex-1"
    assert result.order.status == OrderStatus.FILLED
    assert service.placed[0] == ("BTC-USDC", OrderSide.BUY, OrderKind.MARKET, 100_000_000, 50_000_000, "0xabc")
    assert executor.position("BTC-USDC").quantity == 0.5

    close = executor.process_signal(Signal(type=SignalType.CLOSE, quantity=0.0), "BTC-USDC", 110.0, NOW)
    assert close.success
    assert close.order.side == OrderSide.SELL
    assert executor.positions() == []
    assert executor.realized_pnl == pytest.approx(5.0)


@pytest.mark.parametrize(
    ("exchange_status", "expected"),
    [
        (ExchangeOrderStatus.OPEN, OrderStatus.PENDING),
        (ExchangeOrderStatus.PARTIALLY_FILLED, OrderStatus.PENDING),
        (ExchangeOrderStatus.FILLED, OrderStatus.FILLED),
        (ExchangeOrderStatus.CANCELLED, OrderStatus.CANCELLED),
    ],
)
def test_exchange_status_mapping(exchange_status, expected):
    executor = _executor(FakeOrderService(exchange_status))
    result = executor.process_signal(_buy(1.0), "BTC-USDC", 100.0, NOW)
    assert result.order.status == expected
    if expected != OrderStatus.FILLED:
        assert executor.positions() == []


def test_limit_signal_uses_limit_price():
    service = FakeOrderService(ExchangeOrderStatus.OPEN)
    executor = _executor(service)
    executor.process_signal(_buy(1.0, order_type=OrderKind.LIMIT, price=95.5), "BTC-USDC", 100.0, NOW)
    _, _, kind, price_scaled, _, _ = service.placed[0]
    assert kind == OrderKind.LIMIT
    assert price_scaled == 95_500_000


def test_stop_signal_is_sent_as_market_order():
    service = FakeOrderService()
    executor = _executor(service)
    executor.process_signal(_buy(1.0, order_type=OrderKind.STOP, stop_price=101.0), "BTC-USDC", 100.0, NOW)
    assert service.placed[0][2] == OrderKind.MARKET


def test_preconditions():
    assert _executor().process_signal(Signal(type=SignalType.CANCEL, quantity=0.0), "BTC-USDC", 1.0).error == (
        "Cancel signals not supported"
    )
    assert _executor(account=None).process_signal(_buy(1.0), "BTC-USDC", 1.0).error == "No wallet connected"
    assert _executor(sessions=FakeSessions(False)).process_signal(_buy(1.0), "BTC-USDC", 1.0).error == (
        "No active trading session"
    )


def test_unknown_market_records_failed_order():
    executor = _executor()
    result = executor.process_signal(_buy(1.0), "DOGE-USDC", 1.0, NOW)
    assert result.success is False
    assert result.error == "Market DOGE-USDC not found"
    assert result.order.status == OrderStatus.FAILED


def test_service_failure_records_failed_order_and_alerts():
    notifier = RecordingNotifier()
    executor = _executor(FakeOrderService(fail=True), monitor=Monitor(notifier))
    result = executor.process_signal(_buy(1.0), "BTC-USDC", 100.0, NOW)
    assert result.success is False
    assert result.order.id.startswith("failed-")
    assert result.order.error == "exchange unavailable"
    assert executor.orders()[-1].status == OrderStatus.FAILED
    assert notifier.events[0][0] == "ORDER_FAILED"


def test_close_all_positions_and_cancel_all():
    service = FakeOrderService()
    executor = _executor(service)
    executor.process_signal(_buy(1.0), "BTC-USDC", 100.0, NOW)
    report = executor.close_all_positions({"BTC-USDC": 90.0})
    assert (report.closed, report.failed) == (1, 0)
    assert executor.positions() == []
    assert executor.orders()[-1].reason == "Emergency close"
    assert executor.realized_pnl == pytest.approx(-10.0)

    pending = _executor(FakeOrderService(ExchangeOrderStatus.OPEN))
    pending.process_signal(_buy(1.0), "BTC-USDC", 100.0, NOW)
    assert pending.cancel_all_orders() == 2
    assert pending.orders()[0].status == OrderStatus.CANCELLED


def test_update_position_pnl_notifies_listeners():
    executor = _executor()
    executor.process_signal(_buy(2.0), "BTC-USDC", 100.0, NOW)
    seen = []
    executor.subscribe(lambda orders, positions: seen.append(positions))
    executor.update_position_pnl("BTC-USDC", 105.0)
    assert seen[-1][0].unrealized_pnl == pytest.approx(10.0)
