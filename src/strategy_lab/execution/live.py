"""Live order executor that routes signals to an exchange order service."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Mapping, Optional

from strategy_lab.execution.broker import MarketDirectory, OrderPlacementService, SessionService
from strategy_lab.execution.models import (
    CloseReport,
    ExchangeOrderStatus,
    ExecutionResult,
    MarketSpec,
    Order,
    OrderStatus,
)
from strategy_lab.execution.positions import OrderSide, Position, PositionBook
from strategy_lab.strategy.models import OrderKind, Signal, SignalType

logger = logging.getLogger(__name__)

QUANTITY_DECIMALS = 3

_STATUS_MAP = {
    ExchangeOrderStatus.OPEN: OrderStatus.PENDING,
    ExchangeOrderStatus.PARTIALLY_FILLED: OrderStatus.PENDING,
    ExchangeOrderStatus.FILLED: OrderStatus.FILLED,
    ExchangeOrderStatus.CANCELLED: OrderStatus.CANCELLED,
}


def scale_price(price: float, market: MarketSpec) -> int:
    """Scale a price to integer quote units, floored to the market's price precision."""
    decimals = market.quote_decimals
    step = Decimal(10) ** max(decimals - market.quote_max_precision, 0)
    raw = Decimal(str(price)) * (Decimal(10) ** decimals)
    return int((raw / step).to_integral_value(rounding=ROUND_FLOOR) * step)


def scale_quantity(quantity: float, market: MarketSpec) -> int:
    truncated = (Decimal(str(quantity)) * (Decimal(10) ** QUANTITY_DECIMALS)).to_integral_value(rounding=ROUND_FLOOR)
    return int(truncated * (Decimal(10) ** (market.base_decimals - QUANTITY_DECIMALS)))


OrderListener = Callable[[list[Order], list[Position]], None]


class LiveOrderExecutor:
    def __init__(
        self,
        order_service: OrderPlacementService,
        session_service: SessionService,
        market_directory: MarketDirectory,
        account: Optional[str] = None,
        strategy_id: Optional[str] = None,
        audit_log: Optional[object] = None,
        monitor: Optional[object] = None,
    ) -> None:
        self.order_service = order_service
        self.session_service = session_service
        self.market_directory = market_directory
        self.account = account
        self.strategy_id = strategy_id
        self._audit_log = audit_log
        self._monitor = monitor
        self._markets: dict[str, MarketSpec] = {}
        self._book = PositionBook()
        self._orders: list[Order] = []
        self._realized_pnl = 0.0
        self._listeners: set[OrderListener] = set()

    def _log(self, event: str, payload: dict) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log(event, payload)

    def subscribe(self, listener: OrderListener) -> Callable[[], None]:
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    def _notify(self) -> None:
        orders = list(self._orders)
        positions = self._book.all()
        for listener in list(self._listeners):
            listener(orders, positions)

    @property
    def realized_pnl(self) -> float:
        return self._realized_pnl

    def positions(self) -> list[Position]:
        return self._book.all()

    def position(self, market_id: str) -> Optional[Position]:
        return self._book.get(market_id)

    def orders(self) -> list[Order]:
        return list(self._orders)

    def _market(self, market_id: str) -> MarketSpec:
        cached = self._markets.get(market_id)
        if cached is not None:
            return cached
        market = self.market_directory.get_market(market_id)
        if market is None:
            raise RuntimeError(f"Market {market_id} not found")
        self._markets[market_id] = market
        return market

    def process_signal(
        self,
        signal: Signal,
        market_id: str,
        current_price: float,
        now: Optional[datetime] = None,
    ) -> ExecutionResult:
        if now is None:
            now = datetime.now(timezone.utc)
        if signal.type == SignalType.CANCEL:
            return ExecutionResult(success=False, error="Cancel signals not supported")
        if not self.account:
            return ExecutionResult(success=False, error="No wallet connected")
        if not self.session_service.has_active_session(self.account):
            return ExecutionResult(success=False, error="No active trading session")

        quantity = signal.quantity
        if signal.type == SignalType.CLOSE:
            existing = self._book.get(market_id)
            if existing is None:
                return ExecutionResult(success=False, error=f"No open position in {market_id}")
            side = existing.side.closing_side
            if quantity <= 0 or quantity > existing.quantity:
                quantity = existing.quantity
        else:
            side = OrderSide.BUY if signal.type == SignalType.BUY else OrderSide.SELL

        kind = OrderKind.LIMIT if signal.order_type == OrderKind.LIMIT else OrderKind.MARKET
        price = signal.price if signal.price is not None else current_price

        try:
            market = self._market(market_id)
            placed = self.order_service.place_order(
                market,
                side,
                kind,
                scale_price(price, market),
                scale_quantity(quantity, market),
                self.account,
            )
        except Exception as exc:
            failed = Order(
                id=f"failed-{int(time.time() * 1000)}",
                market_id=market_id,
                side=side,
                kind=kind,
                quantity=quantity,
                status=OrderStatus.FAILED,
                created_at=now,
                price=price,
                reason=signal.reason,
                error=str(exc),
                strategy_id=self.strategy_id,
            )
            self._orders.append(failed)
            logger.error("Live order failed for %s: %s", market_id, exc)
            self._log("live_order_failed", failed.to_dict())
            if self._monitor is not None:
                self._monitor.order_failed(f"{market_id} {side.value} {quantity}: {exc}")
            self._notify()
            return ExecutionResult(success=False, order=failed, error=str(exc))

        status = _STATUS_MAP.get(placed.status, OrderStatus.PENDING)
        order = Order(
            id=placed.order_id,
            market_id=market_id,
            side=side,
            kind=kind,
            quantity=quantity,
            status=status,
            created_at=now,
            price=price,
            stop_price=signal.stop_price,
            reason=signal.reason,
            strategy_id=self.strategy_id,
        )
        if status == OrderStatus.FILLED:
            order = replace(order, filled_quantity=quantity, fill_price=price, filled_at=now)
            outcome = self._book.apply_fill(market_id, side, quantity, price, now)
            self._realized_pnl += outcome.realized_pnl
        self._orders.append(order)
        self._log("live_order_placed", order.to_dict())
        self._notify()
        return ExecutionResult(success=True, order=order)

    def close_all_positions(self, prices: Mapping[str, float]) -> CloseReport:
        closed = 0
        failed = 0
        for position in self._book.all():
            price = prices.get(position.market_id, position.current_price)
            signal = Signal(type=SignalType.CLOSE, quantity=position.quantity, reason="Emergency close")
            result = self.process_signal(signal, position.market_id, price)
            if result.success:
                closed += 1
            else:
                failed += 1
        self._log("live_close_all", {"closed": closed, "failed": failed})
        return CloseReport(closed=closed, failed=failed)

    def cancel_all_orders(self) -> int:
        if not self.account:
            return 0
        report = self.order_service.cancel_all_open_orders(self.account)
        if report.cancelled:
            self._orders = [
                replace(order, status=OrderStatus.CANCELLED) if order.status.is_working else order
                for order in self._orders
            ]
        self._log("live_cancel_all", {"cancelled": report.cancelled, "failed": report.failed})
        self._notify()
        return report.cancelled

    def update_position_pnl(self, market_id: str, price: float) -> None:
        if self._book.update_price(market_id, price) is not None:
            self._notify()

    def update_prices(self, prices: Mapping[str, float]) -> None:
        for market_id, price in prices.items():
            self._book.update_price(market_id, price)
        self._notify()

    def clear(self) -> None:
        self._listeners.clear()
        self._book.clear()
        self._orders = []
        self._markets.clear()
        self._realized_pnl = 0.0
