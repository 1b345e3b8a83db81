"""Paper trading simulator with a simplified fill model."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Mapping, Optional

from strategy_lab.execution.models import Order, OrderStatus, Trade
from strategy_lab.execution.positions import OrderSide, Position, PositionBook
from strategy_lab.strategy.models import OrderKind, Signal, SignalType, parse_time, serialize_time

logger = logging.getLogger(__name__)


class SlippageKind(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    PERCENTAGE = "percentage"


@dataclass(frozen=True)
class SlippageModel:
    kind: SlippageKind = SlippageKind.PERCENTAGE
    value: float = 0.05

    def amount(self, price: float) -> float:
        if self.kind == SlippageKind.FIXED:
            return self.value
        if self.kind == SlippageKind.PERCENTAGE:
            return price * self.value / 100.0
        return 0.0

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SlippageModel":
        if not data:
            return cls()
        return cls(kind=SlippageKind(data.get("kind", "percentage")), value=float(data.get("value", 0.05)))


@dataclass(frozen=True)
class PaperTradingState:
    initial_capital: float
    cash: float
    equity: float
    positions: list[Position]
    open_orders: list[Order]
    order_history: list[Order]
    trade_history: list[Trade]
    realized_pnl: float
    gross_realized_pnl: float
    unrealized_pnl: float
    total_pnl: float
    total_pnl_percent: float
    total_fees: float
    started_at: datetime
    last_updated_at: datetime


StateListener = Callable[[PaperTradingState], None]


class PaperTradingSimulator:
    def __init__(
        self,
        initial_capital: float,
        fee_rate: float = 0.001,
        slippage_percent: float = 0.05,
        slippage: Optional[SlippageModel] = None,
        strategy_id: Optional[str] = None,
        audit_log: Optional[object] = None,
    ) -> None:
        self.initial_capital = float(initial_capital)
        self.fee_rate = fee_rate
        self.slippage = slippage or SlippageModel(SlippageKind.PERCENTAGE, slippage_percent)
        self.strategy_id = strategy_id
        self._audit_log = audit_log
        self._listeners: set[StateListener] = set()
        self._reset_books(datetime.now(timezone.utc))

    def _reset_books(self, now: datetime) -> None:
        self.cash = self.initial_capital
        self._book = PositionBook()
        self._open_orders: list[Order] = []
        self._order_history: list[Order] = []
        self._trades: list[Trade] = []
        self._realized_pnl = 0.0
        self._total_fees = 0.0
        self._started_at = now
        self._last_updated_at = now

    def _log(self, event: str, payload: dict) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log(event, payload)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.state()
        for listener in list(self._listeners):
            listener(snapshot)

    @property
    def equity(self) -> float:
        return self.cash + self._book.signed_market_value()

    @property
    def realized_pnl(self) -> float:
        """Closed-trade P&L net of every fee paid, so it equals equity minus capital when flat."""
        return self._realized_pnl - self._total_fees

    @property
    def gross_realized_pnl(self) -> float:
        return self._realized_pnl

    @property
    def total_fees(self) -> float:
        return self._total_fees

    def position(self, market_id: str) -> Optional[Position]:
        return self._book.get(market_id)

    def positions(self) -> list[Position]:
        return self._book.all()

    def open_orders(self) -> list[Order]:
        return list(self._open_orders)

    def order_history(self) -> list[Order]:
        return list(self._order_history)

    def trade_history(self) -> list[Trade]:
        return list(self._trades)

    def state(self) -> PaperTradingState:
        unrealized = self._book.unrealized_pnl()
        total = self.realized_pnl + unrealized
        return PaperTradingState(
            initial_capital=self.initial_capital,
            cash=self.cash,
            equity=self.equity,
            positions=self._book.all(),
            open_orders=list(self._open_orders),
            order_history=list(self._order_history),
            trade_history=list(self._trades),
            realized_pnl=self.realized_pnl,
            gross_realized_pnl=self._realized_pnl,
            unrealized_pnl=unrealized,
            total_pnl=total,
            total_pnl_percent=total / self.initial_capital * 100.0 if self.initial_capital else 0.0,
            total_fees=self._total_fees,
            started_at=self._started_at,
            last_updated_at=self._last_updated_at,
        )

    def process_signal(
        self,
        signal: Signal,
        market_id: str,
        current_price: float,
        now: Optional[datetime] = None,
    ) -> Optional[Order]:
        if now is None:
            now = datetime.now(timezone.utc)

        if signal.type == SignalType.CANCEL:
            self.cancel_all_orders(market_id)
            return None

        quantity = signal.quantity
        if signal.type == SignalType.CLOSE:
            existing = self._book.get(market_id)
            if existing is None:
                logger.info("Close signal ignored: no open position in %s", market_id)
                return None
            side = existing.side.closing_side
            if quantity <= 0 or quantity > existing.quantity:
                quantity = existing.quantity
        else:
            side = OrderSide.BUY if signal.type == SignalType.BUY else OrderSide.SELL

        order = Order(
            market_id=market_id,
            side=side,
            kind=signal.order_type,
            quantity=quantity,
            status=OrderStatus.PENDING,
            created_at=now,
            price=signal.price,
            stop_price=signal.stop_price,
            reason=signal.reason,
            strategy_id=self.strategy_id,
        )

        if order.kind == OrderKind.MARKET:
            return self._fill(order, current_price, now)

        order = replace(order, status=OrderStatus.OPEN)
        self._open_orders.append(order)
        self._last_updated_at = now
        self._log("paper_order_open", order.to_dict())
        self._notify()
        return order

    def _fill(self, order: Order, fill_price: float, now: datetime) -> Order:
        slippage = self.slippage.amount(fill_price)
        actual_price = fill_price + slippage if order.side == OrderSide.BUY else fill_price - slippage
        value = actual_price * order.quantity
        fee = value * self.fee_rate

        self._open_orders = [item for item in self._open_orders if item.id != order.id]

        if order.side == OrderSide.BUY and value + fee > self.cash:
            rejected = replace(order, status=OrderStatus.REJECTED, error="Insufficient funds")
            self._order_history.append(rejected)
            self._last_updated_at = now
            logger.warning("Paper order rejected: need %.2f, have %.2f", value + fee, self.cash)
            self._log("paper_order_rejected", {**rejected.to_dict(), "required": value + fee, "cash": self.cash})
            self._notify()
            return rejected

        before = self._book.get(order.market_id)
        outcome = self._book.apply_fill(order.market_id, order.side, order.quantity, actual_price, now)

        pnl: Optional[float] = None
        pnl_percent: Optional[float] = None
        if outcome.closed_quantity > 0 and before is not None:
            pnl = outcome.realized_pnl
            basis = before.average_entry_price * outcome.closed_quantity
            pnl_percent = pnl / basis * 100.0 if basis else 0.0
            self._realized_pnl += pnl

        if order.side == OrderSide.BUY:
            self.cash -= value + fee
        else:
            self.cash += value - fee
        self._total_fees += fee

        filled = replace(
            order,
            status=OrderStatus.FILLED,
            filled_quantity=order.quantity,
            fill_price=actual_price,
            filled_at=now,
        )
        self._order_history.append(filled)
        self._trades.append(
            Trade(
                order_id=filled.id,
                market_id=filled.market_id,
                side=filled.side,
                price=actual_price,
                quantity=filled.quantity,
                fee=fee,
                slippage=abs(slippage * filled.quantity),
                time=now,
                pnl=pnl,
                pnl_percent=pnl_percent,
                strategy_id=filled.strategy_id,
            )
        )
        self._last_updated_at = now
        self._log(
            "paper_fill",
            {
                "order_id": filled.id,
                "market_id": filled.market_id,
                "side": filled.side.value,
                "quantity": filled.quantity,
                "price": actual_price,
                "fee": fee,
                "realized_pnl": pnl,
                "cash": self.cash,
            },
        )
        self._notify()
        return filled

    def check_open_orders(
        self,
        market_id: str,
        current_price: float,
        high: float,
        low: float,
        now: Optional[datetime] = None,
    ) -> list[Order]:
        if now is None:
            now = datetime.now(timezone.utc)
        triggered: list[tuple[Order, float]] = []
        for order in self._open_orders:
            if order.market_id != market_id or order.status != OrderStatus.OPEN:
                continue
            fill_price = self._trigger_price(order, current_price, high, low)
            if fill_price is not None:
                triggered.append((order, fill_price))
        return [self._fill(order, price, now) for order, price in triggered]

    @staticmethod
    def _trigger_price(order: Order, current_price: float, high: float, low: float) -> Optional[float]:
        buy = order.side == OrderSide.BUY
        if order.kind == OrderKind.LIMIT and order.price is not None:
            crossed = low <= order.price if buy else high >= order.price
            return order.price if crossed else None
        if order.kind == OrderKind.STOP and order.stop_price is not None:
            triggered = high >= order.stop_price if buy else low <= order.stop_price
            return current_price if triggered else None
        if order.kind == OrderKind.STOP_LIMIT and order.stop_price is not None and order.price is not None:
            triggered = high >= order.stop_price if buy else low <= order.stop_price
            crossed = low <= order.price if buy else high >= order.price
            return order.price if triggered and crossed else None
        return None

    def update_prices(self, prices: Mapping[str, float]) -> None:
        updated = False
        for market_id, price in prices.items():
            if self._book.update_price(market_id, price) is not None:
                updated = True
        if updated:
            self._last_updated_at = datetime.now(timezone.utc)
            self._notify()

    def update_price(self, market_id: str, price: float) -> None:
        self.update_prices({market_id: price})

    def cancel_order(self, order_id: str, now: Optional[datetime] = None) -> bool:
        for order in self._open_orders:
            if order.id == order_id:
                break
        else:
            return False
        cancelled = replace(order, status=OrderStatus.CANCELLED)
        self._open_orders = [item for item in self._open_orders if item.id != order_id]
        self._order_history.append(cancelled)
        self._last_updated_at = now or datetime.now(timezone.utc)
        self._log("paper_order_cancelled", {"order_id": order_id, "market_id": order.market_id})
        self._notify()
        return True

    def cancel_all_orders(self, market_id: Optional[str] = None) -> int:
        targets = [order.id for order in self._open_orders if market_id is None or order.market_id == market_id]
        return sum(1 for order_id in targets if self.cancel_order(order_id))

    def close_all_positions(self, prices: Mapping[str, float], now: Optional[datetime] = None) -> list[Order]:
        orders: list[Order] = []
        for position in self._book.all():
            price = prices.get(position.market_id)
            if not price:
                logger.warning("No price for %s, skipping close", position.market_id)
                continue
            signal = Signal(
                type=SignalType.CLOSE,
                quantity=position.quantity,
                reason="Emergency close all positions",
            )
            order = self.process_signal(signal, position.market_id, price, now)
            if order is not None:
                orders.append(order)
        return orders

    def reset(self) -> None:
        self._reset_books(datetime.now(timezone.utc))
        self._notify()

    def clear(self) -> None:
        self._listeners.clear()
        self._reset_books(datetime.now(timezone.utc))

    def serialize(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "initial_capital": self.initial_capital,
            "cash": self.cash,
            "fee_rate": self.fee_rate,
            "slippage": self.slippage.to_dict(),
            "positions": [position.to_dict() for position in self._book.all()],
            "open_orders": [order.to_dict() for order in self._open_orders],
            "order_history": [order.to_dict() for order in self._order_history],
            "trade_history": [trade.to_dict() for trade in self._trades],
            "realized_pnl": self.realized_pnl,
            "gross_realized_pnl": self._realized_pnl,
            "total_fees": self._total_fees,
            "started_at": serialize_time(self._started_at),
            "last_updated_at": serialize_time(self._last_updated_at),
        }

    @classmethod
    def restore(cls, payload: dict, audit_log: Optional[object] = None) -> "PaperTradingSimulator":
        simulator = cls(
            initial_capital=float(payload["initial_capital"]),
            fee_rate=float(payload.get("fee_rate", 0.001)),
            slippage=SlippageModel.from_dict(payload.get("slippage")),
            strategy_id=payload.get("strategy_id"),
            audit_log=audit_log,
        )
        simulator.cash = float(payload.get("cash", simulator.initial_capital))
        simulator._book = PositionBook(Position.from_dict(item) for item in payload.get("positions", []))
        simulator._open_orders = [Order.from_dict(item) for item in payload.get("open_orders", [])]
        simulator._order_history = [Order.from_dict(item) for item in payload.get("order_history", [])]
        simulator._trades = [Trade.from_dict(item) for item in payload.get("trade_history", [])]
        simulator._realized_pnl = float(payload.get("gross_realized_pnl", 0.0))
        simulator._total_fees = float(payload.get("total_fees", 0.0))
        now = datetime.now(timezone.utc)
        simulator._started_at = parse_time(payload.get("started_at")) or now
        simulator._last_updated_at = parse_time(payload.get("last_updated_at")) or now
        return simulator
