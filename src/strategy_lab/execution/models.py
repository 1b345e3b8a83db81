"""Order, trade and collaborator models for execution."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from strategy_lab.execution.positions import OrderSide
from strategy_lab.strategy.models import OrderKind, parse_time, serialize_time


class OrderStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_working(self) -> bool:
        return self in {OrderStatus.PENDING, OrderStatus.OPEN, OrderStatus.PARTIAL}


class ExchangeOrderStatus(str, Enum):
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Order:
    market_id: str
    side: OrderSide
    kind: OrderKind
    quantity: float
    status: OrderStatus
    created_at: datetime
    price: Optional[float] = None
    stop_price: Optional[float] = None
    filled_quantity: float = 0.0
    fill_price: Optional[float] = None
    filled_at: Optional[datetime] = None
    reason: str = ""
    error: Optional[str] = None
    strategy_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "market_id": self.market_id,
            "side": self.side.value,
            "kind": self.kind.value,
            "quantity": self.quantity,
            "status": self.status.value,
            "created_at": serialize_time(self.created_at),
            "price": self.price,
            "stop_price": self.stop_price,
            "filled_quantity": self.filled_quantity,
            "fill_price": self.fill_price,
            "filled_at": serialize_time(self.filled_at),
            "reason": self.reason,
            "error": self.error,
            "strategy_id": self.strategy_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        return cls(
            id=str(data["id"]),
            market_id=str(data["market_id"]),
            side=OrderSide(data["side"]),
            kind=OrderKind(data["kind"]),
            quantity=float(data["quantity"]),
            status=OrderStatus(data["status"]),
            created_at=parse_time(data["created_at"]) or datetime.now(timezone.utc),
            price=data.get("price"),
            stop_price=data.get("stop_price"),
            filled_quantity=float(data.get("filled_quantity", 0.0)),
            fill_price=data.get("fill_price"),
            filled_at=parse_time(data.get("filled_at")),
            reason=str(data.get("reason", "")),
            error=data.get("error"),
            strategy_id=data.get("strategy_id"),
        )


@dataclass(frozen=True)
class Trade:
    order_id: str
    market_id: str
    side: OrderSide
    price: float
    quantity: float
    fee: float
    slippage: float
    time: datetime
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    strategy_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def value(self) -> float:
        return self.price * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "market_id": self.market_id,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
            "fee": self.fee,
            "slippage": self.slippage,
            "time": serialize_time(self.time),
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "strategy_id": self.strategy_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Trade":
        return cls(
            id=str(data["id"]),
            order_id=str(data["order_id"]),
            market_id=str(data["market_id"]),
            side=OrderSide(data["side"]),
            price=float(data["price"]),
            quantity=float(data["quantity"]),
            fee=float(data.get("fee", 0.0)),
            slippage=float(data.get("slippage", 0.0)),
            time=parse_time(data["time"]) or datetime.now(timezone.utc),
            pnl=data.get("pnl"),
            pnl_percent=data.get("pnl_percent"),
            strategy_id=data.get("strategy_id"),
        )


@dataclass(frozen=True)
class MarketSpec:
    market_id: str
    base_decimals: int
    quote_decimals: int
    quote_max_precision: int
    base_symbol: str = ""
    quote_symbol: str = ""


@dataclass(frozen=True)
class PlacedOrder:
    order_id: str
    status: ExchangeOrderStatus


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    order: Optional[Order] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CloseReport:
    closed: int
    failed: int


@dataclass(frozen=True)
class CancelReport:
    cancelled: int
    failed: int
