"""Position accounting shared by paper, live and backtest execution."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self == OrderSide.BUY else OrderSide.BUY


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> float:
        return 1.0 if self == PositionSide.LONG else -1.0

    @property
    def closing_side(self) -> OrderSide:
        return OrderSide.SELL if self == PositionSide.LONG else OrderSide.BUY

    @classmethod
    def for_order(cls, side: OrderSide) -> "PositionSide":
        return cls.LONG if side == OrderSide.BUY else cls.SHORT


@dataclass(frozen=True)
class Position:
    market_id: str
    side: PositionSide
    quantity: float
    average_entry_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def market_value(self) -> float:
        return self.current_price * self.quantity

    def marked(self, price: float) -> "Position":
        sign = self.side.sign
        pnl = (price - self.average_entry_price) * self.quantity * sign
        if self.average_entry_price:
            pnl_percent = (price - self.average_entry_price) / self.average_entry_price * 100.0 * sign
        else:
            pnl_percent = 0.0
        return replace(self, current_price=price, unrealized_pnl=pnl, unrealized_pnl_percent=pnl_percent)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "market_id": self.market_id,
            "side": self.side.value,
            "quantity": self.quantity,
            "average_entry_price": self.average_entry_price,
            "current_price": self.current_price,
            "unrealized_pnl": self.unrealized_pnl,
            "unrealized_pnl_percent": self.unrealized_pnl_percent,
            "opened_at": self.opened_at.isoformat(),
        }

    def to_script_view(self) -> dict:
        return {
            "side": self.side.value,
            "quantity": self.quantity,
            "avg_price": self.average_entry_price,
            "unrealized_pnl": self.unrealized_pnl,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Position":
        opened_at = data.get("opened_at")
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            market_id=str(data["market_id"]),
            side=PositionSide(data["side"]),
            quantity=float(data["quantity"]),
            average_entry_price=float(data["average_entry_price"]),
            current_price=float(data.get("current_price", data["average_entry_price"])),
            unrealized_pnl=float(data.get("unrealized_pnl", 0.0)),
            unrealized_pnl_percent=float(data.get("unrealized_pnl_percent", 0.0)),
            opened_at=datetime.fromisoformat(opened_at) if opened_at else datetime.now(timezone.utc),
        )


EMPTY_SCRIPT_POSITION = {"side": None, "quantity": 0.0, "avg_price": 0.0, "unrealized_pnl": 0.0}


@dataclass(frozen=True)
class FillOutcome:
    realized_pnl: float
    closed_quantity: float
    position: Optional[Position]
    reversed: bool = False


class PositionBook:
    """One position per market; fills extend, reduce or reverse it."""

    def __init__(self, positions: Iterable[Position] = ()) -> None:
        self._positions: dict[str, Position] = {position.market_id: position for position in positions}

    def get(self, market_id: str) -> Optional[Position]:
        return self._positions.get(market_id)

    def all(self) -> list[Position]:
        return list(self._positions.values())

    def __len__(self) -> int:
        return len(self._positions)

    def clear(self) -> None:
        self._positions.clear()

    def apply_fill(
        self,
        market_id: str,
        side: OrderSide,
        quantity: float,
        price: float,
        now: Optional[datetime] = None,
    ) -> FillOutcome:
        if now is None:
            now = datetime.now(timezone.utc)
        existing = self._positions.get(market_id)
        fill_side = PositionSide.for_order(side)

        if existing is None:
            position = Position(
                market_id=market_id,
                side=fill_side,
                quantity=quantity,
                average_entry_price=price,
                current_price=price,
                opened_at=now,
            )
            self._positions[market_id] = position
            return FillOutcome(0.0, 0.0, position)

        if existing.side == fill_side:
            total_quantity = existing.quantity + quantity
            average = (existing.average_entry_price * existing.quantity + price * quantity) / total_quantity
            position = replace(existing, quantity=total_quantity, average_entry_price=average).marked(price)
            self._positions[market_id] = position
            return FillOutcome(0.0, 0.0, position)

        closed = min(quantity, existing.quantity)
        realized = (price - existing.average_entry_price) * closed * existing.side.sign
        remaining = existing.quantity - quantity

        if abs(remaining) <= 1e-12:
            del self._positions[market_id]
            return FillOutcome(realized, closed, None)

        if remaining > 0:
            position = replace(existing, quantity=remaining).marked(price)
            self._positions[market_id] = position
            return FillOutcome(realized, closed, position)

        position = Position(
            market_id=market_id,
            side=fill_side,
            quantity=-remaining,
            average_entry_price=price,
            current_price=price,
            opened_at=now,
        )
        self._positions[market_id] = position
        return FillOutcome(realized, closed, position, reversed=True)

    def update_price(self, market_id: str, price: float) -> Optional[Position]:
        existing = self._positions.get(market_id)
        if existing is None:
            return None
        position = existing.marked(price)
        self._positions[market_id] = position
        return position

    def signed_market_value(self) -> float:
        return sum(position.market_value * position.side.sign for position in self._positions.values())

    def exposure(self) -> float:
        return sum(position.market_value for position in self._positions.values())

    def unrealized_pnl(self) -> float:
        return sum(position.unrealized_pnl for position in self._positions.values())
