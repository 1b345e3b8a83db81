"""Risk limit, status and violation models."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Optional

from strategy_lab.execution.positions import OrderSide


@dataclass(frozen=True)
class RiskLimits:
    max_position_size: float = 1000.0
    max_position_value: float = 10000.0
    max_total_exposure: float = 50000.0
    max_total_exposure_percent: float = 50.0
    max_daily_loss: float = 1000.0
    max_daily_loss_percent: float = 10.0
    max_total_loss: float = 5000.0
    max_total_loss_percent: float = 50.0
    max_drawdown_percent: float = 25.0
    max_orders_per_minute: int = 60
    max_order_value: float = 5000.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RiskLimits":
        if not data:
            return cls()
        known = {item.name for item in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown risk limit: {sorted(unknown)[0]}")
        values = {key: (int(value) if key == "max_orders_per_minute" else float(value)) for key, value in data.items()}
        return cls(**values)


class RiskViolationType(str, Enum):
    POSITION_SIZE = "position_size"
    POSITION_VALUE = "position_value"
    TOTAL_EXPOSURE = "total_exposure"
    DAILY_LOSS = "daily_loss"
    TOTAL_LOSS = "total_loss"
    DRAWDOWN = "drawdown"
    ORDER_RATE = "order_rate"
    ORDER_VALUE = "order_value"
    TRADING_HALTED = "trading_halted"


@dataclass(frozen=True)
class RiskViolation:
    type: RiskViolationType
    message: str
    current_value: float
    limit_value: float
    time: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "message": self.message,
            "current_value": self.current_value,
            "limit_value": self.limit_value,
            "time": self.time.isoformat(),
        }


@dataclass(frozen=True)
class OrderCheck:
    market_id: str
    side: OrderSide
    quantity: float
    price: float

    @property
    def value(self) -> float:
        return self.quantity * self.price


@dataclass(frozen=True)
class RiskCheckResult:
    allowed: bool
    violations: list[RiskViolation] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "; ".join(violation.message for violation in self.violations)


@dataclass(frozen=True)
class RiskStatus:
    is_halted: bool
    halt_reason: Optional[str]
    current_equity: float
    peak_equity: float
    drawdown: float
    drawdown_percent: float
    daily_start_equity: float
    daily_pnl: float
    daily_pnl_percent: float
    total_pnl: float
    total_pnl_percent: float
    exposure: float
    exposure_percent: float
    orders_last_minute: int
    last_updated: datetime
