"""Strategy, bar and signal models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from strategy_lab.sandbox.policy import SandboxPolicy


def parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text.replace("Z", "+00:00")
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def serialize_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def epoch_ms(value: datetime) -> int:
    return int(round(value.timestamp() * 1000))


class SignalType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    CLOSE = "close"
    CANCEL = "cancel"


class OrderKind(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class StrategyStatus(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    BACKTESTED = "backtested"
    LIVE = "live"


@dataclass(frozen=True)
class Bar:
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def __post_init__(self) -> None:
        for name in ("open", "high", "low", "close", "volume"):
            object.__setattr__(self, name, float(getattr(self, name)))

    @property
    def timestamp(self) -> int:
        return epoch_ms(self.time)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "time": serialize_time(self.time),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Bar":
        raw_time = data.get("time")
        if raw_time is None:
            raw_time = data["timestamp"]
        return cls(
            time=parse_time(raw_time),
            open=data["open"],
            high=data["high"],
            low=data["low"],
            close=data["close"],
            volume=data.get("volume", 0.0) or 0.0,
        )


@dataclass(frozen=True)
class Signal:
    type: SignalType
    quantity: float
    order_type: OrderKind = OrderKind.MARKET
    price: Optional[float] = None
    stop_price: Optional[float] = None
    reason: str = ""
    indicator_values: dict[str, float] = field(default_factory=dict)
    time: Optional[datetime] = None

    @property
    def is_cancel(self) -> bool:
        return self.type == SignalType.CANCEL

    def stamped(self, time: datetime) -> "Signal":
        return replace(self, time=time)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "quantity": self.quantity,
            "order_type": self.order_type.value,
            "price": self.price,
            "stop_price": self.stop_price,
            "reason": self.reason,
            "indicator_values": dict(self.indicator_values),
            "time": serialize_time(self.time),
        }

    @classmethod
    def from_dict(cls, data: Any, time: Optional[datetime] = None) -> "Signal":
        """Build a signal from a script-produced mapping.

        Raises ValueError when the mapping does not describe a usable signal.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Signal must be a dict, got {type(data).__name__}")
        try:
            signal_type = SignalType(str(data.get("type", "")).lower())
        except ValueError as exc:
            raise ValueError(f"Invalid signal type: {data.get('type')}") from exc
        try:
            order_type = OrderKind(str(data.get("order_type") or data.get("orderType") or "market").lower())
        except ValueError as exc:
            raise ValueError(f"Invalid order type: {data.get('order_type')}") from exc

        quantity = float(data.get("quantity", 0.0) or 0.0)
        if quantity < 0:
            raise ValueError("Signal quantity must be non-negative")
        if quantity == 0 and signal_type in {SignalType.BUY, SignalType.SELL}:
            raise ValueError("Signal quantity must be positive")

        price = data.get("price")
        stop_price = data.get("stop_price", data.get("stopPrice"))
        if order_type in {OrderKind.LIMIT, OrderKind.STOP_LIMIT} and price is None:
            raise ValueError(f"{order_type.value} signals require a price")
        if order_type in {OrderKind.STOP, OrderKind.STOP_LIMIT} and stop_price is None:
            raise ValueError(f"{order_type.value} signals require a stop_price")

        indicators = data.get("indicator_values") or {}
        if not isinstance(indicators, dict):
            raise ValueError("indicator_values must be a dict")
        stamp = parse_time(data.get("time")) or time
        return cls(
            type=signal_type,
            quantity=quantity,
            order_type=order_type,
            price=float(price) if price is not None else None,
            stop_price=float(stop_price) if stop_price is not None else None,
            reason=str(data.get("reason", "") or ""),
            indicator_values={str(key): float(value) for key, value in indicators.items()},
            time=stamp,
        )


@dataclass(frozen=True)
class StrategyVersion:
    version: str
    code: str
    config_values: dict[str, Any]
    created_at: datetime
    note: str = ""


@dataclass(frozen=True)
class Strategy:
    id: str
    name: str
    code: str
    description: str = ""
    config_values: dict[str, Any] = field(default_factory=dict)
    version: str = "1.0.0"
    version_history: list[StrategyVersion] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    status: StrategyStatus = StrategyStatus.DRAFT
    sandbox_policy: SandboxPolicy = field(default_factory=SandboxPolicy)
    template_category: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(cls, name: str, code: str, **kwargs: Any) -> "Strategy":
        return cls(id=str(uuid.uuid4()), name=name, code=code, **kwargs)

    def with_code(self, code: str, version: str, note: str = "") -> "Strategy":
        snapshot = StrategyVersion(
            version=self.version,
            code=self.code,
            config_values=dict(self.config_values),
            created_at=self.updated_at,
            note=note,
        )
        return replace(
            self,
            code=code,
            version=version,
            version_history=[*self.version_history, snapshot],
            status=StrategyStatus.DRAFT,
            updated_at=datetime.now(timezone.utc),
        )

    def with_status(self, status: StrategyStatus) -> "Strategy":
        return replace(self, status=status, updated_at=datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "description": self.description,
            "config_values": dict(self.config_values),
            "version": self.version,
            "version_history": [
                {
                    "version": item.version,
                    "code": item.code,
                    "config_values": dict(item.config_values),
                    "created_at": serialize_time(item.created_at),
                    "note": item.note,
                }
                for item in self.version_history
            ],
            "tags": list(self.tags),
            "status": self.status.value,
            "sandbox_policy": self.sandbox_policy.to_dict(),
            "template_category": self.template_category,
            "created_at": serialize_time(self.created_at),
            "updated_at": serialize_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Strategy":
        now = datetime.now(timezone.utc)
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            code=str(data["code"]),
            description=str(data.get("description", "")),
            config_values=dict(data.get("config_values", {})),
            version=str(data.get("version", "1.0.0")),
            version_history=[
                StrategyVersion(
                    version=str(item["version"]),
                    code=str(item["code"]),
                    config_values=dict(item.get("config_values", {})),
                    created_at=parse_time(item.get("created_at")) or now,
                    note=str(item.get("note", "")),
                )
                for item in data.get("version_history", [])
            ],
            tags=list(data.get("tags", [])),
            status=StrategyStatus(data.get("status", "draft")),
            sandbox_policy=SandboxPolicy.from_dict(data.get("sandbox_policy")),
            template_category=data.get("template_category"),
            created_at=parse_time(data.get("created_at")) or now,
            updated_at=parse_time(data.get("updated_at")) or now,
        )
