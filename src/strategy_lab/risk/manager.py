"""Pre-trade checks and equity-driven trading halts."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from strategy_lab.execution.positions import OrderSide, Position
from strategy_lab.risk.models import (
    OrderCheck,
    RiskCheckResult,
    RiskLimits,
    RiskStatus,
    RiskViolation,
    RiskViolationType,
)

logger = logging.getLogger(__name__)

RATE_WINDOW = timedelta(seconds=60)
MAX_VIOLATIONS = 1000

StatusListener = Callable[[RiskStatus], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderRateLimiter:
    """Counts orders inside a sliding window ending at ``now``."""

    def __init__(self, window: timedelta = RATE_WINDOW) -> None:
        self.window = window
        self._timestamps: deque[datetime] = deque()

    def _evict(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def record(self, now: datetime) -> None:
        self._evict(now)
        self._timestamps.append(now)

    def count(self, now: datetime) -> int:
        self._evict(now)
        return len(self._timestamps)

    def clear(self) -> None:
        self._timestamps.clear()


class RiskManager:
    def __init__(
        self,
        initial_capital: float,
        limits: Optional[RiskLimits] = None,
        audit_log: Optional[object] = None,
        monitor: Optional[object] = None,
    ) -> None:
        self._audit_log = audit_log
        self._monitor = monitor
        self._limits = limits or RiskLimits()
        self._listeners: set[StatusListener] = set()
        self._rate = OrderRateLimiter()
        self._violations: deque[RiskViolation] = deque(maxlen=MAX_VIOLATIONS)
        self.initialize(initial_capital)

    def initialize(self, initial_capital: float, now: Optional[datetime] = None) -> None:
        now = now or _utc_now()
        self.initial_capital = float(initial_capital)
        self._halted = False
        self._halt_reason: Optional[str] = None
        self._equity = self.initial_capital
        self._peak = self.initial_capital
        self._daily_start_equity = self.initial_capital
        self._day: date = now.astimezone(timezone.utc).date()
        self._exposure = 0.0
        self._last_updated = now
        self._rate.clear()
        self._violations.clear()

    def _log(self, event: str, payload: dict) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log(event, payload)

    @property
    def limits(self) -> RiskLimits:
        return self._limits

    @property
    def is_halted(self) -> bool:
        return self._halted

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.status()
        for listener in list(self._listeners):
            listener(snapshot)

    def status(self, now: Optional[datetime] = None) -> RiskStatus:
        now = now or _utc_now()
        equity = self._equity
        drawdown = self._peak - equity
        daily_pnl = equity - self._daily_start_equity
        total_pnl = equity - self.initial_capital
        return RiskStatus(
            is_halted=self._halted,
            halt_reason=self._halt_reason,
            current_equity=equity,
            peak_equity=self._peak,
            drawdown=drawdown,
            drawdown_percent=drawdown / self._peak * 100.0 if self._peak > 0 else 0.0,
            daily_start_equity=self._daily_start_equity,
            daily_pnl=daily_pnl,
            daily_pnl_percent=daily_pnl / self._daily_start_equity * 100.0 if self._daily_start_equity > 0 else 0.0,
            total_pnl=total_pnl,
            total_pnl_percent=total_pnl / self.initial_capital * 100.0 if self.initial_capital > 0 else 0.0,
            exposure=self._exposure,
            exposure_percent=self._exposure / equity * 100.0 if equity > 0 else 0.0,
            orders_last_minute=self._rate.count(now),
            last_updated=self._last_updated,
        )

    def update_limits(self, **changes) -> RiskLimits:
        self._limits = replace(self._limits, **changes)
        self._log("risk_limits_updated", self._limits.to_dict())
        self._check_breaches(self._last_updated)
        self._notify()
        return self._limits

    def _violation(
        self,
        kind: RiskViolationType,
        message: str,
        current: float,
        limit: float,
        now: datetime,
    ) -> RiskViolation:
        violation = RiskViolation(kind, message, current, limit, now)
        self._violations.append(violation)
        return violation

    def check_order(
        self,
        order: OrderCheck,
        positions: Iterable[Position] = (),
        now: Optional[datetime] = None,
    ) -> RiskCheckResult:
        now = now or _utc_now()
        if self._halted:
            violation = self._violation(
                RiskViolationType.TRADING_HALTED,
                f"Trading halted: {self._halt_reason}",
                0.0,
                0.0,
                now,
            )
            self._log("risk_check", {"allowed": False, "reason": violation.message})
            return RiskCheckResult(False, [violation])

        limits = self._limits
        positions = list(positions)
        violations: list[RiskViolation] = []
        value = order.value

        if value > limits.max_order_value:
            violations.append(
                self._violation(
                    RiskViolationType.ORDER_VALUE,
                    f"Order value ${value:.2f} exceeds limit ${limits.max_order_value:.2f}",
                    value,
                    limits.max_order_value,
                    now,
                )
            )

        if order.side == OrderSide.BUY:
            existing = next((item for item in positions if item.market_id == order.market_id), None)
            size = (existing.quantity if existing else 0.0) + order.quantity
            if size > limits.max_position_size:
                violations.append(
                    self._violation(
                        RiskViolationType.POSITION_SIZE,
                        f"Position size {size:g} exceeds limit {limits.max_position_size:g}",
                        size,
                        limits.max_position_size,
                        now,
                    )
                )
            position_value = size * order.price
            if position_value > limits.max_position_value:
                violations.append(
                    self._violation(
                        RiskViolationType.POSITION_VALUE,
                        f"Position value ${position_value:.2f} exceeds limit ${limits.max_position_value:.2f}",
                        position_value,
                        limits.max_position_value,
                        now,
                    )
                )
            exposure = sum(item.market_value for item in positions) + value
            if exposure > limits.max_total_exposure:
                violations.append(
                    self._violation(
                        RiskViolationType.TOTAL_EXPOSURE,
                        f"Total exposure ${exposure:.2f} exceeds limit ${limits.max_total_exposure:.2f}",
                        exposure,
                        limits.max_total_exposure,
                        now,
                    )
                )
            elif self._equity > 0 and exposure / self._equity * 100.0 > limits.max_total_exposure_percent:
                exposure_percent = exposure / self._equity * 100.0
                violations.append(
                    self._violation(
                        RiskViolationType.TOTAL_EXPOSURE,
                        f"Total exposure {exposure_percent:.2f}% exceeds limit "
                        f"{limits.max_total_exposure_percent:.2f}%",
                        exposure_percent,
                        limits.max_total_exposure_percent,
                        now,
                    )
                )

        recent = self._rate.count(now)
        if recent >= limits.max_orders_per_minute:
            violations.append(
                self._violation(
                    RiskViolationType.ORDER_RATE,
                    f"Order rate {recent} per minute exceeds limit {limits.max_orders_per_minute}",
                    float(recent),
                    float(limits.max_orders_per_minute),
                    now,
                )
            )

        result = RiskCheckResult(not violations, violations)
        self._log(
            "risk_check",
            {
                "allowed": result.allowed,
                "market_id": order.market_id,
                "side": order.side.value,
                "quantity": order.quantity,
                "price": order.price,
                "reason": result.reason,
            },
        )
        return result

    def record_order(self, now: Optional[datetime] = None) -> None:
        self._rate.record(now or _utc_now())

    def update_equity(
        self,
        equity: float,
        positions: Iterable[Position] = (),
        now: Optional[datetime] = None,
    ) -> RiskStatus:
        now = now or _utc_now()
        self._roll_day(now)
        self._equity = float(equity)
        self._peak = max(self._peak, self._equity)
        self._exposure = sum(position.current_price * position.quantity for position in positions)
        self._last_updated = now
        self._check_breaches(now)
        self._notify()
        return self.status(now)

    def _roll_day(self, now: datetime) -> None:
        today = now.astimezone(timezone.utc).date()
        if today == self._day:
            return
        self._day = today
        self._daily_start_equity = self._equity
        midnight = datetime(today.year, today.month, today.day, tzinfo=timezone.utc)
        kept = [violation for violation in self._violations if violation.time >= midnight]
        self._violations.clear()
        self._violations.extend(kept)
        self._log("risk_day_rollover", {"day": today.isoformat(), "daily_start_equity": self._daily_start_equity})

    def _check_breaches(self, now: datetime) -> None:
        if self._halted:
            return
        limits = self._limits
        status = self.status(now)
        daily_loss = -status.daily_pnl
        daily_loss_percent = -status.daily_pnl_percent
        total_loss = -status.total_pnl
        total_loss_percent = -status.total_pnl_percent

        checks = (
            (
                RiskViolationType.DAILY_LOSS,
                daily_loss,
                limits.max_daily_loss,
                f"Daily loss ${daily_loss:.2f} exceeds limit ${limits.max_daily_loss:.2f}",
            ),
            (
                RiskViolationType.DAILY_LOSS,
                daily_loss_percent,
                limits.max_daily_loss_percent,
                f"Daily loss {daily_loss_percent:.2f}% exceeds limit {limits.max_daily_loss_percent:.2f}%",
            ),
            (
                RiskViolationType.TOTAL_LOSS,
                total_loss,
                limits.max_total_loss,
                f"Total loss ${total_loss:.2f} exceeds limit ${limits.max_total_loss:.2f}",
            ),
            (
                RiskViolationType.TOTAL_LOSS,
                total_loss_percent,
                limits.max_total_loss_percent,
                f"Total loss {total_loss_percent:.2f}% exceeds limit {limits.max_total_loss_percent:.2f}%",
            ),
            (
                RiskViolationType.DRAWDOWN,
                status.drawdown_percent,
                limits.max_drawdown_percent,
                f"Drawdown {status.drawdown_percent:.2f}% exceeds limit {limits.max_drawdown_percent:.2f}%",
            ),
        )
        for kind, current, limit, message in checks:
            if current > 0 and current >= limit:
                self._violation(kind, message, current, limit, now)
                self.halt(message)
                return

    def halt(self, reason: str) -> None:
        if self._halted:
            return
        self._halted = True
        self._halt_reason = reason
        logger.warning("Trading halted: %s", reason)
        self._log("risk_halt", {"reason": reason, "equity": self._equity})
        if self._monitor is not None:
            self._monitor.risk_halt(reason)
        self._notify()

    def resume(self) -> None:
        if not self._halted:
            return
        self._halted = False
        self._halt_reason = None
        self._log("risk_resume", {"equity": self._equity})
        self._notify()

    def emergency_stop(self) -> None:
        self.halt("Emergency stop triggered")

    def violations(self, limit: int = 100) -> list[RiskViolation]:
        items = list(self._violations)
        return items[-limit:] if limit > 0 else []

    def reset(self) -> None:
        self.initialize(self.initial_capital)
        self._notify()

    def clear(self) -> None:
        self._listeners.clear()
        self.initialize(self.initial_capital)
