"""Asyncio runner that feeds bars to a sandboxed strategy and routes its signals."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from strategy_lab.execution.broker import MarketDirectory, OrderPlacementService, SessionService
from strategy_lab.execution.live import LiveOrderExecutor
from strategy_lab.execution.models import OrderStatus
from strategy_lab.execution.paper import PaperTradingSimulator
from strategy_lab.execution.positions import EMPTY_SCRIPT_POSITION, OrderSide, Position
from strategy_lab.risk.manager import RiskManager
from strategy_lab.risk.models import OrderCheck
from strategy_lab.runtime.models import LiveStrategyConfig, LiveStrategyState, RunnerStatus, TradingMode
from strategy_lab.sandbox.bridge import SandboxBridge, SandboxError
from strategy_lab.sandbox.policy import SandboxPolicy
from strategy_lab.storage.store import PAPER_STATES, STRATEGIES, RecordStore
from strategy_lab.strategy.models import Bar, Signal, SignalType, Strategy

logger = logging.getLogger(__name__)

NO_SESSION_MESSAGE = "No active trading session. Please connect wallet and create a session first."
EMERGENCY_STOP_MESSAGE = "Emergency stop triggered"

BridgeFactory = Callable[[SandboxPolicy], SandboxBridge]
StateListener = Callable[[LiveStrategyState], None]

_STOP = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LiveStrategyRunner:
    def __init__(
        self,
        store: RecordStore,
        bridge_factory: Optional[BridgeFactory] = None,
        order_service: Optional[OrderPlacementService] = None,
        session_service: Optional[SessionService] = None,
        market_directory: Optional[MarketDirectory] = None,
        audit_log: Optional[object] = None,
        monitor: Optional[object] = None,
    ) -> None:
        self.store = store
        self.order_service = order_service
        self.session_service = session_service
        self.market_directory = market_directory
        self._audit_log = audit_log
        self._monitor = monitor
        if bridge_factory is None:
            bridge_factory = lambda policy: SandboxBridge(policy, audit_log=audit_log, monitor=monitor)
        self._bridge_factory = bridge_factory
        self._listeners: set[StateListener] = set()
        self._reset()

    def _reset(self) -> None:
        self.config: Optional[LiveStrategyConfig] = None
        self.strategy: Optional[Strategy] = None
        self.risk: Optional[RiskManager] = None
        self.simulator: Optional[PaperTradingSimulator] = None
        self.executor: Optional[LiveOrderExecutor] = None
        self.bridge: Optional[SandboxBridge] = None
        self._state: Optional[LiveStrategyState] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._resumed: Optional[asyncio.Event] = None

    def _log(self, event: str, payload: dict) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log(event, payload)

    @property
    def state(self) -> Optional[LiveStrategyState]:
        return self._state

    @property
    def status(self) -> RunnerStatus:
        return self._state.status if self._state else RunnerStatus.IDLE

    @property
    def is_paper(self) -> bool:
        return self.config is not None and self.config.trading_mode == TradingMode.PAPER

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    def _set(self, **changes) -> None:
        if self._state is None:
            return
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            listener(self._state)

    def _require(self) -> LiveStrategyConfig:
        if self.config is None or self._state is None or self.bridge is None:
            raise RuntimeError("Runner not initialized")
        return self.config

    async def initialize(self, config: LiveStrategyConfig) -> LiveStrategyState:
        if self.status in {RunnerStatus.STARTING, RunnerStatus.RUNNING, RunnerStatus.PAUSED}:
            raise RuntimeError("Runner is already running")

        record = await asyncio.to_thread(self.store.get, STRATEGIES, config.strategy_id)
        if record is None:
            raise RuntimeError(f"Strategy {config.strategy_id} not found")
        strategy = Strategy.from_dict(record)

        simulator: Optional[PaperTradingSimulator] = None
        executor: Optional[LiveOrderExecutor] = None
        if config.trading_mode == TradingMode.PAPER:
            saved = None
            if config.persist_paper_state:
                saved = await asyncio.to_thread(self.store.get, PAPER_STATES, config.strategy_id)
            if saved:
                simulator = PaperTradingSimulator.restore(saved, audit_log=self._audit_log)
                logger.info("Restored paper state for %s", config.strategy_id)
            else:
                simulator = PaperTradingSimulator(
                    initial_capital=config.initial_capital,
                    fee_rate=config.fee_rate,
                    slippage_percent=config.slippage_percent,
                    strategy_id=config.strategy_id,
                    audit_log=self._audit_log,
                )
        else:
            if self.order_service is None or self.session_service is None or self.market_directory is None:
                raise RuntimeError("Live trading requires order, session and market services")
            has_session = bool(config.account) and await asyncio.to_thread(
                self.session_service.has_active_session, config.account
            )
            if not has_session:
                raise RuntimeError(NO_SESSION_MESSAGE)
            executor = LiveOrderExecutor(
                self.order_service,
                self.session_service,
                self.market_directory,
                account=config.account,
                strategy_id=config.strategy_id,
                audit_log=self._audit_log,
                monitor=self._monitor,
            )

        risk = RiskManager(config.initial_capital, config.risk_limits, self._audit_log, self._monitor)
        bridge = self._bridge_factory(strategy.sandbox_policy)
        await asyncio.to_thread(bridge.initialize)

        self.config = config
        self.strategy = strategy
        self.simulator = simulator
        self.executor = executor
        self.risk = risk
        self.bridge = bridge
        self._queue = asyncio.Queue()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._state = LiveStrategyState(
            strategy_id=config.strategy_id,
            market_id=config.market_id,
            mode=config.trading_mode,
            equity=self._equity(),
            risk=risk.status(),
        )
        self._log("runner_initialized", config.to_dict())
        return self._state

    async def start(self) -> None:
        config = self._require()
        if self.status in {RunnerStatus.RUNNING, RunnerStatus.PAUSED}:
            return
        self._set(status=RunnerStatus.STARTING, error=None)
        params = {**self.strategy.config_values, **config.params}
        try:
            await asyncio.to_thread(self.bridge.load_strategy, self.strategy.code, params)
        except Exception as exc:
            message = f"Failed to start strategy: {exc}"
            logger.error(message)
            self._log("runner_error", {"strategy_id": config.strategy_id, "error": message})
            if self._monitor is not None:
                self._monitor.runner_error(message)
            self._set(status=RunnerStatus.ERROR, error=message)
            return

        self._resumed.set()
        self._set(status=RunnerStatus.RUNNING, started_at=_utc_now(), stopped_at=None)
        self._consumer = asyncio.create_task(self._consume())
        self._log("runner_started", {"strategy_id": config.strategy_id, "market_id": config.market_id})

    async def process_bar(self, bar: Bar) -> bool:
        """Queue a bar for the strategy; returns False when the bar is not accepted."""
        if self._state is None or self.status not in {RunnerStatus.RUNNING, RunnerStatus.PAUSED}:
            return False
        if self.risk.is_halted:
            logger.info("Trading halted, skipping bar at %s", bar.time.isoformat())
            self._log("bar_skipped", {"time": bar.time.isoformat(), "reason": self.risk.status().halt_reason})
            return False
        await self._queue.put(bar)
        return True

    async def drain(self) -> None:
        """Wait until every queued bar has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _consume(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                while self.status == RunnerStatus.PAUSED:
                    await self._resumed.wait()
                if self.status != RunnerStatus.RUNNING:
                    continue
                await self._handle_bar(item)
            except Exception as exc:
                logger.exception("Bar processing failed")
                self._log("bar_error", {"error": str(exc)})
            finally:
                self._queue.task_done()

    async def _handle_bar(self, bar: Bar) -> None:
        config = self.config
        if self.risk.is_halted:
            return
        self._mark(bar.close)
        self._trigger_orders(bar)

        orders = [order.to_dict() for order in self.simulator.open_orders()] if self.simulator else []
        try:
            result = await asyncio.to_thread(
                self.bridge.step,
                bar,
                self._position_view(),
                int(config.bar_timeout_seconds * 1000),
                orders,
            )
        except SandboxError as exc:
            logger.warning("Strategy step failed at %s: %s", bar.time.isoformat(), exc)
            self._log("strategy_error", {"time": bar.time.isoformat(), "error": str(exc)})
            return
        if not result.success:
            logger.warning("Strategy error at %s: %s", bar.time.isoformat(), result.error)
            self._log("strategy_error", {"time": bar.time.isoformat(), "error": result.error})
            return
        for error in result.bar_errors:
            logger.warning("Strategy raised at %s: %s", error.get("time"), error.get("message"))

        self._set(
            bars_processed=self._state.bars_processed + 1,
            signals_generated=self._state.signals_generated + len(result.signals),
            last_bar_time=bar.time,
        )
        for signal in result.signals:
            await self._process_signal(signal, bar)

        self._update_risk(bar.time)
        if self.simulator is not None and config.persist_paper_state:
            await asyncio.to_thread(self.store.put, PAPER_STATES, config.strategy_id, self.simulator.serialize())

    def _positions(self) -> list[Position]:
        if self.simulator is not None:
            return self.simulator.positions()
        if self.executor is not None:
            return self.executor.positions()
        return []

    def _position(self) -> Optional[Position]:
        market_id = self.config.market_id
        if self.simulator is not None:
            return self.simulator.position(market_id)
        if self.executor is not None:
            return self.executor.position(market_id)
        return None

    def _position_view(self) -> dict:
        position = self._position()
        return position.to_script_view() if position else dict(EMPTY_SCRIPT_POSITION)

    def _order_side(self, signal: Signal) -> tuple[Optional[OrderSide], float]:
        if signal.type == SignalType.CLOSE:
            position = self._position()
            if position is None:
                return None, 0.0
            quantity = signal.quantity if 0 < signal.quantity <= position.quantity else position.quantity
            return position.side.closing_side, quantity
        side = OrderSide.BUY if signal.type == SignalType.BUY else OrderSide.SELL
        return side, signal.quantity

    async def _process_signal(self, signal: Signal, bar: Bar) -> None:
        config = self.config
        self._set(last_signal=signal)
        if signal.type == SignalType.CANCEL:
            logger.info("Cancel signal ignored by runner")
            return

        side, quantity = self._order_side(signal)
        if side is None:
            logger.info("Close signal ignored: no open position in %s", config.market_id)
            return

        price = signal.price if signal.price is not None else bar.close
        check = self.risk.check_order(
            OrderCheck(config.market_id, side, quantity, price),
            self._positions(),
            now=bar.time,
        )
        if not check.allowed:
            logger.info("Order blocked by risk: %s", check.reason)
            self._log("order_blocked", {"signal": signal.to_dict(), "reason": check.reason})
            return

        if self.simulator is not None:
            order = self.simulator.process_signal(signal, config.market_id, bar.close, now=bar.time)
            placed = order is not None and order.status != OrderStatus.REJECTED
            filled = order is not None and order.status == OrderStatus.FILLED
        else:
            result = await asyncio.to_thread(
                self.executor.process_signal,
                signal,
                config.market_id,
                bar.close,
                bar.time,
            )
            if not result.success:
                logger.warning("Live order failed: %s", result.error)
            placed = result.success
            filled = result.order is not None and result.order.status == OrderStatus.FILLED

        if not placed:
            return
        self.risk.record_order(bar.time)
        self._set(
            orders_placed=self._state.orders_placed + 1,
            trades_executed=self._state.trades_executed + (1 if filled else 0),
        )

    def _mark(self, price: float) -> None:
        market_id = self.config.market_id
        if self.simulator is not None:
            self.simulator.update_price(market_id, price)
        elif self.executor is not None:
            self.executor.update_position_pnl(market_id, price)
        self._set(current_price=price)

    def _trigger_orders(self, bar: Bar) -> None:
        if self.simulator is None:
            return
        fills = self.simulator.check_open_orders(self.config.market_id, bar.close, bar.high, bar.low, now=bar.time)
        filled = sum(1 for order in fills if order.status == OrderStatus.FILLED)
        if filled:
            self._set(trades_executed=self._state.trades_executed + filled)

    def _equity(self) -> float:
        if self.simulator is not None:
            return self.simulator.equity
        if self.executor is not None:
            unrealized = sum(position.unrealized_pnl for position in self.executor.positions())
            return self.config.initial_capital + self.executor.realized_pnl + unrealized
        return self.config.initial_capital if self.config else 0.0

    def _update_risk(self, now: datetime) -> None:
        was_halted = self.risk.is_halted
        status = self.risk.update_equity(self._equity(), self._positions(), now=now)
        if status.is_halted and not was_halted:
            logger.warning("Runner halted by risk manager: %s", status.halt_reason)
            self._log("runner_halted", {"strategy_id": self.config.strategy_id, "reason": status.halt_reason})
        self._refresh(status)

    def _refresh(self, risk_status=None) -> None:
        if self.simulator is not None:
            realized = self.simulator.realized_pnl
        elif self.executor is not None:
            realized = self.executor.realized_pnl
        else:
            realized = 0.0
        self._set(
            equity=self._equity(),
            realized_pnl=realized,
            unrealized_pnl=sum(position.unrealized_pnl for position in self._positions()),
            risk=risk_status or self.risk.status(),
        )

    def pause(self) -> None:
        if self.status != RunnerStatus.RUNNING:
            return
        self._resumed.clear()
        self._set(status=RunnerStatus.PAUSED)
        self._log("runner_paused", {"strategy_id": self.config.strategy_id})

    def resume(self) -> None:
        if self.status != RunnerStatus.PAUSED:
            return
        self._set(status=RunnerStatus.RUNNING)
        self._resumed.set()
        self._log("runner_resumed", {"strategy_id": self.config.strategy_id})

    async def _finish_consumer(self) -> None:
        self._resumed.set()
        consumer = self._consumer
        self._consumer = None
        if consumer is None:
            return
        await self._queue.put(_STOP)
        await consumer

    async def _cancel_orders(self) -> None:
        if self.simulator is not None:
            cancelled = self.simulator.cancel_all_orders()
        else:
            cancelled = await asyncio.to_thread(self.executor.cancel_all_orders)
        self._log("runner_orders_cancelled", {"cancelled": cancelled})

    async def stop(self) -> None:
        config = self._require()
        if self.status in {RunnerStatus.IDLE, RunnerStatus.STOPPED, RunnerStatus.STOPPING}:
            return
        self._set(status=RunnerStatus.STOPPING)
        await self._finish_consumer()
        try:
            await self._cancel_orders()
        except Exception as exc:
            logger.error("Failed to cancel orders on stop: %s", exc)
            self._log("runner_error", {"strategy_id": config.strategy_id, "error": str(exc)})
        self._refresh()
        self._set(status=RunnerStatus.STOPPED, stopped_at=_utc_now())
        self._log("runner_stopped", {"strategy_id": config.strategy_id, "state": self._state.to_dict()})

    async def emergency_stop(self) -> None:
        config = self._require()
        self._set(status=RunnerStatus.STOPPING)
        self.risk.emergency_stop()
        if self._monitor is not None:
            self._monitor.emergency_stop(EMERGENCY_STOP_MESSAGE)
        await self._finish_consumer()

        prices = {
            position.market_id: self._state.current_price or position.current_price
            for position in self._positions()
        }
        try:
            if self.simulator is not None:
                self.simulator.cancel_all_orders()
                closed = len(self.simulator.close_all_positions(prices))
                failed = 0
            else:
                await asyncio.to_thread(self.executor.cancel_all_orders)
                report = await asyncio.to_thread(self.executor.close_all_positions, prices)
                closed, failed = report.closed, report.failed
        except Exception as exc:
            logger.error("Emergency close failed: %s", exc)
            self._log("runner_error", {"strategy_id": config.strategy_id, "error": str(exc)})
        else:
            self._log("runner_emergency_close", {"closed": closed, "failed": failed})

        self._refresh()
        self._set(status=RunnerStatus.STOPPED, stopped_at=_utc_now(), error=EMERGENCY_STOP_MESSAGE)

    def update_price(self, price: float) -> None:
        """Mark positions to ``price``; resting orders are only triggered by queued bars."""
        self._require()
        self._mark(price)
        self._refresh()

    async def destroy(self) -> None:
        if self._state is not None and self._consumer is not None:
            self._set(status=RunnerStatus.STOPPING)
            await self._finish_consumer()
        if self.bridge is not None:
            await asyncio.to_thread(self.bridge.terminate)
        if self.simulator is not None:
            self.simulator.clear()
        if self.executor is not None:
            self.executor.clear()
        if self.risk is not None:
            self.risk.clear()
        if self.config is not None:
            self._log("runner_destroyed", {"strategy_id": self.config.strategy_id})
        self._listeners.clear()
        self._reset()
