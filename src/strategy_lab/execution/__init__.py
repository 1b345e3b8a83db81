from strategy_lab.execution.broker import (
    MarketDirectory,
    OrderPlacementService,
    SessionService,
    StaticMarketDirectory,
)
from strategy_lab.execution.live import LiveOrderExecutor, scale_price, scale_quantity
from strategy_lab.execution.models import (
    CancelReport,
    CloseReport,
    ExchangeOrderStatus,
    ExecutionResult,
    MarketSpec,
    Order,
    OrderStatus,
    PlacedOrder,
    Trade,
)
from strategy_lab.execution.paper import (
    PaperTradingSimulator,
    PaperTradingState,
    SlippageKind,
    SlippageModel,
)
from strategy_lab.execution.positions import (
    EMPTY_SCRIPT_POSITION,
    FillOutcome,
    OrderSide,
    Position,
    PositionBook,
    PositionSide,
)

__all__ = [
    "CancelReport",
    "CloseReport",
    "EMPTY_SCRIPT_POSITION",
    "ExchangeOrderStatus",
    "ExecutionResult",
    "FillOutcome",
    "LiveOrderExecutor",
    "MarketDirectory",
    "MarketSpec",
    "Order",
    "OrderPlacementService",
    "OrderSide",
    "OrderStatus",
    "PaperTradingSimulator",
    "PaperTradingState",
    "PlacedOrder",
    "Position",
    "PositionBook",
    "PositionSide",
    "SessionService",
    "SlippageKind",
    "SlippageModel",
    "StaticMarketDirectory",
    "Trade",
]
