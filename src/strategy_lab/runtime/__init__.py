from strategy_lab.runtime.models import LiveStrategyConfig, LiveStrategyState, RunnerStatus, TradingMode
from strategy_lab.runtime.runner import LiveStrategyRunner

__all__ = [
    "LiveStrategyConfig",
    "LiveStrategyRunner",
    "LiveStrategyState",
    "RunnerStatus",
    "TradingMode",
]
